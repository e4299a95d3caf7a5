"""
APQP Document Platform
Tests — Consistency rule engine (R1-R6) and the check service.

Covers:
    - each rule on a hand-built GraphSnapshot
    - rule ordering and severity counts
    - graph loading from the database (draft documents)
    - evaluate-and-persist into ReportRun / ConsistencyIssue
"""

import pytest

from apqp.core.exceptions import NotFoundError, ValidationError
from apqp.models import db
from apqp.models.inspection import InspectionItem
from apqp.models.report import ConsistencyIssue, ReportRun
from apqp.models.work_instruction import InstructionStep
from apqp.services.consistency_rules import GraphSnapshot, evaluate, normalize_sampling
from apqp.services.consistency_service import (
    check_consistency,
    get_report_run,
    list_report_runs,
    load_snapshot,
    resolve_pfmea_id,
)
from apqp.services.traceability_repair import repair_traceability

GOOD_KEY_POINT = "[Control Point] Thickness: 2mm ~ 4mm\n[Abnormal Action] Stop and report"


def _line(id_="L1", severity=5, occurrence=4, detection=4, ap=None):
    rpn = severity * occurrence * detection
    return {"id": id_, "step_no": 1, "process_step": "Turning", "rpn": rpn,
            "severity": severity, "action_priority": ap or ("H" if rpn >= 200 or severity >= 9 else "L")}


def _cp(id_="CP1", line_id="L1", char_id="C1", sample_size="n=5", frequency="every lot"):
    return {"id": id_, "pfmea_line_id": line_id, "characteristic_id": char_id, "step_no": 1,
            "process_step": "Turning", "control_type": "detection",
            "sample_size": sample_size, "frequency": frequency}


def _step(id_="S1", cp_id="CP1", key_point=GOOD_KEY_POINT):
    return {"id": id_, "linked_cp_item_id": cp_id, "step_no": 1, "process_step": "Turning",
            "key_point": key_point}


def _insp(id_="I1", cp_id="CP1", char_id="C1", sampling_plan="n=5 / every lot", criteria="2mm ~ 4mm"):
    return {"id": id_, "linked_cp_item_id": cp_id, "characteristic_id": char_id, "item_no": 1,
            "sampling_plan": sampling_plan, "acceptance_criteria": criteria}


CHAR = {"C1": {"id": "C1", "name": "Thickness", "lsl": 2.0, "usl": 4.0}}


def _snapshot(**kw):
    data = {
        "pfmea_id": "P1",
        "lines": (_line(),),
        "cp_items": (_cp(),),
        "steps": (_step(),),
        "inspection_items": (_insp(),),
        "characteristics": CHAR,
    }
    data.update(kw)
    return GraphSnapshot(**data)


def _rules(result):
    return [f.rule for f in result.findings]


class TestRules:

    def test_clean_graph(self):
        result = evaluate(_snapshot())
        assert result.findings == []
        assert result.counts == {"HIGH": 0, "MEDIUM": 0, "LOW": 0}

    def test_r1_high_priority_line_without_control(self):
        line = _line(severity=9, occurrence=5, detection=5)
        result = evaluate(_snapshot(lines=(line,), cp_items=(), steps=(), inspection_items=()))
        assert _rules(result) == ["R1"]
        finding = result.findings[0]
        assert finding.severity.value == "HIGH"
        assert finding.target_id == line["id"]

    def test_r1_ignores_low_risk_line(self):
        result = evaluate(_snapshot(lines=(_line(),), cp_items=(), steps=(), inspection_items=()))
        assert result.findings == []

    def test_r1_rpn_threshold_without_h(self):
        line = _line(severity=5, occurrence=5, detection=4, ap="M")  # RPN 100
        result = evaluate(_snapshot(lines=(line,), cp_items=(), steps=(), inspection_items=()))
        assert _rules(result) == ["R1"]

    def test_r2_and_r3(self):
        result = evaluate(_snapshot(steps=(), inspection_items=()))
        assert _rules(result) == ["R2", "R3"]
        assert result.counts["HIGH"] == 2

    def test_r4_sampling_mismatch(self):
        result = evaluate(_snapshot(inspection_items=(_insp(sampling_plan="n=3 / daily"),)))
        assert _rules(result) == ["R4"]
        assert result.findings[0].severity.value == "MEDIUM"

    def test_r4_ignores_whitespace_and_case(self):
        result = evaluate(_snapshot(inspection_items=(_insp(sampling_plan="N=5/Every  Lot"),)))
        assert result.findings == []
        assert normalize_sampling(" n=5 / every lot ") == "n=5/everylot"

    def test_r5_missing_markers(self):
        steps = (
            _step("S1", key_point="Hold the part firmly"),
            _step("S2", key_point="Check spec on drawing"),
        )
        result = evaluate(_snapshot(steps=steps))
        assert _rules(result) == ["R5", "R5"]
        assert "control point" in result.findings[0].message
        assert "abnormal action" in result.findings[0].message
        assert "control point" not in result.findings[1].message

    def test_r6_unquantified_criteria(self):
        result = evaluate(_snapshot(inspection_items=(_insp(criteria="matches limit sample"),)))
        assert _rules(result) == ["R6"]
        assert result.findings[0].severity.value == "LOW"

    def test_r6_skips_characteristic_without_limits(self):
        chars = {"C1": {"id": "C1", "name": "Appearance", "lsl": None, "usl": None}}
        result = evaluate(_snapshot(characteristics=chars,
                                    inspection_items=(_insp(criteria="matches limit sample"),)))
        assert result.findings == []

    def test_findings_ordered_by_rule(self):
        snap = _snapshot(
            lines=(_line(severity=9), _line("L2", severity=9)),
            steps=(_step(key_point="nothing"),),
            inspection_items=(_insp(sampling_plan="x", criteria="ok"),),
        )
        assert _rules(evaluate(snap)) == ["R1", "R4", "R5", "R6"]

    def test_to_dict(self):
        data = evaluate(_snapshot(steps=())).to_dict()
        assert data["counts"]["HIGH"] == 1
        assert data["findings"][0]["target_ref"] == {"type": "control_plan_item", "id": "CP1"}


class TestService:

    def test_load_snapshot_from_generated_chain(self, product, major_char):
        repair = repair_traceability(product.id)
        pfmea_id = repair["steps"][0]["id"]
        snap = load_snapshot(pfmea_id)
        assert len(snap.lines) == 1
        assert len(snap.cp_items) == 2
        assert len(snap.steps) == 2
        assert len(snap.inspection_items) == 2
        assert major_char.id in snap.characteristics

    def test_detects_edited_inspection_item(self, product, major_char):
        repair = repair_traceability(product.id)
        pfmea_id = repair["steps"][0]["id"]
        item = InspectionItem.query.first()
        item.acceptance_criteria = "matches limit sample"
        item.sampling_plan = "n=1 / weekly"
        db.session.commit()

        report = check_consistency(pfmea_id)
        rules = sorted(f["rule"] for f in report["findings"])
        assert rules == ["R4", "R6"]
        assert "report_run_id" not in report
        assert ReportRun.query.count() == 0

    def test_detects_deleted_step(self, product, major_char):
        repair = repair_traceability(product.id)
        pfmea_id = repair["steps"][0]["id"]
        db.session.delete(InstructionStep.query.first())
        db.session.commit()
        report = check_consistency(pfmea_id)
        assert [f["rule"] for f in report["findings"]] == ["R2"]

    def test_persist_stores_run_and_issues(self, product, major_char):
        repair = repair_traceability(product.id)
        pfmea_id = repair["steps"][0]["id"]
        db.session.delete(InstructionStep.query.first())
        db.session.commit()

        report = check_consistency(pfmea_id, persist=True)
        run = db.session.get(ReportRun, report["report_run_id"])
        assert run.result_summary["counts"]["HIGH"] == 1
        issue = ConsistencyIssue.query.one()
        assert issue.rule_code == "R2"
        assert issue.control_plan_item_id == issue.target_id

        runs = list_report_runs(pfmea_id)
        assert [r["id"] for r in runs] == [run.id]
        detail = get_report_run(run.id)
        assert len(detail["issues"]) == 1

    def test_pfmea_without_downstream_documents(self, scenario_pfmea):
        report = check_consistency(scenario_pfmea.id)
        assert [f["rule"] for f in report["findings"]] == ["R1"]

    def test_unknown_pfmea(self):
        with pytest.raises(NotFoundError):
            check_consistency("missing")

    def test_resolve_pfmea_id(self, product, major_char):
        repair = repair_traceability(product.id)
        pfmea_id, cp_id = repair["steps"][0]["id"], repair["steps"][1]["id"]
        assert resolve_pfmea_id(pfmea_id=pfmea_id) == pfmea_id
        assert resolve_pfmea_id(control_plan_id=cp_id) == pfmea_id
        with pytest.raises(ValidationError):
            resolve_pfmea_id()
        with pytest.raises(NotFoundError):
            resolve_pfmea_id(control_plan_id="missing")
