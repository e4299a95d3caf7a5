"""
APQP Document Platform
Tests — Audit report and IATF 16949 clause map.

Covers:
    - audit markdown sections, traceability examples on/off
    - latest stored consistency counts in the audit report
    - IATF clause statuses from live counts, write-back only on request
    - ReportRun rows for both report types
    - /api/v1/reports endpoints
"""

import pytest

from apqp.core.exceptions import NotFoundError, ValidationError
from apqp.models import db
from apqp.models.report import IatfClause, ReportRun
from apqp.models.work_instruction import InstructionStep
from apqp.services.audit_reports import (
    DEFAULT_CLAUSES,
    assess_clause,
    generate_audit_report,
    generate_iatf_map,
    list_iatf_clauses,
)
from apqp.services.consistency_service import check_consistency
from apqp.services.traceability_repair import repair_traceability


def _chain(product):
    steps = repair_traceability(product.id)["steps"]
    return steps[0]["id"], steps[1]["id"]


def _status(result, clause_number):
    return next(c for c in result["clauses"] if c["clause_number"] == clause_number)["compliance_status"]


class TestAuditReport:

    def test_sections_and_examples(self, product, major_char):
        pfmea_id, _ = _chain(product)
        result = generate_audit_report(pfmea_id)

        md = result["markdown"]
        for heading in ("## 1. System Overview", "## 2. Document Structure", "## 3. Traceability Evidence",
                        "## 4. Consistency Verification", "## 5. Change and Approval Control",
                        "## 6. Conclusion"):
            assert heading in md
        assert "**Example 1: Flange thickness**" in md
        assert "**Example 2: Flange thickness**" in md
        assert "| R6 | LOW |" in md
        assert "No stored consistency check" in md
        assert result["summary"] == {
            "pfmea_lines": 1, "cp_items": 2, "instruction_steps": 2, "inspection_items": 2,
        }

    def test_examples_can_be_turned_off(self, product, major_char):
        pfmea_id, _ = _chain(product)
        md = generate_audit_report(pfmea_id, include_examples=False)["markdown"]
        assert "**Example 1" not in md
        assert "not requested" in md

    def test_resolves_from_control_plan(self, product, major_char):
        pfmea_id, cp_id = _chain(product)
        result = generate_audit_report(control_plan_id=cp_id)
        assert result["pfmea_id"] == pfmea_id

    def test_uses_latest_consistency_run(self, product, major_char):
        pfmea_id, _ = _chain(product)
        db.session.delete(InstructionStep.query.first())
        db.session.commit()
        check = check_consistency(pfmea_id, persist=True)

        result = generate_audit_report(pfmea_id)
        assert "| HIGH | 1 |" in result["markdown"]
        run = db.session.get(ReportRun, result["report_run_id"])
        assert run.result_detail["consistency_run_id"] == check["report_run_id"]

    def test_records_report_run(self, product, major_char):
        pfmea_id, _ = _chain(product)
        result = generate_audit_report(pfmea_id)

        run = db.session.get(ReportRun, result["report_run_id"])
        assert run.report_type == "audit_report"
        assert run.pfmea_id == pfmea_id
        assert run.status == "completed"
        assert run.result_summary["cp_items"] == 2
        assert run.result_detail["markdown_length"] == len(result["markdown"])

    def test_requires_an_id(self):
        with pytest.raises(ValidationError):
            generate_audit_report()
        assert ReportRun.query.count() == 0

    def test_unknown_pfmea(self):
        with pytest.raises(NotFoundError):
            generate_audit_report("missing")


class TestIatfMap:

    def test_seeds_default_clauses(self):
        clauses = list_iatf_clauses()
        assert len(clauses) == len(DEFAULT_CLAUSES)
        assert clauses[0]["clause_number"] == "6.1.2.1"
        assert clauses[-1]["clause_number"] == "10.2.4"
        list_iatf_clauses()
        assert IatfClause.query.count() == len(DEFAULT_CLAUSES)

    def test_without_documents(self):
        result = generate_iatf_map()
        assert result["pfmea_id"] is None
        assert _status(result, "6.1.2.1") == "gap"
        assert _status(result, "8.3.3.3") == "gap"
        assert _status(result, "8.5.1.5") == "gap"
        assert result["summary"] == {"total_clauses": 10, "full": 0, "partial": 5, "gap": 5}

    def test_pfmea_without_downstream(self, scenario_pfmea):
        result = generate_iatf_map(scenario_pfmea.id)
        assert _status(result, "6.1.2.1") == "partial"
        assert _status(result, "8.3.3.3") == "full"
        assert _status(result, "8.5.1.1") == "gap"
        assert _status(result, "8.5.1.2") == "gap"
        assert "Immediate (gap)" in result["markdown"]

    def test_full_chain_with_stored_check(self, product, major_char):
        pfmea_id, _ = _chain(product)
        check_consistency(pfmea_id, persist=True)

        result = generate_iatf_map(pfmea_id)
        for number in ("6.1.2.1", "8.3.3.3", "8.5.1.1", "8.5.1.2", "8.6.2"):
            assert _status(result, number) == "full"
        assert result["summary"] == {"total_clauses": 10, "full": 5, "partial": 4, "gap": 1}
        assert "| Stored consistency checks | 1 |" in result["markdown"]

    def test_status_not_written_back_by_default(self, product, major_char):
        pfmea_id, _ = _chain(product)
        generate_iatf_map(pfmea_id)
        clause = IatfClause.query.filter_by(clause_number="8.6.2").one()
        assert clause.compliance_status == "partial"
        assert clause.last_reviewed_at is None

    def test_update_clause_status(self, product, major_char):
        pfmea_id, _ = _chain(product)
        generate_iatf_map(pfmea_id, update_clause_status=True)
        clause = IatfClause.query.filter_by(clause_number="8.6.2").one()
        assert clause.compliance_status == "full"
        assert clause.last_reviewed_at is not None

    def test_records_report_run(self, scenario_pfmea):
        result = generate_iatf_map(scenario_pfmea.id)
        run = db.session.get(ReportRun, result["report_run_id"])
        assert run.report_type == "iatf_map"
        assert run.result_summary["total_clauses"] == 10
        assert run.result_detail["stats"]["pfmea_lines"] == 1
        assert len(run.result_detail["mappings"]) == 10

    @pytest.mark.parametrize("stats, expected", [
        ({"cp_items": 2, "pfmea_lines": 0}, "partial"),
        ({"cp_items": 2, "pfmea_lines": 1}, "full"),
        ({"cp_items": 0, "pfmea_lines": 1}, "gap"),
    ])
    def test_control_plan_clause(self, stats, expected):
        clause = {"clause_number": "8.5.1.1", "compliance_status": "full"}
        status, _ = assess_clause(clause, stats)
        assert status == expected

    def test_clause_without_rule_keeps_stored_status(self):
        clause = {"clause_number": "10.2.3", "compliance_status": "partial", "gaps_and_actions": "8D"}
        assert assess_clause(clause, {}) == ("partial", "8D")


class TestReportsApi:

    def test_audit_endpoint(self, client, product, major_char):
        pfmea_id, _ = _chain(product)
        res = client.post("/api/v1/reports/audit",
                          json={"pfmea_id": pfmea_id, "include_traceability_examples": False})
        assert res.status_code == 201
        data = res.get_json()
        assert data["success"] is True
        assert data["report_type"] == "audit_report"
        assert "# Quality System Audit Report" in data["markdown"]
        assert "**Example 1" not in data["markdown"]

    def test_audit_missing_id(self, client):
        res = client.post("/api/v1/reports/audit", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_iatf_endpoint_and_clauses(self, client, product, major_char):
        pfmea_id, _ = _chain(product)
        res = client.post("/api/v1/reports/iatf-map",
                          json={"pfmea_id": pfmea_id, "update_clause_status": True})
        assert res.status_code == 201
        assert res.get_json()["summary"]["total_clauses"] == 10

        res = client.get("/api/v1/reports/iatf-map/clauses")
        assert res.status_code == 200
        items = {c["clause_number"]: c for c in res.get_json()["items"]}
        assert items["8.5.1.2"]["compliance_status"] == "full"
        assert items["8.5.1.2"]["last_reviewed_at"] is not None

    def test_iatf_unknown_control_plan(self, client):
        res = client.post("/api/v1/reports/iatf-map", json={"control_plan_id": "missing"})
        assert res.status_code == 404
