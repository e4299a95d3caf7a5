"""
APQP Document Platform
Tests — PFMEA, Work Instruction and Inspection Plan generation.

Covers:
    - PFMEA: one line per characteristic, rating clamp, RPN / AP derivation
    - Work Instruction: one step per CP item, gapless numbering, link column
    - Inspection Plan: 1:1 with CP items, sampling copied, quantified criteria
    - idempotent return and upstream error mapping for each stage
"""

from unittest.mock import patch

import pytest

from apqp.core.exceptions import NotFoundError, PersistenceError, UpstreamEmptyError
from apqp.models.control_plan import ControlPlan
from apqp.models.inspection import InspectionItem, InspectionPlan
from apqp.models.pfmea import PfmeaLine, action_priority, calculate_rpn
from apqp.models.work_instruction import InstructionStep, WorkInstruction
from apqp.services.control_plan_generation import generate_control_plan
from apqp.services.inspection_generation import generate_inspection_plan
from apqp.services.pfmea_generation import generate_pfmea
from apqp.services.work_instruction_generation import generate_work_instruction


# ═════════════════════════════════════════════════════════════════════════════
# RISK HELPERS
# ═════════════════════════════════════════════════════════════════════════════

class TestRiskScoring:

    def test_rpn_clamps_ratings(self):
        assert calculate_rpn(8, 6, 7) == 336
        assert calculate_rpn(0, 20, "x") == 1 * 10 * 1

    @pytest.mark.parametrize("rpn, severity, expected", [
        (336, 8, "H"),
        (200, 5, "H"),
        (45, 9, "H"),
        (199, 8, "M"),
        (100, 4, "M"),
        (99, 8, "L"),
    ])
    def test_action_priority_thresholds(self, rpn, severity, expected):
        assert action_priority(rpn, severity) == expected


# ═════════════════════════════════════════════════════════════════════════════
# PFMEA
# ═════════════════════════════════════════════════════════════════════════════

class TestPfmeaGeneration:

    def test_one_line_per_characteristic(self, product, major_char, critical_char):
        result = generate_pfmea(product.id)
        assert result.status == "generated"
        assert result.count == 2

        lines = PfmeaLine.query.filter_by(pfmea_id=result.document_id).order_by(PfmeaLine.step_no).all()
        assert [l.step_no for l in lines] == [1, 2]
        assert [l.characteristic_id for l in lines] == [major_char.id, critical_char.id]
        assert result.linked_ids == [major_char.id, critical_char.id]
        # fallback ratings: major S6 O5 D5 = 150 (M), critical S8 O5 D5 = 200 (H)
        assert [(l.rpn, l.action_priority) for l in lines] == [(150, "M"), (200, "H")]

    def test_process_name_from_single_process(self, product, seed):
        process = seed.process(product, name="Grinding")
        seed.characteristic(product, name="Roundness", process_id=process.id)
        result = generate_pfmea(product.id)
        line = PfmeaLine.query.filter_by(pfmea_id=result.document_id).one()
        assert line.process_step == "Grinding"
        assert line.pfmea.process_name == "Grinding"

    def test_generated_ratings_are_clamped(self, product, major_char, gateway_factory):
        gw, _ = gateway_factory([{
            "potential_failure_mode": "Too thick", "potential_effect": "No fit",
            "severity": 14, "potential_cause": "Wear", "occurrence": "3", "detection": 0,
        }])
        result = generate_pfmea(product.id, gateway=gw)
        line = PfmeaLine.query.filter_by(pfmea_id=result.document_id).one()
        assert (line.severity, line.occurrence, line.detection) == (10, 3, 1)
        assert line.rpn == 30
        assert line.action_priority == "H"  # severity ≥ 9

    def test_product_without_characteristics(self, product):
        with pytest.raises(UpstreamEmptyError):
            generate_pfmea(product.id)

    def test_unknown_product(self):
        with pytest.raises(NotFoundError):
            generate_pfmea("missing")

    def test_idempotent(self, product, major_char):
        first = generate_pfmea(product.id)
        second = generate_pfmea(product.id)
        assert second.status == "existing"
        assert second.document_id == first.document_id
        assert second.to_dict()["traceability"]["linked_characteristic_ids"] == [major_char.id]


# ═════════════════════════════════════════════════════════════════════════════
# WORK INSTRUCTION
# ═════════════════════════════════════════════════════════════════════════════

class TestWorkInstructionGeneration:

    def test_one_step_per_cp_item(self, scenario_pfmea):
        cp = generate_control_plan(scenario_pfmea.id)
        result = generate_work_instruction(cp.document_id)

        steps = InstructionStep.query.filter_by(work_instruction_id=result.document_id) \
            .order_by(InstructionStep.step_no).all()
        assert result.count == 2
        assert [s.step_no for s in steps] == [1, 2]
        assert all(s.linked_cp_item_id for s in steps)
        assert set(result.linked_ids) == {s.linked_cp_item_id for s in steps}
        assert all("[Control Point]" in s.key_point for s in steps)
        assert all(s.estimated_time_sec == 60 for s in steps)

    def test_bad_estimated_time_defaults(self, scenario_pfmea, gateway_factory):
        cp = generate_control_plan(scenario_pfmea.id)
        gw, _ = gateway_factory([{
            "action": "Measure", "key_point": "Control point: 2-4mm; abnormal: stop",
            "safety_note": "", "estimated_time_sec": "about a minute",
        }])
        result = generate_work_instruction(cp.document_id, gateway=gw)
        steps = InstructionStep.query.filter_by(work_instruction_id=result.document_id).all()
        assert {s.estimated_time_sec for s in steps} == {60}
        assert {s.safety_note for s in steps} == {None}
        assert {s.action for s in steps} == {"Measure"}

    @pytest.mark.parametrize("raw", ["inf", "-inf", 1e30, -5, 0])
    def test_out_of_range_estimated_time_defaults(self, scenario_pfmea, gateway_factory, raw):
        cp = generate_control_plan(scenario_pfmea.id)
        gw, _ = gateway_factory([{
            "action": "Measure", "key_point": "Control point: 2-4mm; abnormal: stop",
            "safety_note": "", "estimated_time_sec": raw,
        }])
        result = generate_work_instruction(cp.document_id, gateway=gw)
        assert result.status == "generated"
        steps = InstructionStep.query.filter_by(work_instruction_id=result.document_id).all()
        assert {s.estimated_time_sec for s in steps} == {60}

    def test_row_build_failure_removes_header(self, scenario_pfmea):
        cp = generate_control_plan(scenario_pfmea.id)
        with patch("apqp.services.work_instruction_generation._seconds",
                   side_effect=OverflowError("cannot convert float infinity to integer")):
            with pytest.raises(PersistenceError) as exc_info:
                generate_work_instruction(cp.document_id)

        assert exc_info.value.stage == "work_instruction"
        assert WorkInstruction.query.count() == 0
        assert InstructionStep.query.count() == 0

        rerun = generate_work_instruction(cp.document_id)
        assert rerun.status == "generated"
        assert rerun.count == 2

    def test_result_keys(self, scenario_pfmea):
        cp = generate_control_plan(scenario_pfmea.id)
        data = generate_work_instruction(cp.document_id).to_dict()
        assert data["steps_count"] == 2
        assert data["traceability"]["control_plan_id"] == cp.document_id
        assert data["traceability"]["instructions_id"] == data["instructions_id"]

    def test_empty_control_plan(self, scenario_pfmea):
        from apqp.models import db
        cp = ControlPlan(pfmea_id=scenario_pfmea.id)
        db.session.add(cp)
        db.session.commit()
        with pytest.raises(UpstreamEmptyError):
            generate_work_instruction(cp.id)

    def test_idempotent(self, scenario_pfmea):
        cp = generate_control_plan(scenario_pfmea.id)
        first = generate_work_instruction(cp.document_id)
        second = generate_work_instruction(cp.document_id)
        assert second.status == "existing"
        assert second.document_id == first.document_id
        assert InstructionStep.query.count() == 2


# ═════════════════════════════════════════════════════════════════════════════
# INSPECTION PLAN
# ═════════════════════════════════════════════════════════════════════════════

class TestInspectionGeneration:

    def test_one_item_per_cp_item(self, product, critical_char, seed):
        pfmea = seed.pfmea(product, [{"characteristic_id": critical_char.id}])
        cp = generate_control_plan(pfmea.id)
        result = generate_inspection_plan(cp.document_id)

        items = InspectionItem.query.filter_by(inspection_plan_id=result.document_id) \
            .order_by(InspectionItem.item_no).all()
        assert [i.item_no for i in items] == [1, 2]
        assert {i.acceptance_criteria for i in items} == {"9.5mm ~ 10.5mm"}
        assert {i.sampling_plan for i in items} == {"100% / every unit"}
        assert {i.characteristic_id for i in items} == {critical_char.id}

    def test_sampling_plan_always_copied(self, scenario_pfmea, gateway_factory):
        cp = generate_control_plan(scenario_pfmea.id)
        gw, _ = gateway_factory([{
            "inspection_item_name": "Thickness", "inspection_method": "Micrometer",
            "acceptance_criteria": "2-4 mm", "ng_handling": "Segregate",
            "sampling_plan": "whatever the model says",
        }])
        result = generate_inspection_plan(cp.document_id, gateway=gw)
        items = InspectionItem.query.filter_by(inspection_plan_id=result.document_id).all()
        assert {i.sampling_plan for i in items} == {"n=5 / every lot"}
        assert {i.acceptance_criteria for i in items} == {"2-4 mm"}

    def test_unknown_control_plan(self):
        with pytest.raises(NotFoundError):
            generate_inspection_plan("missing")

    def test_idempotent(self, scenario_pfmea):
        cp = generate_control_plan(scenario_pfmea.id)
        first = generate_inspection_plan(cp.document_id)
        second = generate_inspection_plan(cp.document_id)
        assert second.status == "existing"
        assert second.document_id == first.document_id
        assert InspectionPlan.query.count() == 1
