"""
APQP Document Platform
Tests — Control Plan generation (PFMEA → Control Plan).

Covers:
    - 2-per-line fan-out with 2i+1 / 2i+2 numbering
    - lines without a characteristic are skipped, not fatal
    - idempotent return of an existing draft (including the insert race)
    - atomic batch with header compensation on failure
    - generated content merged over fallback content
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from apqp.core.exceptions import NotFoundError, PersistenceError, UpstreamEmptyError, ValidationError
from apqp.models import db
from apqp.models.control_plan import ControlPlan, ControlPlanItem
from apqp.models.pfmea import PfmeaLine
from apqp.services.control_plan_generation import generate_control_plan, step_number


class TestFanOut:

    def test_two_items_per_line(self, product, major_char, critical_char, seed):
        pfmea = seed.pfmea(product, [
            {"characteristic_id": major_char.id},
            {"characteristic_id": critical_char.id},
        ])
        result = generate_control_plan(pfmea.id)

        assert result.status == "generated"
        assert result.count == 4
        items = ControlPlanItem.query.filter_by(control_plan_id=result.document_id) \
            .order_by(ControlPlanItem.step_no).all()
        assert [i.step_no for i in items] == [1, 2, 3, 4]
        assert [i.control_type for i in items] == ["prevention", "detection"] * 2
        assert all(i.pfmea_line_id and i.characteristic_id for i in items)

    def test_critical_characteristic_full_inspection(self, product, critical_char, seed):
        pfmea = seed.pfmea(product, [{"characteristic_id": critical_char.id}])
        result = generate_control_plan(pfmea.id)
        items = ControlPlanItem.query.filter_by(control_plan_id=result.document_id).all()
        assert {i.sample_size for i in items} == {"100%"}

    def test_skipped_line_keeps_its_index(self, product, major_char, critical_char, seed):
        pfmea = seed.pfmea(product, [
            {"characteristic_id": major_char.id},
            {"characteristic_id": None},
            {"characteristic_id": critical_char.id},
        ])
        result = generate_control_plan(pfmea.id)
        steps = sorted(i.step_no for i in ControlPlanItem.query.filter_by(control_plan_id=result.document_id))
        assert steps == [1, 2, 5, 6]
        assert result.count == 4

        lines = PfmeaLine.query.filter_by(pfmea_id=pfmea.id).order_by(PfmeaLine.step_no).all()
        assert result.linked_ids == [lines[0].id, lines[2].id]
        assert lines[1].id not in result.to_dict()["traceability"]["linked_line_ids"]

    def test_step_number(self):
        assert step_number(0, "prevention") == 1
        assert step_number(0, "detection") == 2
        assert step_number(3, "detection") == 8

    def test_result_dict_shape(self, scenario_pfmea):
        data = generate_control_plan(scenario_pfmea.id).to_dict()
        assert data["success"] is True
        assert data["items_count"] == 2
        trace = data["traceability"]
        assert trace["pfmea_id"] == scenario_pfmea.id
        assert trace["control_plan_id"] == data["control_plan_id"]
        assert len(trace["linked_line_ids"]) == 1


class TestErrors:

    def test_missing_id(self):
        with pytest.raises(ValidationError):
            generate_control_plan("  ")

    def test_unknown_pfmea(self):
        with pytest.raises(NotFoundError):
            generate_control_plan("does-not-exist")

    def test_no_linked_lines(self, product, seed):
        pfmea = seed.pfmea(product, [{"characteristic_id": None}])
        with pytest.raises(UpstreamEmptyError):
            generate_control_plan(pfmea.id)
        assert ControlPlan.query.count() == 0


class TestIdempotency:

    def test_second_call_returns_existing(self, scenario_pfmea):
        first = generate_control_plan(scenario_pfmea.id)
        second = generate_control_plan(scenario_pfmea.id)
        assert second.status == "existing"
        assert second.document_id == first.document_id
        assert second.count == first.count
        assert ControlPlan.query.count() == 1
        assert ControlPlanItem.query.count() == 2

    def test_concurrent_insert_returns_winner(self, scenario_pfmea):
        winner = ControlPlan(pfmea_id=scenario_pfmea.id)
        db.session.add(winner)
        db.session.commit()
        winner_id = winner.id

        # First lookup misses (request started before the winner committed)
        with patch.object(ControlPlan, "find_draft", side_effect=[None, winner]):
            result = generate_control_plan(scenario_pfmea.id)

        assert result.status == "existing"
        assert result.document_id == winner_id
        assert ControlPlan.query.count() == 1


class TestAtomicity:

    def test_batch_failure_removes_header(self, scenario_pfmea):
        with patch("apqp.services.generation_common._flush_rows",
                   side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(PersistenceError) as exc_info:
                generate_control_plan(scenario_pfmea.id)

        assert exc_info.value.stage == "control_plan"
        assert ControlPlan.query.count() == 0
        assert ControlPlanItem.query.count() == 0

    def test_retry_after_failure_succeeds(self, scenario_pfmea):
        with patch("apqp.services.generation_common._flush_rows",
                   side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(PersistenceError):
                generate_control_plan(scenario_pfmea.id)
        result = generate_control_plan(scenario_pfmea.id)
        assert result.status == "generated"
        assert result.count == 2


class TestGeneratedContent:

    def test_llm_content_used_and_fallback_fills_gaps(self, scenario_pfmea, gateway_factory):
        gw, provider = gateway_factory([{
            "control_method": "SPC chart", "sample_size": "n=5",
            "frequency": "every lot", "reaction_plan": "Quarantine lot",
        }])
        result = generate_control_plan(scenario_pfmea.id, gateway=gw)

        items = ControlPlanItem.query.filter_by(control_plan_id=result.document_id).all()
        assert len(provider.calls) == 2
        assert {i.control_method for i in items} == {"SPC chart"}
        # "responsible" was not returned; fallback supplies it
        assert {i.responsible for i in items} == {"Operator", "QC Inspector"}

    def test_llm_failure_falls_back(self, scenario_pfmea, gateway_factory):
        gw, provider = gateway_factory([TimeoutError("slow")], LLM_MAX_RETRIES=2)
        result = generate_control_plan(scenario_pfmea.id, gateway=gw)
        assert result.count == 2
        assert len(provider.calls) == 4
        items = ControlPlanItem.query.filter_by(control_plan_id=result.document_id).all()
        assert {i.sample_size for i in items} == {"n=5"}
