"""
Control Plan generation — PFMEA → Control Plan.

Fan-out: every PFMEA line linked to a characteristic produces exactly two
items, prevention (step 2i+1) then detection (step 2i+2), where i is the
line's 0-based position in PFMEA order.  Lines without a characteristic are
skipped with a warning and still consume their index.

Usage:
    from apqp.services.control_plan_generation import generate_control_plan
    result = generate_control_plan(pfmea_id)
    result.to_dict()  # {"success": True, "control_plan_id": ..., "items_count": ..., ...}
"""

import logging

from apqp.ai.gateway import get_gateway
from apqp.ai.prompt_registry import get_prompt_registry
from apqp.core.exceptions import NotFoundError, UpstreamEmptyError
from apqp.models import db
from apqp.models.control_plan import CONTROL_TYPES, ControlPlan, ControlPlanItem
from apqp.models.pfmea import Pfmea, PfmeaLine
from apqp.services import fallback_content as fc
from apqp.services.generation_common import (
    PlannedItem,
    StageResult,
    StageSpec,
    find_existing,
    load_characteristics,
    persist_document,
    require_id,
    resolve_contents,
    text,
)

logger = logging.getLogger(__name__)

STAGE = StageSpec(
    name="control_plan",
    label="Control Plan",
    header_model=ControlPlan,
    child_model=ControlPlanItem,
    upstream_column="pfmea_id",
    child_fk="control_plan_id",
    link_column="pfmea_line_id",
    number_column="step_no",
    upstream_key="pfmea_id",
    id_key="control_plan_id",
    count_key="items_count",
    linked_key="linked_line_ids",
)

REQUIRED_KEYS = ("control_method", "sample_size", "frequency", "reaction_plan")


def step_number(index: int, control_type: str) -> int:
    """2i+1 for prevention, 2i+2 for detection."""
    return index * 2 + (1 if control_type == "prevention" else 2)


def plan_items(lines: list[dict], characteristics: dict[str, dict], registry) -> list[PlannedItem]:
    """Number and prompt every new control plan item, in PFMEA order."""
    planned = []
    for index, line in enumerate(lines):
        char = characteristics.get(line.get("characteristic_id"))
        if char is None:
            logger.warning("PFMEA line %s (step %s) has no characteristic — skipped",
                           line["id"], line.get("step_no"))
            continue

        for control_type in CONTROL_TYPES:
            messages = registry.render(
                "control_plan_item",
                control_type=control_type,
                process_step=line.get("process_step"),
                characteristic_name=char.get("name"),
                category=char.get("category"),
                specification=fc.spec_text(char),
                measurement_method=char.get("measurement_method"),
                failure_mode=line.get("potential_failure_mode"),
                failure_effect=line.get("potential_effect"),
                failure_cause=line.get("potential_cause"),
                severity=line.get("severity"),
                occurrence=line.get("occurrence"),
                detection=line.get("detection"),
                rpn=line.get("rpn"),
                action_priority=line.get("action_priority"),
                current_control_prevention=line.get("current_control_prevention"),
                current_control_detection=line.get("current_control_detection"),
                recommended_action=line.get("recommended_action"),
            )
            planned.append(PlannedItem(
                number=step_number(index, control_type),
                link_id=line["id"],
                source=line,
                characteristic=char,
                messages=messages,
                required_keys=REQUIRED_KEYS,
                fallback=fc.control_plan_content(control_type, line, char),
                purpose=f"control_plan.{control_type}",
                extra={"control_type": control_type},
            ))
    return planned


def generate_control_plan(pfmea_id, *, gateway=None) -> StageResult:
    """
    Generate the draft Control Plan for a PFMEA (idempotent).

    Raises:
        ValidationError: pfmea_id missing.
        NotFoundError: PFMEA does not exist.
        UpstreamEmptyError: no PFMEA line is linked to a characteristic.
        PersistenceError: item batch insert failed (header removed).
    """
    pfmea_id = require_id(pfmea_id, "pfmea_id")
    pfmea = db.session.get(Pfmea, pfmea_id)
    if pfmea is None:
        raise NotFoundError("Pfmea", pfmea_id)

    existing = find_existing(STAGE, pfmea_id)
    if existing is not None:
        return existing

    lines = [
        line.to_dict()
        for line in PfmeaLine.query.filter_by(pfmea_id=pfmea_id)
        .order_by(PfmeaLine.step_no, PfmeaLine.created_at, PfmeaLine.id)
        .all()
    ]
    characteristics = load_characteristics(line["characteristic_id"] for line in lines)
    planned = plan_items(lines, characteristics, get_prompt_registry())
    if not planned:
        raise UpstreamEmptyError("Pfmea", pfmea_id, reason="no lines linked to a characteristic")

    contents = resolve_contents(planned, gateway or get_gateway())

    header = ControlPlan(
        pfmea_id=pfmea_id,
        revision=pfmea.revision,
        doc_number=f"CP-{pfmea.product.code}" if pfmea.product else None,
    )

    def build_rows(header_id):
        return [
            ControlPlanItem(
                control_plan_id=header_id,
                pfmea_line_id=item.link_id,
                characteristic_id=item.characteristic["id"],
                step_no=item.number,
                process_step=item.source["process_step"],
                control_type=item.extra["control_type"],
                control_method=text(content.get("control_method")),
                sample_size=text(content.get("sample_size")),
                frequency=text(content.get("frequency")),
                reaction_plan=text(content.get("reaction_plan")),
                responsible=text(content.get("responsible")) or None,
            )
            for item, content in zip(planned, contents)
        ]

    return persist_document(STAGE, header, build_rows)
