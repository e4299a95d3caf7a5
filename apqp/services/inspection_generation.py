"""
Inspection Plan generation — Control Plan → inspection standard.

Fan-out: exactly one inspection item per control plan item (1:1), numbered
1..N in control plan order with no gaps.  ``sampling_plan`` is always copied
from the control plan item so the two documents start out consistent.

Usage:
    from apqp.services.inspection_generation import generate_inspection_plan
    result = generate_inspection_plan(control_plan_id)
"""

import logging

from apqp.ai.gateway import get_gateway
from apqp.ai.prompt_registry import get_prompt_registry
from apqp.core.exceptions import NotFoundError, UpstreamEmptyError
from apqp.models import db
from apqp.models.control_plan import ControlPlan
from apqp.models.inspection import InspectionItem, InspectionPlan
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
from apqp.services.work_instruction_generation import load_cp_items

logger = logging.getLogger(__name__)

STAGE = StageSpec(
    name="inspection_plan",
    label="Inspection Plan",
    header_model=InspectionPlan,
    child_model=InspectionItem,
    upstream_column="control_plan_id",
    child_fk="inspection_plan_id",
    link_column="linked_cp_item_id",
    number_column="item_no",
    upstream_key="control_plan_id",
    id_key="inspection_plan_id",
    count_key="items_count",
    linked_key="linked_cp_item_ids",
)

REQUIRED_KEYS = ("inspection_item_name", "inspection_method", "acceptance_criteria", "ng_handling")


def plan_inspection_items(cp_items: list[dict], characteristics: dict[str, dict], registry) -> list[PlannedItem]:
    planned = []
    for cp_item in cp_items:
        char = characteristics.get(cp_item.get("characteristic_id"))
        if char is None:
            logger.warning("Control plan item %s has no characteristic — skipped", cp_item["id"])
            continue

        messages = registry.render(
            "inspection_item",
            characteristic_name=char.get("name"),
            category=char.get("category"),
            specification=fc.spec_text(char),
            lsl=char.get("lsl"),
            usl=char.get("usl"),
            unit=char.get("unit"),
            measurement_method=char.get("measurement_method"),
            control_method=cp_item.get("control_method"),
            sample_size=cp_item.get("sample_size"),
            frequency=cp_item.get("frequency"),
        )
        planned.append(PlannedItem(
            number=len(planned) + 1,
            link_id=cp_item["id"],
            source=cp_item,
            characteristic=char,
            messages=messages,
            required_keys=REQUIRED_KEYS,
            fallback=fc.inspection_item_content(cp_item, char),
            purpose="inspection_plan.item",
        ))
    return planned


def generate_inspection_plan(control_plan_id, *, gateway=None) -> StageResult:
    """
    Generate the draft Inspection Plan for a Control Plan (idempotent).

    Raises:
        ValidationError: control_plan_id missing.
        NotFoundError: Control Plan does not exist.
        UpstreamEmptyError: Control Plan has no usable items.
        PersistenceError: item batch insert failed (header removed).
    """
    control_plan_id = require_id(control_plan_id, "control_plan_id")
    control_plan = db.session.get(ControlPlan, control_plan_id)
    if control_plan is None:
        raise NotFoundError("ControlPlan", control_plan_id)

    existing = find_existing(STAGE, control_plan_id)
    if existing is not None:
        return existing

    cp_items = load_cp_items(control_plan_id)
    characteristics = load_characteristics(item["characteristic_id"] for item in cp_items)
    planned = plan_inspection_items(cp_items, characteristics, get_prompt_registry())
    if not planned:
        raise UpstreamEmptyError("ControlPlan", control_plan_id, reason="no control plan items")

    contents = resolve_contents(planned, gateway or get_gateway())

    header = InspectionPlan(
        control_plan_id=control_plan_id,
        revision=control_plan.revision,
        doc_number=control_plan.doc_number.replace("CP-", "IP-", 1) if control_plan.doc_number else None,
    )

    def build_rows(header_id):
        return [
            InspectionItem(
                inspection_plan_id=header_id,
                linked_cp_item_id=item.link_id,
                characteristic_id=item.characteristic["id"],
                item_no=item.number,
                inspection_item_name=text(content.get("inspection_item_name")),
                inspection_method=text(content.get("inspection_method")),
                sampling_plan=fc.sampling_plan_text(item.source),
                acceptance_criteria=text(content.get("acceptance_criteria")),
                measurement_equipment=text(content.get("measurement_equipment")) or None,
                ng_handling=text(content.get("ng_handling")),
            )
            for item, content in zip(planned, contents)
        ]

    return persist_document(STAGE, header, build_rows)
