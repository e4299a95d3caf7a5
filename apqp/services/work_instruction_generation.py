"""
Work Instruction generation — Control Plan → operator instructions.

Fan-out: one step per control plan item, numbered 1..N in control plan order
with no gaps (a skipped item does not consume a number).  Every step carries
``linked_cp_item_id``.

Usage:
    from apqp.services.work_instruction_generation import generate_work_instruction
    result = generate_work_instruction(control_plan_id)
"""

import logging

from apqp.ai.gateway import get_gateway
from apqp.ai.prompt_registry import get_prompt_registry
from apqp.core.exceptions import NotFoundError, UpstreamEmptyError
from apqp.models import db
from apqp.models.control_plan import ControlPlan, ControlPlanItem
from apqp.models.work_instruction import InstructionStep, WorkInstruction
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
    name="work_instruction",
    label="Work Instruction",
    header_model=WorkInstruction,
    child_model=InstructionStep,
    upstream_column="control_plan_id",
    child_fk="work_instruction_id",
    link_column="linked_cp_item_id",
    number_column="step_no",
    upstream_key="control_plan_id",
    id_key="instructions_id",
    count_key="steps_count",
    linked_key="linked_cp_item_ids",
)

REQUIRED_KEYS = ("action", "key_point", "safety_note", "estimated_time_sec")
MAX_STEP_TIME_SEC = 8 * 60 * 60


def load_cp_items(control_plan_id: str) -> list[dict]:
    return [
        item.to_dict()
        for item in ControlPlanItem.query.filter_by(control_plan_id=control_plan_id)
        .order_by(ControlPlanItem.step_no, ControlPlanItem.created_at, ControlPlanItem.id)
        .all()
    ]


def _seconds(value) -> int:
    """Positive whole seconds up to one shift; anything else becomes the default."""
    try:
        seconds = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fc.DEFAULT_STEP_TIME_SEC
    return seconds if 0 < seconds <= MAX_STEP_TIME_SEC else fc.DEFAULT_STEP_TIME_SEC


def plan_steps(cp_items: list[dict], characteristics: dict[str, dict], registry) -> list[PlannedItem]:
    planned = []
    for cp_item in cp_items:
        char = characteristics.get(cp_item.get("characteristic_id"))
        if char is None:
            logger.warning("Control plan item %s has no characteristic — skipped", cp_item["id"])
            continue

        messages = registry.render(
            "instruction_step",
            process_step=cp_item.get("process_step"),
            characteristic_name=char.get("name"),
            category=char.get("category"),
            specification=fc.spec_text(char),
            control_type=cp_item.get("control_type"),
            control_method=cp_item.get("control_method"),
            sample_size=cp_item.get("sample_size"),
            frequency=cp_item.get("frequency"),
            reaction_plan=cp_item.get("reaction_plan"),
        )
        planned.append(PlannedItem(
            number=len(planned) + 1,
            link_id=cp_item["id"],
            source=cp_item,
            characteristic=char,
            messages=messages,
            required_keys=REQUIRED_KEYS,
            fallback=fc.instruction_step_content(cp_item, char),
            purpose="work_instruction.step",
        ))
    return planned


def generate_work_instruction(control_plan_id, *, gateway=None) -> StageResult:
    """
    Generate the draft Work Instruction for a Control Plan (idempotent).

    Raises:
        ValidationError: control_plan_id missing.
        NotFoundError: Control Plan does not exist.
        UpstreamEmptyError: Control Plan has no usable items.
        PersistenceError: step batch insert failed (header removed).
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
    planned = plan_steps(cp_items, characteristics, get_prompt_registry())
    if not planned:
        raise UpstreamEmptyError("ControlPlan", control_plan_id, reason="no control plan items")

    contents = resolve_contents(planned, gateway or get_gateway())

    header = WorkInstruction(
        control_plan_id=control_plan_id,
        revision=control_plan.revision,
        doc_number=control_plan.doc_number.replace("CP-", "WI-", 1) if control_plan.doc_number else None,
    )

    def build_rows(header_id):
        return [
            InstructionStep(
                work_instruction_id=header_id,
                linked_cp_item_id=item.link_id,
                step_no=item.number,
                process_step=item.source["process_step"],
                action=text(content.get("action")),
                key_point=text(content.get("key_point")),
                safety_note=text(content.get("safety_note")) or None,
                quality_point=text(content.get("quality_point")) or None,
                tools_equipment=text(content.get("tools_equipment")) or None,
                estimated_time_sec=_seconds(content.get("estimated_time_sec")),
            )
            for item, content in zip(planned, contents)
        ]

    return persist_document(STAGE, header, build_rows)
