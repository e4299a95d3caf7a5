"""
Traceability Repair Orchestrator.

Runs the four generation stages for one product in dependency order:

    PFMEA → Control Plan → Work Instruction → Inspection Plan

Each stage is idempotent, so repairing an intact chain only reports the
existing documents.  The first failing stage stops the run; stages that
already committed stay committed (there is no cross-stage rollback).

Also provides ``get_traceability_chain`` — a read-only view from every
characteristic down to the rows generated from it.
"""

import logging

from apqp.ai.gateway import get_gateway
from apqp.core.exceptions import NotFoundError, PersistenceError, ValidationError
from apqp.models import db
from apqp.models.control_plan import ControlPlan
from apqp.models.inspection import InspectionPlan
from apqp.models.pfmea import Pfmea
from apqp.models.product import Characteristic, Product
from apqp.models.work_instruction import WorkInstruction
from apqp.services.control_plan_generation import generate_control_plan
from apqp.services.generation_common import STATUS_EXISTING, STATUS_GENERATED, latest_header, require_id
from apqp.services.inspection_generation import generate_inspection_plan
from apqp.services.pfmea_generation import generate_pfmea
from apqp.services.work_instruction_generation import generate_work_instruction

logger = logging.getLogger(__name__)

GENERATION_ERRORS = (NotFoundError, ValidationError, PersistenceError)


def _step(result) -> dict:
    return {
        "stage": result.spec.name,
        "status": result.status,
        "id": result.document_id,
        "count": result.count,
    }


def repair_traceability(product_id, *, gateway=None) -> dict:
    """Generate every missing document in the chain for ``product_id``.

    Returns a plain dict; generation errors are reported, not raised.
    Work Instruction and Inspection Plan both derive from the Control Plan.
    """
    gateway = gateway or get_gateway()
    steps: list[dict] = []
    stage = "pfmea"

    try:
        product_id = require_id(product_id, "product_id")

        pfmea = generate_pfmea(product_id, gateway=gateway)
        steps.append(_step(pfmea))

        stage = "control_plan"
        control_plan = generate_control_plan(pfmea.document_id, gateway=gateway)
        steps.append(_step(control_plan))

        stage = "work_instruction"
        steps.append(_step(generate_work_instruction(control_plan.document_id, gateway=gateway)))

        stage = "inspection_plan"
        steps.append(_step(generate_inspection_plan(control_plan.document_id, gateway=gateway)))
    except GENERATION_ERRORS as exc:
        logger.warning("Traceability repair for product %s stopped at %s: %s",
                       product_id, stage, exc)
        return {
            "success": False,
            "error": str(exc),
            "error_type": type(exc).__name__,
            "failed_stage": stage,
            "steps": steps,
        }

    logger.info("Traceability repair for product %s complete: %s",
                product_id, ", ".join(f"{s['stage']}={s['status']}" for s in steps))
    return {
        "success": True,
        "product_id": product_id,
        "steps": steps,
        "summary": {
            "generated_stages": [s["stage"] for s in steps if s["status"] == STATUS_GENERATED],
            "existing_stages": [s["stage"] for s in steps if s["status"] == STATUS_EXISTING],
        },
    }


# ═════════════════════════════════════════════════════════════════════════════
# Read-only chain view
# ═════════════════════════════════════════════════════════════════════════════

def _group(rows, key: str) -> dict[str, list]:
    grouped: dict[str, list] = {}
    for row in rows:
        grouped.setdefault(getattr(row, key), []).append(row)
    return grouped


def get_traceability_chain(product_id) -> dict:
    """Characteristic → PFMEA lines → CP items → {steps, inspection items}.

    Uses the draft (else latest) document at every level.  Characteristics
    with no PFMEA line are listed with ``covered: False``.
    """
    product_id = require_id(product_id, "product_id")
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)

    characteristics = (
        Characteristic.query.filter_by(product_id=product_id)
        .order_by(Characteristic.created_at, Characteristic.id)
        .all()
    )

    pfmea = latest_header(Pfmea, product_id=product_id)
    control_plan = latest_header(ControlPlan, pfmea_id=pfmea.id) if pfmea else None
    instruction = latest_header(WorkInstruction, control_plan_id=control_plan.id) if control_plan else None
    inspection = latest_header(InspectionPlan, control_plan_id=control_plan.id) if control_plan else None

    lines = pfmea.lines.all() if pfmea else []
    cp_items = control_plan.items.all() if control_plan else []
    steps = instruction.steps.all() if instruction else []
    insp_items = inspection.items.all() if inspection else []

    lines_by_char = _group(lines, "characteristic_id")
    cp_by_line = _group(cp_items, "pfmea_line_id")
    steps_by_cp = _group(steps, "linked_cp_item_id")
    insp_by_cp = _group(insp_items, "linked_cp_item_id")

    chain = []
    for char in characteristics:
        line_nodes = []
        for line in lines_by_char.get(char.id, []):
            cp_nodes = []
            for item in cp_by_line.get(line.id, []):
                cp_nodes.append({
                    "id": item.id,
                    "step_no": item.step_no,
                    "control_type": item.control_type,
                    "instruction_step_ids": [s.id for s in steps_by_cp.get(item.id, [])],
                    "inspection_item_ids": [i.id for i in insp_by_cp.get(item.id, [])],
                })
            line_nodes.append({
                "id": line.id,
                "step_no": line.step_no,
                "rpn": line.rpn,
                "action_priority": line.action_priority,
                "control_plan_items": cp_nodes,
            })
        chain.append({
            "characteristic": {"id": char.id, "name": char.name, "category": char.category},
            "covered": bool(line_nodes),
            "pfmea_lines": line_nodes,
        })

    return {
        "product_id": product_id,
        "documents": {
            "pfmea_id": pfmea.id if pfmea else None,
            "control_plan_id": control_plan.id if control_plan else None,
            "work_instruction_id": instruction.id if instruction else None,
            "inspection_plan_id": inspection.id if inspection else None,
        },
        "chain": chain,
        "summary": {
            "characteristics": len(characteristics),
            "covered": sum(1 for c in chain if c["covered"]),
            "pfmea_lines": len(lines),
            "control_plan_items": len(cp_items),
            "instruction_steps": len(steps),
            "inspection_items": len(insp_items),
        },
    }
