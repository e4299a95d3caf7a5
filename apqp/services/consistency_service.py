"""
Consistency check service — loads the document graph and runs the rules.

    check_consistency(pfmea_id)                → evaluate only
    check_consistency(pfmea_id, persist=True)  → evaluate and store a ReportRun
                                                 with one ConsistencyIssue per finding

The graph is loaded once with IN-list queries per level; downstream documents
are the draft (else latest) revision at each level.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from apqp.core.exceptions import NotFoundError, PersistenceError, ValidationError
from apqp.models import db
from apqp.models.control_plan import ControlPlan, ControlPlanItem
from apqp.models.inspection import InspectionItem, InspectionPlan
from apqp.models.pfmea import Pfmea, PfmeaLine
from apqp.models.report import ConsistencyIssue, ReportRun
from apqp.models.work_instruction import InstructionStep, WorkInstruction
from apqp.services.consistency_rules import GraphSnapshot, evaluate, rule_description
from apqp.services.generation_common import latest_header, load_characteristics, require_id

logger = logging.getLogger(__name__)

REPORT_TYPE = "consistency_check"


def resolve_pfmea_id(pfmea_id=None, control_plan_id=None) -> str:
    """Accept either a PFMEA id or a control plan id and return the PFMEA id."""
    if pfmea_id:
        return require_id(pfmea_id, "pfmea_id")
    if control_plan_id:
        control_plan_id = require_id(control_plan_id, "control_plan_id")
        control_plan = db.session.get(ControlPlan, control_plan_id)
        if control_plan is None:
            raise NotFoundError("ControlPlan", control_plan_id)
        return control_plan.pfmea_id
    raise ValidationError(
        "pfmea_id or control_plan_id is required",
        details={"pfmea_id": "required", "control_plan_id": "required"},
    )


def load_snapshot(pfmea_id) -> GraphSnapshot:
    pfmea_id = require_id(pfmea_id, "pfmea_id")
    pfmea = db.session.get(Pfmea, pfmea_id)
    if pfmea is None:
        raise NotFoundError("Pfmea", pfmea_id)

    lines = (
        PfmeaLine.query.filter_by(pfmea_id=pfmea_id)
        .order_by(PfmeaLine.step_no, PfmeaLine.created_at, PfmeaLine.id)
        .all()
    )

    cp_items, steps, insp_items = [], [], []
    control_plan = latest_header(ControlPlan, pfmea_id=pfmea_id)
    if control_plan is not None:
        cp_items = (
            ControlPlanItem.query.filter_by(control_plan_id=control_plan.id)
            .order_by(ControlPlanItem.step_no, ControlPlanItem.id)
            .all()
        )
        instruction = latest_header(WorkInstruction, control_plan_id=control_plan.id)
        inspection = latest_header(InspectionPlan, control_plan_id=control_plan.id)
        cp_ids = [item.id for item in cp_items]
        if instruction is not None and cp_ids:
            steps = (
                InstructionStep.query.filter(
                    InstructionStep.work_instruction_id == instruction.id,
                    InstructionStep.linked_cp_item_id.in_(cp_ids),
                )
                .order_by(InstructionStep.step_no, InstructionStep.id)
                .all()
            )
        if inspection is not None and cp_ids:
            insp_items = (
                InspectionItem.query.filter(
                    InspectionItem.inspection_plan_id == inspection.id,
                    InspectionItem.linked_cp_item_id.in_(cp_ids),
                )
                .order_by(InspectionItem.item_no, InspectionItem.id)
                .all()
            )

    char_ids = (
        [line.characteristic_id for line in lines]
        + [item.characteristic_id for item in cp_items]
        + [insp.characteristic_id for insp in insp_items]
    )
    return GraphSnapshot(
        pfmea_id=pfmea_id,
        lines=tuple(line.to_dict() for line in lines),
        cp_items=tuple(item.to_dict() for item in cp_items),
        steps=tuple(step.to_dict() for step in steps),
        inspection_items=tuple(insp.to_dict() for insp in insp_items),
        characteristics=load_characteristics(char_ids),
    )


def check_consistency(pfmea_id, *, persist: bool = False) -> dict:
    """
    Evaluate R1-R6 over the document graph of one PFMEA.

    Returns:
        {"pfmea_id", "findings": [...], "counts": {HIGH, MEDIUM, LOW}}
        plus "report_run_id" when ``persist`` is set.

    Raises:
        ValidationError / NotFoundError: bad or unknown pfmea_id.
        PersistenceError: the report could not be stored.
    """
    snapshot = load_snapshot(pfmea_id)
    result = evaluate(snapshot)
    counts = result.counts
    logger.info("Consistency check pfmea=%s: HIGH=%d MEDIUM=%d LOW=%d",
                snapshot.pfmea_id, counts["HIGH"], counts["MEDIUM"], counts["LOW"])

    payload = {"pfmea_id": snapshot.pfmea_id, **result.to_dict()}
    if persist:
        payload["report_run_id"] = _save_report(snapshot, result)
    return payload


def _save_report(snapshot: GraphSnapshot, result) -> str:
    run = ReportRun(
        report_type=REPORT_TYPE,
        pfmea_id=snapshot.pfmea_id,
        input_params={"pfmea_id": snapshot.pfmea_id},
        result_summary={"counts": result.counts, "total": len(result.findings)},
        status="completed",
    )
    try:
        db.session.add(run)
        db.session.flush()
        db.session.add_all([
            ConsistencyIssue(
                report_run_id=run.id,
                severity=f.severity.value,
                rule_code=f.rule,
                rule_description=rule_description(f.rule),
                message=f.message,
                target_type=f.target_type,
                target_id=f.target_id,
                pfmea_line_id=f.refs.get("pfmea_line_id"),
                control_plan_item_id=f.refs.get("control_plan_item_id"),
                instruction_step_id=f.refs.get("instruction_step_id"),
                inspection_item_id=f.refs.get("inspection_item_id"),
            )
            for f in result.findings
        ])
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Consistency report for pfmea=%s could not be saved: %s", snapshot.pfmea_id, exc)
        raise PersistenceError(REPORT_TYPE, str(exc)) from exc
    return run.id


def list_report_runs(pfmea_id, limit: int = 20) -> list[dict]:
    pfmea_id = require_id(pfmea_id, "pfmea_id")
    runs = (
        ReportRun.query.filter_by(pfmea_id=pfmea_id, report_type=REPORT_TYPE)
        .order_by(ReportRun.created_at.desc())
        .limit(limit)
        .all()
    )
    return [run.to_dict() for run in runs]


def get_report_run(run_id) -> dict:
    run_id = require_id(run_id, "run_id")
    run = db.session.get(ReportRun, run_id)
    if run is None:
        raise NotFoundError("ReportRun", run_id)
    return run.to_dict(include_issues=True)
