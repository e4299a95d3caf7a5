"""
Audit-facing reports over one PFMEA's document graph.

    generate_audit_report(pfmea_id | control_plan_id)   → audit evidence narrative
    generate_iatf_map(pfmea_id | control_plan_id | -)   → IATF 16949 clause map

Both render markdown, record a ReportRun (``audit_report`` / ``iatf_map``)
and return ``{report_run_id, report_type, pfmea_id, summary, markdown}``.

Wording rule for both documents: the platform drafts and checks, people
review and approve.  Nothing is presented as a system decision.

Clause statuses computed by the IATF map are returned every time but written
back to ``IatfClause`` only when ``update_clause_status`` is set.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from apqp.core.exceptions import PersistenceError
from apqp.models import db
from apqp.models.base import _utcnow
from apqp.models.pfmea import Pfmea
from apqp.models.product import Characteristic
from apqp.models.report import IatfClause, ReportRun
from apqp.services.consistency_rules import RULES
from apqp.services.consistency_service import REPORT_TYPE as CONSISTENCY_REPORT_TYPE
from apqp.services.consistency_service import load_snapshot, resolve_pfmea_id

logger = logging.getLogger(__name__)

AUDIT_REPORT_TYPE = "audit_report"
IATF_MAP_TYPE = "iatf_map"
MAX_TRACE_EXAMPLES = 2


# ═════════════════════════════════════════════════════════════════════════════
# Shared
# ═════════════════════════════════════════════════════════════════════════════

def _today() -> str:
    return _utcnow().date().isoformat()


def _latest_check(pfmea_id: str):
    return (
        ReportRun.query.filter_by(pfmea_id=pfmea_id, report_type=CONSISTENCY_REPORT_TYPE)
        .order_by(ReportRun.created_at.desc())
        .first()
    )


def _record_run(report_type: str, pfmea_id, input_params: dict, summary: dict, detail: dict) -> ReportRun:
    """Add a completed ReportRun and commit the session (including pending clause updates)."""
    run = ReportRun(
        report_type=report_type,
        pfmea_id=pfmea_id,
        input_params=input_params,
        result_summary=summary,
        result_detail=detail,
        status="completed",
    )
    try:
        db.session.add(run)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("%s report could not be saved (pfmea=%s): %s", report_type, pfmea_id, exc)
        raise PersistenceError(report_type, str(exc)) from exc
    return run


def _table(header: list[str], rows: list[list]) -> list[str]:
    lines = [
        "| " + " | ".join(header) + " |",
        "|" + "|".join("---" for _ in header) + "|",
    ]
    lines.extend("| " + " | ".join(str(c) for c in row) + " |" for row in rows)
    return lines


# ═════════════════════════════════════════════════════════════════════════════
# Audit report
# ═════════════════════════════════════════════════════════════════════════════

def _trace_examples(snapshot, limit: int = MAX_TRACE_EXAMPLES) -> list[dict]:
    """First ``limit`` CP items with their characteristic and downstream rows."""
    examples = []
    for item in snapshot.cp_items[:limit]:
        char = snapshot.characteristics.get(item.get("characteristic_id")) or {}
        examples.append({
            "characteristic": char.get("name") or "N/A",
            "category": char.get("category") or "N/A",
            "pfmea_line_id": item.get("pfmea_line_id"),
            "control_plan_item_id": item["id"],
            "control_method": item.get("control_method") or "N/A",
            "instruction_step_ids": [
                s["id"] for s in snapshot.steps if s.get("linked_cp_item_id") == item["id"]
            ],
            "inspection_item_ids": [
                i["id"] for i in snapshot.inspection_items if i.get("linked_cp_item_id") == item["id"]
            ],
        })
    return examples


def render_audit_markdown(pfmea: dict, stats: dict, examples: list[dict] | None, latest_check) -> str:
    md = [
        "# Quality System Audit Report",
        "",
        f"**Generated:** {_today()}",
        f"**Process:** {pfmea.get('process_name') or 'N/A'}",
        f"**Revision:** Rev.{pfmea.get('revision') or 1}",
        f"**Status:** {pfmea.get('status') or 'draft'}",
        "",
        "---",
        "",
        "## 1. System Overview",
        "",
        "The platform drafts the Control Plan, Work Instructions and Inspection Plan "
        "from the PFMEA and verifies traceability and consistency between them.",
        "",
        *_table(["Party", "Role", "Control"], [
            ["System", "Drafts documents, runs consistency rules", "Rule based, LLM assisted"],
            ["Quality staff", "Review, edit, approve", "Final decision"],
        ]),
        "",
        "> Documents reach **approved** status only after review by an authorised approver.",
        "",
        "---",
        "",
        "## 2. Document Structure",
        "",
        "Characteristic is the single source of truth: every PFMEA line, control plan item "
        "and inspection item references the characteristic by id.",
        "",
        *_table(["From", "To", "Link"], [
            ["PFMEA line", "Control plan item", "`pfmea_line_id`"],
            ["Control plan item", "Instruction step", "`linked_cp_item_id`"],
            ["Control plan item", "Inspection item", "`linked_cp_item_id`"],
        ]),
        "",
        *_table(["Document rows", "Count"], [
            ["PFMEA lines", stats["pfmea_lines"]],
            ["Control plan items", stats["cp_items"]],
            ["Instruction steps", stats["instruction_steps"]],
            ["Inspection items", stats["inspection_items"]],
        ]),
        "",
        "---",
        "",
        "## 3. Traceability Evidence",
        "",
    ]

    if examples:
        for n, ex in enumerate(examples, start=1):
            md += [
                f"**Example {n}: {ex['characteristic']}**",
                "",
                *_table(["Level", "Reference"], [
                    ["Characteristic", f"{ex['characteristic']} ({ex['category']})"],
                    ["PFMEA line", f"`{ex['pfmea_line_id']}`"],
                    ["Control plan item", f"`{ex['control_plan_item_id']}`"],
                    ["Control method", ex["control_method"]],
                    ["Instruction steps", ", ".join(f"`{i}`" for i in ex["instruction_step_ids"]) or "none"],
                    ["Inspection items", ", ".join(f"`{i}`" for i in ex["inspection_item_ids"]) or "none"],
                ]),
                "",
            ]
    elif examples is None:
        md += ["> Traceability examples were not requested.", ""]
    else:
        md += ["> No control plan items exist yet for this PFMEA.", ""]

    md += [
        "---",
        "",
        "## 4. Consistency Verification",
        "",
        *_table(["Rule", "Severity", "Checks"], [
            [code, rule["severity"].value, rule["description"]] for code, rule in RULES.items()
        ]),
        "",
    ]
    if latest_check is not None:
        counts = (latest_check.result_summary or {}).get("counts", {})
        md += [
            f"**Latest check:** {latest_check.created_at.date().isoformat() if latest_check.created_at else 'N/A'}",
            "",
            *_table(["Severity", "Findings"], [
                [sev, counts.get(sev, 0)] for sev in ("HIGH", "MEDIUM", "LOW")
            ]),
            "",
        ]
    else:
        md += [
            "> No stored consistency check for this PFMEA. Run "
            "`POST /api/v1/consistency/check` with `save_results: true`.",
            "",
        ]

    md += [
        "---",
        "",
        "## 5. Change and Approval Control",
        "",
        *_table(["Status", "Meaning", "Editable"], [
            ["draft", "Generated or being written", "yes"],
            ["review", "Awaiting approval", "limited"],
            ["approved", "Released", "no (new revision required)"],
            ["obsolete", "Withdrawn", "no"],
        ]),
        "",
        "---",
        "",
        "## 6. Conclusion",
        "",
        "1. Traceability: every downstream row links back to its PFMEA line and characteristic.",
        "2. Consistency: six rules detect cross-document gaps before release.",
        "3. Human in the loop: the system drafts, authorised staff approve.",
        "",
        "*Generated by the APQP Document Platform. Final review and approval rest with the "
        "responsible quality manager.*",
        "",
    ]
    return "\n".join(md)


def generate_audit_report(pfmea_id=None, control_plan_id=None, *, include_examples: bool = True) -> dict:
    """
    Build and record the audit evidence report for one PFMEA.

    Raises:
        ValidationError: neither id given.
        NotFoundError: PFMEA or control plan does not exist.
        PersistenceError: the report run could not be stored.
    """
    pfmea_id = resolve_pfmea_id(pfmea_id, control_plan_id)
    snapshot = load_snapshot(pfmea_id)
    pfmea = db.session.get(Pfmea, pfmea_id)

    stats = {
        "pfmea_lines": len(snapshot.lines),
        "cp_items": len(snapshot.cp_items),
        "instruction_steps": len(snapshot.steps),
        "inspection_items": len(snapshot.inspection_items),
    }
    examples = _trace_examples(snapshot) if include_examples else None
    latest = _latest_check(pfmea_id)
    markdown = render_audit_markdown(pfmea.to_dict(), stats, examples, latest)

    run = _record_run(
        AUDIT_REPORT_TYPE, pfmea_id,
        input_params={"pfmea_id": pfmea_id, "control_plan_id": control_plan_id,
                      "include_traceability_examples": include_examples},
        summary=stats,
        detail={"markdown_length": len(markdown),
                "consistency_run_id": latest.id if latest else None},
    )
    logger.info("Audit report %s recorded for pfmea=%s", run.id, pfmea_id)
    return {
        "report_run_id": run.id,
        "report_type": AUDIT_REPORT_TYPE,
        "pfmea_id": pfmea_id,
        "summary": stats,
        "markdown": markdown,
    }


# ═════════════════════════════════════════════════════════════════════════════
# IATF 16949 clause map
# ═════════════════════════════════════════════════════════════════════════════

DEFAULT_CLAUSES = [
    {"clause_number": "6.1.2.1", "clause_title": "Risk Analysis",
     "requirement_summary": "Analyse process risk (e.g. PFMEA) and act on it",
     "system_evidence": "PFMEA generation, RPN and action priority ranking",
     "evidence_tables": ["pfmeas", "pfmea_lines"], "evidence_reports": ["consistency_check"],
     "compliance_status": "partial"},
    {"clause_number": "7.1.5.1.1", "clause_title": "Measurement System Analysis",
     "requirement_summary": "Measurement systems are analysed for variation",
     "system_evidence": "Inspection items name the measurement method and equipment",
     "evidence_tables": ["inspection_items", "characteristics"], "evidence_reports": ["inspection_plan"],
     "compliance_status": "partial"},
    {"clause_number": "8.3.3.3", "clause_title": "Special Characteristics",
     "requirement_summary": "Special characteristics are identified and controlled",
     "system_evidence": "Characteristic master with category drives downstream controls",
     "evidence_tables": ["characteristics"], "evidence_reports": ["traceability"],
     "compliance_status": "full"},
    {"clause_number": "8.5.1.1", "clause_title": "Control Plan",
     "requirement_summary": "Control plans are established and maintained",
     "system_evidence": "Control plan generated from PFMEA with line-level traceability",
     "evidence_tables": ["control_plans", "control_plan_items"],
     "evidence_reports": ["consistency_check", "traceability"], "compliance_status": "full"},
    {"clause_number": "8.5.1.2", "clause_title": "Standardised Work",
     "requirement_summary": "Operators work to documented, accessible instructions",
     "system_evidence": "Work instructions generated from the control plan with key points",
     "evidence_tables": ["work_instructions", "instruction_steps"],
     "evidence_reports": ["consistency_check"], "compliance_status": "full"},
    {"clause_number": "8.5.1.5", "clause_title": "Total Productive Maintenance",
     "requirement_summary": "Preventive maintenance is planned",
     "system_evidence": "Not covered by the platform",
     "evidence_tables": None, "evidence_reports": None, "compliance_status": "gap"},
    {"clause_number": "8.6.2", "clause_title": "Layout Inspection and Functional Testing",
     "requirement_summary": "Product is inspected against its requirements",
     "system_evidence": "Inspection plan generated from the control plan",
     "evidence_tables": ["inspection_plans", "inspection_items"],
     "evidence_reports": ["inspection_plan"], "compliance_status": "partial"},
    {"clause_number": "9.1.1.1", "clause_title": "Monitoring and Measurement of Processes",
     "requirement_summary": "Processes are monitored and measured",
     "system_evidence": "Sample size and frequency on control plan and inspection items",
     "evidence_tables": ["control_plan_items", "inspection_items"],
     "evidence_reports": ["consistency_check"], "compliance_status": "partial"},
    {"clause_number": "10.2.3", "clause_title": "Problem Solving",
     "requirement_summary": "A documented problem-solving process exists",
     "system_evidence": "Consistency check findings stored per run",
     "evidence_tables": ["consistency_issues"],
     "evidence_reports": ["consistency_check", "audit_report"], "compliance_status": "partial"},
    {"clause_number": "10.2.4", "clause_title": "Error-Proofing",
     "requirement_summary": "Error-proofing methods are used",
     "system_evidence": "Instruction key points carry an abnormal-action section",
     "evidence_tables": ["instruction_steps"], "evidence_reports": ["consistency_check"],
     "compliance_status": "partial"},
]

STATUS_MARK = {"full": "Full", "partial": "Partial", "gap": "Gap", "not_applicable": "N/A"}


def _clause_sort_key(clause_number: str):
    return tuple(int(p) if p.isdigit() else p for p in clause_number.split("."))


def ensure_default_clauses() -> None:
    """Seed the clause map on first use."""
    if IatfClause.query.first() is not None:
        return
    try:
        db.session.add_all(IatfClause(**c) for c in DEFAULT_CLAUSES)
        db.session.commit()
        logger.info("Seeded %d IATF clauses", len(DEFAULT_CLAUSES))
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(IATF_MAP_TYPE, str(exc)) from exc


def list_iatf_clauses() -> list[dict]:
    ensure_default_clauses()
    clauses = IatfClause.query.all()
    return [c.to_dict() for c in sorted(clauses, key=lambda c: _clause_sort_key(c.clause_number))]


def collect_stats(pfmea_id: str | None) -> dict:
    """Row counts backing the clause assessment; all zeros without a PFMEA."""
    stats = {
        "pfmea_lines": 0,
        "cp_items": 0,
        "instruction_steps": 0,
        "inspection_items": 0,
        "characteristics": 0,
        "consistency_checks": 0,
    }
    checks = ReportRun.query.filter_by(report_type=CONSISTENCY_REPORT_TYPE)
    if pfmea_id is None:
        stats["characteristics"] = Characteristic.query.count()
        stats["consistency_checks"] = checks.count()
        return stats

    snapshot = load_snapshot(pfmea_id)
    pfmea = db.session.get(Pfmea, pfmea_id)
    stats.update(
        pfmea_lines=len(snapshot.lines),
        cp_items=len(snapshot.cp_items),
        instruction_steps=len(snapshot.steps),
        inspection_items=len(snapshot.inspection_items),
        characteristics=Characteristic.query.filter_by(product_id=pfmea.product_id).count(),
        consistency_checks=checks.filter_by(pfmea_id=pfmea_id).count(),
    )
    return stats


def assess_clause(clause: dict, stats: dict) -> tuple[str, str | None]:
    """Recompute ``(compliance_status, gaps_and_actions)`` from live row counts.

    Clauses without a data-driven rule keep their stored assessment.
    """
    status = clause["compliance_status"]
    gaps = clause.get("gaps_and_actions")
    number = clause["clause_number"]

    if number == "6.1.2.1":
        if stats["pfmea_lines"]:
            status = "full" if stats["consistency_checks"] else "partial"
            if status == "partial":
                gaps = "Run and store a consistency check for this PFMEA."
        else:
            status, gaps = "gap", "No PFMEA lines. Generate the PFMEA."
    elif number == "8.3.3.3":
        if stats["characteristics"]:
            status = "full"
        else:
            status, gaps = "gap", "No characteristics in the master data."
    elif number == "8.5.1.1":
        if stats["cp_items"] and stats["pfmea_lines"]:
            status = "full"
        elif stats["cp_items"]:
            status, gaps = "partial", "Confirm the link to the PFMEA."
        else:
            status, gaps = "gap", "Generate the control plan."
    elif number == "8.5.1.2":
        if stats["instruction_steps"]:
            status = "full"
        elif stats["cp_items"]:
            status, gaps = "partial", "Generate the work instruction (POST /api/v1/generate/work-instruction)."
        else:
            status = "gap"
    elif number == "8.6.2":
        if stats["inspection_items"]:
            status = "full"
        elif stats["cp_items"]:
            status, gaps = "partial", "Generate the inspection plan (POST /api/v1/generate/inspection-plan)."
    return status, gaps


def _status_counts(mappings: list[dict]) -> dict:
    counts = {"total_clauses": len(mappings)}
    for status in ("full", "partial", "gap"):
        counts[status] = sum(1 for m in mappings if m["compliance_status"] == status)
    return counts


def render_iatf_markdown(mappings: list[dict], stats: dict) -> str:
    counts = _status_counts(mappings)
    total = counts["total_clauses"] or 1

    md = [
        "# IATF 16949 Clause Map",
        "",
        f"**Generated:** {_today()}",
        "",
        "## 1. Current Data",
        "",
        *_table(["Item", "Count"], [
            ["PFMEA lines", stats["pfmea_lines"]],
            ["Control plan items", stats["cp_items"]],
            ["Instruction steps", stats["instruction_steps"]],
            ["Inspection items", stats["inspection_items"]],
            ["Characteristics", stats["characteristics"]],
            ["Stored consistency checks", stats["consistency_checks"]],
        ]),
        "",
        "## 2. Clause Mapping",
        "",
        *_table(
            ["Clause", "Requirement", "Evidence tables", "How it is met", "Status", "Gaps & actions"],
            [
                [
                    f"**{m['clause_number']}** {m['clause_title']}",
                    m["requirement_summary"],
                    ", ".join(m.get("evidence_tables") or []) or "-",
                    m.get("system_evidence") or "-",
                    STATUS_MARK.get(m["compliance_status"], "?"),
                    m.get("gaps_and_actions") or "-",
                ]
                for m in mappings
            ],
        ),
        "",
        "## 3. Summary",
        "",
        *_table(["Status", "Clauses", "Share"], [
            [STATUS_MARK[s], counts[s], f"{counts[s] * 100 // total}%"] for s in ("full", "partial", "gap")
        ]),
        "",
        "## 4. Recommended Actions",
        "",
    ]

    for status, title in (("gap", "Immediate (gap)"), ("partial", "Improvement (partial)")):
        flagged = [m for m in mappings if m["compliance_status"] == status and m.get("gaps_and_actions")]
        if flagged:
            md += [f"### {title}", ""]
            md += [f"- **{m['clause_number']}**: {m['gaps_and_actions']}" for m in flagged]
            md.append("")

    md += [
        "*This map is generated from platform data and is not an official interpretation of "
        "IATF 16949. Final assessment rests with the quality manager and the certification auditor.*",
        "",
    ]
    return "\n".join(md)


def generate_iatf_map(pfmea_id=None, control_plan_id=None, *, update_clause_status: bool = False) -> dict:
    """
    Build and record the IATF clause map.

    Without either id the map is assessed over empty document counts.

    Raises:
        NotFoundError: a given PFMEA or control plan does not exist.
        PersistenceError: the run (or clause update) could not be stored.
    """
    if pfmea_id or control_plan_id:
        pfmea_id = resolve_pfmea_id(pfmea_id, control_plan_id)
    else:
        pfmea_id = None

    ensure_default_clauses()
    stats = collect_stats(pfmea_id)
    clauses = sorted(IatfClause.query.all(), key=lambda c: _clause_sort_key(c.clause_number))

    mappings = []
    reviewed_at = _utcnow()
    for clause in clauses:
        data = clause.to_dict()
        data["compliance_status"], data["gaps_and_actions"] = assess_clause(data, stats)
        mappings.append(data)
        if update_clause_status:
            clause.compliance_status = data["compliance_status"]
            clause.gaps_and_actions = data["gaps_and_actions"]
            clause.last_reviewed_at = reviewed_at

    markdown = render_iatf_markdown(mappings, stats)
    summary = _status_counts(mappings)
    run = _record_run(
        IATF_MAP_TYPE, pfmea_id,
        input_params={"pfmea_id": pfmea_id, "control_plan_id": control_plan_id,
                      "update_clause_status": update_clause_status},
        summary=summary,
        detail={"stats": stats, "mappings": [
            {k: m[k] for k in ("clause_number", "compliance_status", "gaps_and_actions")}
            for m in mappings
        ]},
    )
    logger.info("IATF map %s recorded (pfmea=%s, full=%d partial=%d gap=%d, persisted=%s)",
                run.id, pfmea_id, summary["full"], summary["partial"], summary["gap"],
                update_clause_status)
    return {
        "report_run_id": run.id,
        "report_type": IATF_MAP_TYPE,
        "pfmea_id": pfmea_id,
        "summary": summary,
        "clauses": mappings,
        "markdown": markdown,
    }
