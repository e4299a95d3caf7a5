"""
APQP Document Platform
Persisted report runs and the IATF 16949 clause map.

Models:
    - ReportRun: one execution of a report (consistency check, audit report,
      IATF clause map) with its input, summary and optional detail
    - ConsistencyIssue: one stored finding, pointing at the offending row
    - IatfClause: one IATF 16949 clause and how the platform evidences it

A plain consistency check returns findings without touching these tables;
only evaluate-and-persist and the report generators write here.
"""

from apqp.models import db
from apqp.models.base import _iso, _utcnow, _uuid

REPORT_TYPES = {"consistency_check", "audit_report", "iatf_map"}
REPORT_STATUSES = {"running", "completed", "failed"}
ISSUE_SEVERITIES = ("HIGH", "MEDIUM", "LOW")


class ReportRun(db.Model):
    __tablename__ = "report_runs"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_type = db.Column(db.String(50), nullable=False, default="consistency_check")
    pfmea_id = db.Column(
        db.String(36), db.ForeignKey("pfmeas.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    input_params = db.Column(db.JSON, default=dict)
    result_summary = db.Column(db.JSON, default=dict)
    result_detail = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="completed")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    issues = db.relationship(
        "ConsistencyIssue", backref="report_run", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_issues: bool = False):
        data = {
            "id": self.id,
            "report_type": self.report_type,
            "pfmea_id": self.pfmea_id,
            "input_params": self.input_params or {},
            "result_summary": self.result_summary or {},
            "result_detail": self.result_detail,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }
        if include_issues:
            data["issues"] = [i.to_dict() for i in self.issues]
        return data

    def __repr__(self):
        return f"<ReportRun {self.report_type} {self.status}>"


class ConsistencyIssue(db.Model):
    """A stored consistency finding; target columns are plain ids, not FKs."""

    __tablename__ = "consistency_issues"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    report_run_id = db.Column(
        db.String(36), db.ForeignKey("report_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    severity = db.Column(db.String(10), nullable=False, comment="HIGH | MEDIUM | LOW")
    rule_code = db.Column(db.String(10), nullable=False, index=True)
    rule_description = db.Column(db.String(300), nullable=False, default="")
    message = db.Column(db.Text, nullable=False)
    target_type = db.Column(db.String(50), nullable=False)
    target_id = db.Column(db.String(36), nullable=False)
    pfmea_line_id = db.Column(db.String(36), nullable=True)
    control_plan_item_id = db.Column(db.String(36), nullable=True)
    instruction_step_id = db.Column(db.String(36), nullable=True)
    inspection_item_id = db.Column(db.String(36), nullable=True)
    resolved = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "report_run_id": self.report_run_id,
            "severity": self.severity,
            "rule_code": self.rule_code,
            "rule_description": self.rule_description,
            "message": self.message,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "pfmea_line_id": self.pfmea_line_id,
            "control_plan_item_id": self.control_plan_item_id,
            "instruction_step_id": self.instruction_step_id,
            "inspection_item_id": self.inspection_item_id,
            "resolved": self.resolved,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ConsistencyIssue {self.rule_code} {self.severity}>"


COMPLIANCE_STATUSES = ("full", "partial", "gap", "not_applicable")


class IatfClause(db.Model):
    """
    IATF 16949 clause mapped to platform evidence.

    ``requirement_summary`` is a paraphrase of the clause intent, never the
    clause text.  ``compliance_status`` is the stored assessment; the IATF map
    report recomputes it from live data and writes it back only on request.
    """

    __tablename__ = "iatf_clauses"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    clause_number = db.Column(db.String(20), unique=True, nullable=False, comment="e.g. 8.5.1.1")
    clause_title = db.Column(db.String(255), nullable=False)
    requirement_summary = db.Column(db.Text, nullable=False)
    system_evidence = db.Column(db.Text, nullable=True)
    evidence_tables = db.Column(db.JSON, nullable=True)
    evidence_reports = db.Column(db.JSON, nullable=True)
    compliance_status = db.Column(db.String(20), nullable=False, default="partial")
    gaps_and_actions = db.Column(db.Text, nullable=True)
    last_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "clause_number": self.clause_number,
            "clause_title": self.clause_title,
            "requirement_summary": self.requirement_summary,
            "system_evidence": self.system_evidence,
            "evidence_tables": self.evidence_tables or [],
            "evidence_reports": self.evidence_reports or [],
            "compliance_status": self.compliance_status,
            "gaps_and_actions": self.gaps_and_actions,
            "last_reviewed_at": _iso(self.last_reviewed_at),
        }

    def __repr__(self):
        return f"<IatfClause {self.clause_number} {self.compliance_status}>"
