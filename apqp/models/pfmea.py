"""
APQP Document Platform
PFMEA (process failure-mode and effects analysis) models.

Models:
    - Pfmea: analysis header, one draft per product
    - PfmeaLine: one potential failure mode for one process step

Risk scoring:
    RPN = severity × occurrence × detection, each rating clamped to 1-10,
    so RPN is always in [1, 1000].  Action priority is derived from RPN and
    severity (see ``action_priority``); the thresholds drive consistency
    rule R1 and must not drift.
"""

from apqp.models import db
from apqp.models.base import DocumentHeader, _iso, _utcnow, _uuid, draft_unique_index


# ── Risk Scoring ─────────────────────────────────────────────────────────────

RATING_MIN = 1
RATING_MAX = 10

AP_HIGH_RPN = 200
AP_HIGH_SEVERITY = 9
AP_MEDIUM_RPN = 100

ACTION_PRIORITIES = {"H", "M", "L"}


def clamp_rating(value) -> int:
    """Clamp a severity/occurrence/detection rating into 1-10."""
    try:
        rating = int(float(value))
    except (TypeError, ValueError, OverflowError):
        rating = RATING_MIN
    return max(RATING_MIN, min(RATING_MAX, rating))


def calculate_rpn(severity, occurrence, detection) -> int:
    """Risk priority number: S × O × D (1-1000)."""
    return clamp_rating(severity) * clamp_rating(occurrence) * clamp_rating(detection)


def action_priority(rpn: int, severity: int) -> str:
    """
    H  — RPN ≥ 200 or severity ≥ 9
    M  — RPN ≥ 100
    L  — otherwise
    """
    if rpn >= AP_HIGH_RPN or severity >= AP_HIGH_SEVERITY:
        return "H"
    if rpn >= AP_MEDIUM_RPN:
        return "M"
    return "L"


# ═══════════════════════════════════════════════════════════════════════════
#  PFMEA HEADER
# ═══════════════════════════════════════════════════════════════════════════

class Pfmea(DocumentHeader):
    """Failure-mode analysis header for one product/process pair."""

    __tablename__ = "pfmeas"
    __table_args__ = (
        draft_unique_index("uq_pfmeas_product_draft", "product_id"),
    )

    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    process_name = db.Column(db.String(200), nullable=False)

    product = db.relationship("Product", foreign_keys=[product_id])
    lines = db.relationship(
        "PfmeaLine", backref="pfmea", lazy="dynamic",
        cascade="all, delete-orphan", order_by="PfmeaLine.step_no",
    )

    def to_dict(self, include_lines: bool = False):
        data = self.header_dict()
        data.update({
            "product_id": self.product_id,
            "process_name": self.process_name,
            "lines_count": self.lines.count(),
        })
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data

    def __repr__(self):
        return f"<Pfmea {self.id[:8]} rev{self.revision} {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PFMEA LINE
# ═══════════════════════════════════════════════════════════════════════════

class PfmeaLine(db.Model):
    """
    One potential failure mode.

    Identity is stable and used as the fan-out key for Control Plan generation.
    ``characteristic_id`` may be NULL; such lines are skipped downstream.
    """

    __tablename__ = "pfmea_lines"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    pfmea_id = db.Column(
        db.String(36), db.ForeignKey("pfmeas.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_no = db.Column(db.Integer, nullable=False, default=0)
    process_step = db.Column(db.String(200), nullable=False)
    characteristic_id = db.Column(
        db.String(36), db.ForeignKey("characteristics.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    potential_failure_mode = db.Column(db.Text, nullable=False, default="")
    potential_effect = db.Column(db.Text, nullable=False, default="")
    potential_cause = db.Column(db.Text, nullable=False, default="")

    severity = db.Column(db.Integer, nullable=False, default=1, comment="1-10")
    occurrence = db.Column(db.Integer, nullable=False, default=1, comment="1-10")
    detection = db.Column(db.Integer, nullable=False, default=1, comment="1-10")
    rpn = db.Column(db.Integer, nullable=False, default=1, comment="S × O × D")
    action_priority = db.Column(db.String(1), nullable=False, default="L", comment="H/M/L")

    current_control_prevention = db.Column(db.Text, nullable=True)
    current_control_detection = db.Column(db.Text, nullable=True)
    recommended_action = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    characteristic = db.relationship("Characteristic", foreign_keys=[characteristic_id])

    def recalculate(self):
        """Clamp ratings and recompute RPN + action priority."""
        self.severity = clamp_rating(self.severity)
        self.occurrence = clamp_rating(self.occurrence)
        self.detection = clamp_rating(self.detection)
        self.rpn = calculate_rpn(self.severity, self.occurrence, self.detection)
        self.action_priority = action_priority(self.rpn, self.severity)

    def to_dict(self):
        return {
            "id": self.id,
            "pfmea_id": self.pfmea_id,
            "step_no": self.step_no,
            "process_step": self.process_step,
            "characteristic_id": self.characteristic_id,
            "potential_failure_mode": self.potential_failure_mode,
            "potential_effect": self.potential_effect,
            "potential_cause": self.potential_cause,
            "severity": self.severity,
            "occurrence": self.occurrence,
            "detection": self.detection,
            "rpn": self.rpn,
            "action_priority": self.action_priority,
            "current_control_prevention": self.current_control_prevention,
            "current_control_detection": self.current_control_detection,
            "recommended_action": self.recommended_action,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<PfmeaLine #{self.step_no} RPN={self.rpn} AP={self.action_priority}>"
