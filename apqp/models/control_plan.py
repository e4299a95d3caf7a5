"""
APQP Document Platform
Control Plan models.

Models:
    - ControlPlan: header, one draft per PFMEA
    - ControlPlanItem: exactly two per linked PFMEA line (prevention + detection)

Step numbering: for the i-th (0-based) source line the prevention item is
step 2i+1 and the detection item is step 2i+2.  A skipped source line still
consumes its index, so gaps are possible and expected.
"""

from apqp.models import db
from apqp.models.base import DocumentHeader, _iso, _utcnow, _uuid, draft_unique_index

CONTROL_TYPES = ("prevention", "detection")


class ControlPlan(DocumentHeader):
    """Control plan header derived from one PFMEA."""

    __tablename__ = "control_plans"
    __table_args__ = (
        draft_unique_index("uq_control_plans_pfmea_draft", "pfmea_id"),
    )

    pfmea_id = db.Column(
        db.String(36), db.ForeignKey("pfmeas.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    pfmea = db.relationship("Pfmea", foreign_keys=[pfmea_id])
    items = db.relationship(
        "ControlPlanItem", backref="control_plan", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ControlPlanItem.step_no",
    )

    def to_dict(self, include_items: bool = False):
        data = self.header_dict()
        data.update({
            "pfmea_id": self.pfmea_id,
            "items_count": self.items.count(),
        })
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data

    def __repr__(self):
        return f"<ControlPlan {self.id[:8]} rev{self.revision} {self.status}>"


class ControlPlanItem(db.Model):
    """
    One prevention or detection control.

    Both ``pfmea_line_id`` and ``characteristic_id`` are mandatory: an item
    without its source line or characteristic breaks traceability.
    """

    __tablename__ = "control_plan_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    control_plan_id = db.Column(
        db.String(36), db.ForeignKey("control_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    pfmea_line_id = db.Column(
        db.String(36), db.ForeignKey("pfmea_lines.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    characteristic_id = db.Column(
        db.String(36), db.ForeignKey("characteristics.id"),
        nullable=False, index=True,
    )
    step_no = db.Column(db.Integer, nullable=False)
    process_step = db.Column(db.String(200), nullable=False)
    control_type = db.Column(db.String(20), nullable=False, comment="prevention | detection")
    control_method = db.Column(db.Text, nullable=False, default="")
    sample_size = db.Column(db.String(50), nullable=False, default="")
    frequency = db.Column(db.String(100), nullable=False, default="")
    reaction_plan = db.Column(db.Text, nullable=False, default="")
    responsible = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    pfmea_line = db.relationship("PfmeaLine", foreign_keys=[pfmea_line_id])
    characteristic = db.relationship("Characteristic", foreign_keys=[characteristic_id])

    def to_dict(self):
        return {
            "id": self.id,
            "control_plan_id": self.control_plan_id,
            "pfmea_line_id": self.pfmea_line_id,
            "characteristic_id": self.characteristic_id,
            "step_no": self.step_no,
            "process_step": self.process_step,
            "control_type": self.control_type,
            "control_method": self.control_method,
            "sample_size": self.sample_size,
            "frequency": self.frequency,
            "reaction_plan": self.reaction_plan,
            "responsible": self.responsible,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ControlPlanItem #{self.step_no} {self.control_type}>"
