"""
APQP Document Platform
Inspection Plan models.

Models:
    - InspectionPlan: header, one draft per Control Plan
    - InspectionItem: exactly one per Control Plan item (1:1)

``sampling_plan`` is copied from the control plan item as
"{sample_size} / {frequency}" so that consistency rule R4 can detect drift
when either side is edited afterwards.
"""

from apqp.models import db
from apqp.models.base import DocumentHeader, _iso, _utcnow, _uuid, draft_unique_index


class InspectionPlan(DocumentHeader):
    """Inspection standard derived from one Control Plan."""

    __tablename__ = "inspection_plans"
    __table_args__ = (
        draft_unique_index("uq_inspection_plans_cp_draft", "control_plan_id"),
    )

    control_plan_id = db.Column(
        db.String(36), db.ForeignKey("control_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    control_plan = db.relationship("ControlPlan", foreign_keys=[control_plan_id])
    items = db.relationship(
        "InspectionItem", backref="inspection_plan", lazy="dynamic",
        cascade="all, delete-orphan", order_by="InspectionItem.item_no",
    )

    def to_dict(self, include_items: bool = False):
        data = self.header_dict()
        data.update({
            "control_plan_id": self.control_plan_id,
            "items_count": self.items.count(),
        })
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data

    def __repr__(self):
        return f"<InspectionPlan {self.id[:8]} rev{self.revision} {self.status}>"


class InspectionItem(db.Model):
    """One inspection check, linked to its control plan item and characteristic."""

    __tablename__ = "inspection_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    inspection_plan_id = db.Column(
        db.String(36), db.ForeignKey("inspection_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    linked_cp_item_id = db.Column(
        db.String(36), db.ForeignKey("control_plan_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    characteristic_id = db.Column(
        db.String(36), db.ForeignKey("characteristics.id"),
        nullable=False, index=True,
    )
    item_no = db.Column(db.Integer, nullable=False)
    inspection_item_name = db.Column(db.String(300), nullable=False)
    inspection_method = db.Column(db.Text, nullable=False, default="")
    sampling_plan = db.Column(db.String(200), nullable=False, default="")
    acceptance_criteria = db.Column(db.Text, nullable=False, default="")
    measurement_equipment = db.Column(db.String(200), nullable=True)
    ng_handling = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    cp_item = db.relationship("ControlPlanItem", foreign_keys=[linked_cp_item_id])
    characteristic = db.relationship("Characteristic", foreign_keys=[characteristic_id])

    def to_dict(self):
        return {
            "id": self.id,
            "inspection_plan_id": self.inspection_plan_id,
            "linked_cp_item_id": self.linked_cp_item_id,
            "characteristic_id": self.characteristic_id,
            "item_no": self.item_no,
            "inspection_item_name": self.inspection_item_name,
            "inspection_method": self.inspection_method,
            "sampling_plan": self.sampling_plan,
            "acceptance_criteria": self.acceptance_criteria,
            "measurement_equipment": self.measurement_equipment,
            "ng_handling": self.ng_handling,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<InspectionItem #{self.item_no} {self.inspection_item_name[:40]}>"
