"""
APQP Document Platform
Work Instruction (SOP) models.

Models:
    - WorkInstruction: header, one draft per Control Plan
    - InstructionStep: one or more per Control Plan item, always linked
"""

from apqp.models import db
from apqp.models.base import DocumentHeader, _iso, _utcnow, _uuid, draft_unique_index


class WorkInstruction(DocumentHeader):
    """Operator work instruction derived from one Control Plan."""

    __tablename__ = "work_instructions"
    __table_args__ = (
        draft_unique_index("uq_work_instructions_cp_draft", "control_plan_id"),
    )

    control_plan_id = db.Column(
        db.String(36), db.ForeignKey("control_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    control_plan = db.relationship("ControlPlan", foreign_keys=[control_plan_id])
    steps = db.relationship(
        "InstructionStep", backref="work_instruction", lazy="dynamic",
        cascade="all, delete-orphan", order_by="InstructionStep.step_no",
    )

    def to_dict(self, include_steps: bool = False):
        data = self.header_dict()
        data.update({
            "control_plan_id": self.control_plan_id,
            "steps_count": self.steps.count(),
        })
        if include_steps:
            data["steps"] = [step.to_dict() for step in self.steps]
        return data

    def __repr__(self):
        return f"<WorkInstruction {self.id[:8]} rev{self.revision} {self.status}>"


class InstructionStep(db.Model):
    """A single operator step; ``linked_cp_item_id`` is never NULL."""

    __tablename__ = "instruction_steps"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    work_instruction_id = db.Column(
        db.String(36), db.ForeignKey("work_instructions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    linked_cp_item_id = db.Column(
        db.String(36), db.ForeignKey("control_plan_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_no = db.Column(db.Integer, nullable=False)
    process_step = db.Column(db.String(200), nullable=False)
    action = db.Column(db.Text, nullable=False, default="")
    key_point = db.Column(db.Text, nullable=False, default="")
    safety_note = db.Column(db.Text, nullable=True)
    quality_point = db.Column(db.Text, nullable=True)
    tools_equipment = db.Column(db.String(200), nullable=True)
    estimated_time_sec = db.Column(db.Integer, nullable=False, default=60)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    cp_item = db.relationship("ControlPlanItem", foreign_keys=[linked_cp_item_id])

    def to_dict(self):
        return {
            "id": self.id,
            "work_instruction_id": self.work_instruction_id,
            "linked_cp_item_id": self.linked_cp_item_id,
            "step_no": self.step_no,
            "process_step": self.process_step,
            "action": self.action,
            "key_point": self.key_point,
            "safety_note": self.safety_note,
            "quality_point": self.quality_point,
            "tools_equipment": self.tools_equipment,
            "estimated_time_sec": self.estimated_time_sec,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<InstructionStep #{self.step_no}>"
