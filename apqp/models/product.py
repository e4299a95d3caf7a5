"""
APQP Document Platform
Product master data models.

Models:
    - Product: a manufactured part (code, name, customer)
    - Process: a manufacturing process step owned by a product
    - Characteristic: single source of truth for one measurable or visual
      product/process attribute

Architecture chain: Product → Characteristic → PFMEA line → Control Plan item
→ {Instruction step, Inspection item}.  Downstream rows hold only the
characteristic id; its content is never copied.
"""

from apqp.models import db
from apqp.models.base import _iso, _utcnow, _uuid


# ── Constants ────────────────────────────────────────────────────────────────

PRODUCT_STATUSES = {"development", "active", "discontinued"}
CHARACTERISTIC_TYPES = {"product", "process"}
CHARACTERISTIC_CATEGORIES = {"critical", "major", "minor"}


# ═══════════════════════════════════════════════════════════════════════════
#  PRODUCT
# ═══════════════════════════════════════════════════════════════════════════

class Product(db.Model):
    """A manufactured part whose quality documents are generated."""

    __tablename__ = "products"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    customer = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="development")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    processes = db.relationship(
        "Process", backref="product", lazy="dynamic",
        cascade="all, delete-orphan", order_by="Process.sequence_no",
    )
    characteristics = db.relationship(
        "Characteristic", backref="product", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "customer": self.customer,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Product {self.code}: {self.name[:40]}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PROCESS
# ═══════════════════════════════════════════════════════════════════════════

class Process(db.Model):
    """A manufacturing process step (e.g. OP10 Turning)."""

    __tablename__ = "processes"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    code = db.Column(db.String(30), nullable=False, comment="e.g. OP10")
    name = db.Column(db.String(200), nullable=False)
    sequence_no = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "code": self.code,
            "name": self.name,
            "sequence_no": self.sequence_no,
        }

    def __repr__(self):
        return f"<Process {self.code}: {self.name[:40]}>"


# ═══════════════════════════════════════════════════════════════════════════
#  CHARACTERISTIC
# ═══════════════════════════════════════════════════════════════════════════

class Characteristic(db.Model):
    """
    Master record for one product or process characteristic.

    Category drives sampling aggressiveness in generated control plans
    (critical → 100%, major → n=5, minor → n=3).
    """

    __tablename__ = "characteristics"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    process_id = db.Column(
        db.String(36), db.ForeignKey("processes.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(20), nullable=False, default="product", comment="product | process")
    category = db.Column(db.String(20), nullable=False, default="minor", comment="critical | major | minor")
    specification = db.Column(db.String(300), nullable=True, comment="Nominal spec text, e.g. Ø10 ±0.5")
    lsl = db.Column(db.Float, nullable=True, comment="Lower spec limit")
    usl = db.Column(db.Float, nullable=True, comment="Upper spec limit")
    unit = db.Column(db.String(20), nullable=True)
    measurement_method = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    process = db.relationship("Process", foreign_keys=[process_id])

    @property
    def has_limits(self) -> bool:
        return self.lsl is not None or self.usl is not None

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "process_id": self.process_id,
            "name": self.name,
            "type": self.type,
            "category": self.category,
            "specification": self.specification,
            "lsl": self.lsl,
            "usl": self.usl,
            "unit": self.unit,
            "measurement_method": self.measurement_method,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Characteristic {self.name[:40]} ({self.category})>"
