"""
DocumentHeader — abstract base for every generated quality document.

PFMEA, Control Plan, Work Instruction and Inspection Plan headers share:
  - UUID string primary key
  - revision counter + status label (draft | review | approved | obsolete)
  - optional document number
  - created/updated timestamps
  - find_draft(**upstream) lookup used by the idempotent generation path

The status label is carried, not enforced: nothing in the platform drives a
workflow off it except the "one draft per upstream document" uniqueness index
declared on each concrete table with ``draft_unique_index``.
"""

import uuid
from datetime import datetime, timezone

from apqp.models import db

DOCUMENT_STATUSES = {"draft", "review", "approved", "obsolete"}


def _uuid():
    """Generate a new UUID4 string for primary keys."""
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def draft_unique_index(name: str, column: str):
    """Partial unique index: at most one ``draft`` row per upstream id."""
    return db.Index(
        name,
        column,
        unique=True,
        postgresql_where=db.text("status = 'draft'"),
        sqlite_where=db.text("status = 'draft'"),
    )


class DocumentHeader(db.Model):
    """Abstract base for document header tables."""
    __abstract__ = True

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    doc_number = db.Column(db.String(50), nullable=True)
    revision = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(
        db.String(20), nullable=False, default="draft", index=True,
        comment="draft | review | approved | obsolete",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @classmethod
    def find_draft(cls, **upstream):
        """Return the draft header keyed by the given upstream column, or None."""
        return cls.query.filter_by(status="draft", **upstream).first()

    def header_dict(self) -> dict:
        return {
            "id": self.id,
            "doc_number": self.doc_number,
            "revision": self.revision,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
