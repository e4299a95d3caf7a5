"""
Stage Generator plumbing shared by every document-generation stage.

State machine per stage:

    NotStarted ─┬─> Idempotent-Return        (draft already exists)
                └─> Generating ─┬─> Inserted
                                └─> RolledBack  (batch insert failed)

Steps owned here:
    - plan numbering (done by the stage, carried on ``PlannedItem.number``)
    - parallel content resolution through the LLM gateway
    - header insert; a uniqueness violation means a concurrent request won
      the race, so the existing draft is returned instead of an error
    - atomic child batch insert with compensating header delete

Transaction policy: this module commits.  The header is committed on its own
so the draft-uniqueness index arbitrates concurrent requests; the child rows
are committed in one batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from apqp.core.exceptions import PersistenceError, ValidationError
from apqp.models import db

logger = logging.getLogger(__name__)

STATUS_GENERATED = "generated"
STATUS_EXISTING = "existing"


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StageSpec:
    """Static description of one stage's tables and result keys."""
    name: str                 # "control_plan"
    label: str                # "Control Plan"
    header_model: type
    child_model: type
    upstream_column: str      # header column keyed by the upstream id
    child_fk: str             # child column pointing at the header
    link_column: str          # child column pointing at the upstream item
    number_column: str        # child ordering column ("step_no" | "item_no")
    upstream_key: str         # traceability key for the upstream id
    id_key: str               # result key for the document id
    count_key: str            # result key for the child count
    linked_key: str           # traceability key for the linked upstream ids


@dataclass
class PlannedItem:
    """One downstream row to be built, numbered before content resolution."""
    number: int
    link_id: str
    source: dict
    characteristic: dict
    messages: list
    required_keys: tuple
    fallback: dict
    purpose: str = ""
    extra: dict = field(default_factory=dict)


@dataclass
class StageResult:
    spec: StageSpec
    upstream_id: str
    document_id: str
    count: int
    status: str
    linked_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "status": self.status,
            self.spec.id_key: self.document_id,
            self.spec.count_key: self.count,
            "traceability": {
                self.spec.upstream_key: self.upstream_id,
                self.spec.id_key: self.document_id,
                self.spec.linked_key: self.linked_ids,
            },
        }


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def _log_context(spec: StageSpec, upstream_id, document_id, **more) -> dict:
    return {"stage": spec.name, "upstream_id": upstream_id, "document_id": document_id, **more}


def require_id(value, field_name: str) -> str:
    """Normalise a required id argument; raises ValidationError when blank."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required", details={field_name: "required"})
    return str(value).strip()


def text(value, default: str = "") -> str:
    """Coerce LLM content to a column-safe string."""
    if value is None:
        return default
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v) for v in value)
    return str(value)


def unique_in_order(values) -> list:
    seen = set()
    ordered = []
    for v in values:
        if v not in seen:
            seen.add(v)
            ordered.append(v)
    return ordered


def load_characteristics(ids) -> dict[str, dict]:
    """Snapshot the referenced characteristics as plain dicts, keyed by id."""
    from apqp.models.product import Characteristic

    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    rows = Characteristic.query.filter(Characteristic.id.in_(wanted)).all()
    return {c.id: c.to_dict() for c in rows}


def latest_header(model, **upstream):
    """The draft header for an upstream id, else the most recent revision."""
    draft = model.find_draft(**upstream)
    if draft is not None:
        return draft
    return (
        model.query.filter_by(**upstream)
        .order_by(model.revision.desc(), model.created_at.desc())
        .first()
    )


def existing_result(spec: StageSpec, header) -> StageResult:
    """Idempotent-Return: report an existing draft without generating."""
    link_attr = getattr(spec.child_model, spec.link_column)
    number_attr = getattr(spec.child_model, spec.number_column)
    rows = (
        db.session.query(link_attr)
        .filter(getattr(spec.child_model, spec.child_fk) == header.id)
        .order_by(number_attr)
        .all()
    )
    return StageResult(
        spec=spec,
        upstream_id=getattr(header, spec.upstream_column),
        document_id=header.id,
        count=len(rows),
        status=STATUS_EXISTING,
        linked_ids=unique_in_order(r[0] for r in rows),
    )


def find_existing(spec: StageSpec, upstream_id: str) -> StageResult | None:
    header = spec.header_model.find_draft(**{spec.upstream_column: upstream_id})
    if header is None:
        return None
    logger.info("%s draft already exists for %s=%s (id=%s)",
                spec.label, spec.upstream_column, upstream_id, header.id,
                extra=_log_context(spec, upstream_id, header.id))
    return existing_result(spec, header)


# ═════════════════════════════════════════════════════════════════════════════
# Content Resolution
# ═════════════════════════════════════════════════════════════════════════════

def resolve_contents(planned: list[PlannedItem], gateway, max_workers: int | None = None) -> list[dict]:
    """Resolve content for every planned item, in planned order.

    Items are independent, so gateway calls run on a thread pool.  Results
    are returned aligned with ``planned`` regardless of completion order.
    Fallback keys fill anything the generated object omits.
    """
    if not planned:
        return []
    if max_workers is None:
        max_workers = current_app.config.get("GENERATION_MAX_WORKERS", 4)
    workers = max(1, min(int(max_workers), len(planned)))

    def _resolve(item: PlannedItem):
        return gateway.generate(
            item.messages, item.required_keys, item.fallback, purpose=item.purpose,
        )

    if workers == 1:
        results = [_resolve(item) for item in planned]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="apqp-gen") as pool:
            results = list(pool.map(_resolve, planned))

    fallback_count = sum(1 for r in results if not r.ok)
    if fallback_count:
        logger.info("Fallback content used for %d/%d items (%s)",
                    fallback_count, len(results), planned[0].purpose)

    return [{**item.fallback, **result.content} for item, result in zip(planned, results)]


# ═════════════════════════════════════════════════════════════════════════════
# Persistence
# ═════════════════════════════════════════════════════════════════════════════

def insert_header(spec: StageSpec, header) -> tuple[object, bool]:
    """Commit a new draft header.

    Returns ``(header, True)`` when inserted.  When the draft-uniqueness index
    rejects it, another request created the draft first: returns
    ``(existing_header, False)``.
    """
    upstream_id = getattr(header, spec.upstream_column)
    db.session.add(header)
    try:
        db.session.commit()
        return header, True
    except IntegrityError as exc:
        db.session.rollback()
        existing = spec.header_model.find_draft(**{spec.upstream_column: upstream_id})
        if existing is None:
            logger.error("%s header insert failed for %s=%s: %s",
                         spec.label, spec.upstream_column, upstream_id, exc.orig)
            raise PersistenceError(spec.name, str(exc.orig)) from exc
        logger.info("%s draft for %s=%s created concurrently (id=%s); using it",
                    spec.label, spec.upstream_column, upstream_id, existing.id)
        return existing, False


def _flush_rows(rows: list) -> None:
    db.session.add_all(rows)
    db.session.flush()


def insert_batch(spec: StageSpec, header_id: str, build_rows) -> list:
    """Build and insert all child rows atomically or remove the header.

    ``build_rows(header_id)`` runs inside the guard: generated content that
    cannot be coerced into a row fails the batch like a database error does.

    Raises:
        PersistenceError: the batch failed; the header has been deleted.
    """
    rows: list = []
    try:
        rows = build_rows(header_id)
        _flush_rows(rows)
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.error("%s batch insert failed (header=%s, rows=%d): %s: %s",
                     spec.label, header_id, len(rows), type(exc).__name__, exc,
                     extra=_log_context(spec, None, header_id, rows=len(rows)))
        _delete_header(spec, header_id)
        raise PersistenceError(spec.name, str(exc)) from exc
    return rows


def _delete_header(spec: StageSpec, header_id: str) -> None:
    try:
        spec.header_model.query.filter_by(id=header_id).delete()
        db.session.commit()
        logger.info("%s header %s removed after failed batch", spec.label, header_id)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("%s header %s could not be removed", spec.label, header_id)


def persist_document(spec: StageSpec, header, build_rows) -> StageResult:
    """Insert header + children; ``build_rows(header_id)`` returns child rows.

    Returns the existing draft's result when a concurrent request won the
    header race.
    """
    header, created = insert_header(spec, header)
    if not created:
        return existing_result(spec, header)

    header_id = header.id
    upstream_id = getattr(header, spec.upstream_column)
    rows = insert_batch(spec, header_id, build_rows)

    link_ids = unique_in_order(getattr(r, spec.link_column) for r in rows)
    logger.info("%s %s generated: %d rows for %s=%s",
                spec.label, header_id, len(rows), spec.upstream_column, upstream_id,
                extra=_log_context(spec, upstream_id, header_id, rows=len(rows)))
    return StageResult(
        spec=spec,
        upstream_id=upstream_id,
        document_id=header_id,
        count=len(rows),
        status=STATUS_GENERATED,
        linked_ids=link_ids,
    )
