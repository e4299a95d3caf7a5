"""Shared blueprint helpers.

get_or_404:          tuple-return lookup (no abort)
parse_float:         optional numeric request fields (spec limits)
db_commit_or_error:  commit with IntegrityError → 409 mapping
json_body:           request body as a dict; non-object JSON is a ValidationError
"""
import logging

from flask import request

from apqp.core.exceptions import ValidationError
from apqp.models import db
from apqp.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    Usage:
        obj, err = get_or_404(ControlPlan, cp_id)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, api_error(E.NOT_FOUND, f"{label} not found")
    return obj, None


def parse_float(value):
    """Parse an optional number; empty input returns None, garbage raises ValueError."""
    if value is None or value == "":
        return None
    return float(value)


def db_commit_or_error():
    """Commit the current session, returning an error response on failure.

    Returns:
        None on success, or a ``(response, status)`` tuple ready for ``return``.

    IntegrityError → 409 (duplicate / constraint violation)
    Other SQLAlchemyError → 500
    """
    from sqlalchemy.exc import IntegrityError, SQLAlchemyError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Database error on commit")
        return api_error(E.INTERNAL, "Database error")


def json_body() -> dict:
    """The request's JSON object; an empty or unparseable body reads as ``{}``.

    Raises:
        ValidationError: the body is JSON but not an object (array, string, number).
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(
            f"request body must be a JSON object, got {type(data).__name__}",
            details={"body": "invalid"},
        )
    return data
