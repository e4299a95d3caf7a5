"""Standardised API error responses.

Usage
-----
    from apqp.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "ControlPlan not found")
    return api_error(E.VALIDATION_REQUIRED, "pfmea_id is required")
    return api_error(E.PERSISTENCE, "batch insert failed", details={"stage": "inspection"})

Every body carries ``"success": false`` so generation callers can branch on a
single flag regardless of status code.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from apqp.core.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    UpstreamEmptyError,
    ValidationError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    UPSTREAM_EMPTY = "ERR_UPSTREAM_EMPTY"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    PERSISTENCE = "ERR_PERSISTENCE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.UPSTREAM_EMPTY: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.PERSISTENCE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra top-level keys merged into the body (partial repair
        ``steps``, ``failed_stage``, field ``details``).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "success": False,
        "error": message,
        "code": code,
    }
    if details:
        body.update(details)

    return jsonify(body), http_status


# ── Service exception → response mapping ──────────────────────────────
def register_error_handlers(bp):
    """Attach the standard service-exception handlers to a blueprint.

    UpstreamEmptyError is matched before its NotFoundError base, so both
    answer 404 with distinct codes.
    """
    bp_logger = logging.getLogger(bp.import_name)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        code = E.VALIDATION_REQUIRED if "required" in str(error) else E.VALIDATION_INVALID
        return api_error(code, str(error), details={"details": error.details} if error.details else None)

    @bp.errorhandler(UpstreamEmptyError)
    def _handle_upstream_empty(error: UpstreamEmptyError):
        return api_error(E.UPSTREAM_EMPTY, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(PersistenceError)
    def _handle_persistence(error: PersistenceError):
        return api_error(E.PERSISTENCE, str(error), details={"stage": error.stage})

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        bp_logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
