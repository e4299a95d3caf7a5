"""
Platform-wide exception hierarchy.

Services raise these; blueprints map them to HTTP status codes once, so every
endpoint reports failures the same way.

Usage:
    from apqp.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ControlPlan", resource_id=cp_id)
    raise ValidationError("pfmea_id is required", details={"pfmea_id": "missing"})

Generation-specific:
    UpstreamEmptyError  — upstream document exists but has no eligible items
    PersistenceError    — atomic batch insert failed; header already removed
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Pfmea", "ControlPlan").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class UpstreamEmptyError(NotFoundError):
    """Raised when the upstream document exists but has zero eligible items.

    Shares the 404 mapping with NotFoundError; only the message differs.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None, reason: str = "") -> None:
        super().__init__(resource, resource_id)
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " has no eligible items"
        if reason:
            msg += f" ({reason})"
        self.args = (msg,)


class ValidationError(Exception):
    """Raised when required input is missing or malformed.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class PersistenceError(Exception):
    """Raised when a generated batch could not be stored.

    The stage has already rolled back the batch and deleted the header it
    created, so no partial document remains.

    Args:
        stage: Generation stage name (e.g. "control_plan").
        message: Underlying database error text.
    """

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"{stage} batch insert failed: {message}")
