"""Error taxonomy for the evaluation core.

Every error carries the HTTP-equivalent ``status_code`` and a stable ``kind``
so the API layer can surface it without losing what went wrong.
"""
from __future__ import annotations


class HackevalError(Exception):
    """Base class for errors raised by the evaluation core."""
    status_code: int = 500
    kind: str = "error"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(HackevalError):
    """Malformed scope/refs, score out of range, invalid rubric data."""
    status_code = 422
    kind = "validation_error"


class InvalidScope(ValidationError):
    kind = "invalid_scope"


class ConflictError(HackevalError):
    """Duplicate final evaluation or an illegal state transition."""
    status_code = 409
    kind = "conflict"


class NoRubricConfigured(ConflictError):
    kind = "no_rubric_configured"


class NotFoundError(HackevalError):
    status_code = 404
    kind = "not_found"

    def __init__(self, label: str, entity_id: object | None = None):
        message = f"{label} not found" if entity_id is None else f"{label} {entity_id} not found"
        super().__init__(message)


class PermissionDeniedError(HackevalError):
    """The acting reviewer does not own the evaluation."""
    status_code = 403
    kind = "permission_denied"


class AdapterUnavailable(HackevalError):
    """The scoring oracle failed or timed out. Retryable by the caller."""
    status_code = 503
    kind = "adapter_unavailable"
    retryable = True
