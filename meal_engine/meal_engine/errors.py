"""Engine exception taxonomy.

Every rejection raised by the engine is an :class:`EngineError` carrying a
machine-readable ``error_code``, the HTTP status the API layer should use and
a ``context`` mapping with the boundary values (cutoff instant, cooldown end
date, remaining skips, ...) a caller needs to render an actionable message.

Business-rule rejections (cutoff, limit, window, cooldown) are not failures;
they are raised before any state is written.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any


class EngineError(Exception):
    """Base engine error.

    Attributes
    ----------
    message:
        Human-readable error message.
    error_code:
        Machine-readable error code for API responses.
    status_code:
        HTTP status code for this error type.
    context:
        Boundary values and identifiers related to the error.
    """

    default_code = "ENGINE_ERROR"
    default_status = 400

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code or self.default_code
        self.status_code = status_code or self.default_status
        self.context = {k: _jsonable(v) for k, v in (context or {}).items()}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert the error to a dictionary for API responses."""
        return {
            "detail": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class NotAuthenticated(EngineError):
    default_code = "NOT_AUTHENTICATED"
    default_status = 401


class Unauthorized(EngineError):
    """The caller lacks the capability, or does not own the resource."""

    default_code = "UNAUTHORIZED"
    default_status = 403


class NotFound(EngineError):
    default_code = "NOT_FOUND"
    default_status = 404

    def __init__(self, entity: str, entity_id: Any, message: str | None = None) -> None:
        super().__init__(
            message or f"{entity} '{entity_id}' not found",
            context={"entity": entity, "id": entity_id},
        )


class CutoffPassed(EngineError):
    """A skip, pause, resume or cancel was requested after its window closed."""

    default_code = "CUTOFF_PASSED"
    default_status = 422


class LimitExceeded(EngineError):
    """Skip limit, trial meal limit or vendor capacity exhausted."""

    default_code = "LIMIT_EXCEEDED"
    default_status = 422


class InvalidWindow(EngineError):
    """A date or slot falls outside the allowed bounds."""

    default_code = "INVALID_WINDOW"
    default_status = 422


class CooldownActive(EngineError):
    default_code = "COOLDOWN_ACTIVE"
    default_status = 422

    def __init__(self, cooldown_ends_at: date, message: str | None = None) -> None:
        super().__init__(
            message or f"A trial of this type was taken recently; eligible again on {cooldown_ends_at.isoformat()}",
            context={"cooldown_ends_at": cooldown_ends_at},
        )
        self.cooldown_ends_at = cooldown_ends_at


class ConflictState(EngineError):
    """The entity is not in a state that permits the requested transition."""

    default_code = "CONFLICT_STATE"
    default_status = 409


class TransientStoreError(EngineError):
    """The backing store failed; the operation can be retried."""

    default_code = "TRANSIENT_STORE_ERROR"
    default_status = 503


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
