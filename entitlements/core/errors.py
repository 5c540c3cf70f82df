"""Domain errors raised by the entitlement core.

Each class is one error kind.  Components raise them with a stable
``code`` and a human-readable message; ``main.py`` registers a single
exception handler that turns any EntitlementError into a JSON response
with the class's status code.  Nothing below the API layer knows about
HTTP beyond that one integer.
"""

from __future__ import annotations


class EntitlementError(Exception):
    status_code = 500
    default_code = "INTERNAL"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(EntitlementError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(EntitlementError):
    status_code = 404
    default_code = "NOT_FOUND"


class PermissionDeniedError(EntitlementError):
    status_code = 403
    default_code = "PERMISSION_DENIED"


class ConflictError(EntitlementError):
    status_code = 409
    default_code = "CONFLICT"


class LimitReachedError(EntitlementError):
    status_code = 403
    default_code = "LIMIT_EXCEEDED"


class StateError(EntitlementError):
    status_code = 409
    default_code = "INVALID_STATE"


class ExternalServiceError(EntitlementError):
    status_code = 502
    default_code = "EXTERNAL_FAILURE"


class DeadlineExceededError(EntitlementError):
    status_code = 504
    default_code = "DEADLINE_EXCEEDED"


class InternalError(EntitlementError):
    status_code = 500
    default_code = "INTERNAL"
