"""Error taxonomy shared by repositories, services and routers.

Every error carries the HTTP status it maps to. The handler registered in
``paybill.main`` renders them as ``{"success": false, "message": ..., "error": ...}``.
"""

from typing import Any


class PaybillError(Exception):
    """Base class for all application errors."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.error_type,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFoundError(PaybillError):
    """Invoice, payment attempt or user is absent (or not visible to the caller)."""

    status_code = 404
    error_type = "not_found"


class ConflictError(PaybillError):
    """State conflict: invoice already paid, duplicate checkout reference, etc."""

    status_code = 409
    error_type = "conflict"


class InvalidTransitionError(ConflictError):
    """Attempted to move a payment attempt out of a terminal state."""

    error_type = "invalid_transition"


class ProviderError(PaybillError):
    """The payment gateway rejected the request, timed out or answered garbage."""

    status_code = 400
    error_type = "provider_error"

    def __init__(self, message: str, details: Any = None, timed_out: bool = False):
        super().__init__(message, details)
        self.timed_out = timed_out


class ValidationError(PaybillError):
    status_code = 422
    error_type = "validation_error"


class AuthenticationError(PaybillError):
    status_code = 401
    error_type = "unauthorized"


class InternalError(PaybillError):
    """Storage failure or any unexpected fault."""
