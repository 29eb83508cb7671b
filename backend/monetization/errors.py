from __future__ import annotations

from typing import Any


class MonetizationError(Exception):
    """Base for every failure surfaced to API clients.

    ``code`` is stable and machine readable; ``message`` is shown to users.
    """

    status_code = 500
    code = "server_error"

    def __init__(self, message: str, *, code: str | None = None, extra: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message, **self.extra}


class ValidationFailed(MonetizationError):
    status_code = 400
    code = "validation_error"


class AuthorizationFailed(MonetizationError):
    status_code = 401
    code = "unauthorized"


class Forbidden(AuthorizationFailed):
    status_code = 403
    code = "forbidden"


class NotFound(MonetizationError):
    status_code = 404
    code = "not_found"


class StateConflict(MonetizationError):
    status_code = 409
    code = "conflict"


class ConcurrentUpdate(StateConflict):
    code = "concurrent_update"


class PaymentNotConfigured(MonetizationError):
    status_code = 503
    code = "payment_not_configured"


class PaymentVerificationFailed(MonetizationError):
    status_code = 400
    code = "payment_not_verified"


class PaymentProviderUnavailable(MonetizationError):
    status_code = 502
    code = "payment_provider_unavailable"


class PaymentProviderError(Exception):
    """Raised by the payment provider client on transport or API failures."""
