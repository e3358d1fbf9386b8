"""
Error Taxonomy
==============
Every service-layer failure carries an HTTP status code, a machine-readable
code and a metadata dict. The HTTP boundary turns these into JSON envelopes.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base error raised by the order/payment services"""

    status_code = 400
    code = "SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.metadata = metadata or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "code": self.code,
            "detail": self.metadata,
        }


class ConfigurationError(ServiceError):
    """Provider credentials are absent. Not retryable."""

    status_code = 500
    code = "CONFIGURATION_ERROR"


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class UnauthorizedError(ServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(ServiceError):
    status_code = 422
    code = "VALIDATION_ERROR"


class InvalidStateError(ServiceError):
    status_code = 409
    code = "INVALID_STATE"


class SignatureInvalidError(ServiceError):
    status_code = 400
    code = "INVALID_SIGNATURE"


class AmountMismatchError(ServiceError):
    status_code = 400
    code = "AMOUNT_MISMATCH"


class DuplicateEventError(ServiceError):
    """An already-successful payment was notified again. Treated as success."""

    status_code = 200
    code = "ALREADY_CONFIRMED"


class ProviderError(ServiceError):
    """A call to a payment provider failed."""

    status_code = 502
    code = "PROVIDER_ERROR"
