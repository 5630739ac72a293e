"""
Domain exceptions for the order and returns engine.

Services raise these; the API layer renders them through a single exception
handler (see backoffice.main), so endpoints never translate errors by hand.

    BackofficeError
    ├── ValidationFailedError        400  malformed or inconsistent input
    ├── ConflictError                409  business rule / state conflict
    │   ├── InsufficientStockError
    │   ├── SkuUnavailableError
    │   ├── InvalidTransitionError
    │   ├── ReturnNotEligibleError
    │   ├── DuplicateActiveReturnError
    │   └── QualityCheckClosedError
    ├── NotFoundError                404
    ├── PermissionDeniedError        403
    ├── ExternalServiceError         502
    │   └── PaymentGatewayError
    └── LockTimeoutError             503  retryable
"""

from typing import Dict, Optional


class BackofficeError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailedError(BackofficeError):
    status_code = 400


class ConflictError(BackofficeError):
    status_code = 409


class InsufficientStockError(ConflictError):
    """A SKU does not have enough available quantity for the requested line."""


class SkuUnavailableError(ConflictError):
    """A SKU is unknown, inactive, or has no inventory record."""


class InvalidTransitionError(ConflictError):
    """The requested status change is not allowed from the current status."""


class ReturnNotEligibleError(ConflictError):
    """The order line fails the return eligibility gate."""

    def __init__(self, message: str, reason: str, details: Optional[Dict] = None):
        self.reason = reason
        super().__init__(message, {"reason": reason, **(details or {})})


class DuplicateActiveReturnError(ReturnNotEligibleError):
    """Another non-terminal return already exists for the order line."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, reason="ACTIVE_RETURN_EXISTS", details=details)


class QualityCheckClosedError(ConflictError):
    """A completed quality check cannot be modified."""


class NotFoundError(BackofficeError):
    status_code = 404


class PermissionDeniedError(BackofficeError):
    status_code = 403


class ExternalServiceError(BackofficeError):
    status_code = 502


class PaymentGatewayError(ExternalServiceError):
    """The payment gateway rejected or failed a request."""


class LockTimeoutError(BackofficeError):
    """A row lock could not be acquired within the configured bound."""

    status_code = 503
    retryable = True
