"""
Shiprocket Exception Hierarchy

Structured exception classes for the carrier integration. All exceptions
include code, message and details for logging and API responses.

Exception Hierarchy:
    ShiprocketError
    ├── ShiprocketUnauthorizedError   (bad/expired credentials, 401)
    ├── ShiprocketNotFoundError       (unknown waybill/order, 404)
    ├── ShiprocketRateLimitedError    (carrier-side 429, retryable)
    ├── ShiprocketInvalidDataError    (local pre-flight or carrier field errors)
    ├── ShiprocketUnavailableError    (5xx or connectivity, retryable)
    │   └── ShiprocketTimeoutError    (call exceeded its timeout, retryable)
    ├── ShiprocketMisconfiguredError  (missing local credentials/secrets)
    └── ShiprocketNoCourierError      (waybill assignment rejected)
"""
from typing import Optional, Dict, Any


class ShiprocketError(Exception):
    """
    Base exception for all Shiprocket integration errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context (carrier status, payload, operation)
        status_code: HTTP status used when the error reaches an API response
        retryable: Whether the caller may retry after a delay
    """

    default_code: str = "SHIPROCKET_ERROR"
    default_status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.status_code = status_code or self.default_status_code
        super().__init__(self.message)

    @property
    def carrier_status(self) -> Optional[int]:
        """HTTP status returned by the carrier, when the error came from a response."""
        return self.details.get("status")

    @property
    def carrier_payload(self) -> Any:
        return self.details.get("payload")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ShiprocketUnauthorizedError(ShiprocketError):
    """Credentials rejected, or a retried call was denied a second time."""
    default_code = "SHIPROCKET_UNAUTHORIZED"
    default_status_code = 401


class ShiprocketNotFoundError(ShiprocketError):
    """Unknown waybill, order or pickup location on the carrier side."""
    default_code = "SHIPROCKET_NOT_FOUND"
    default_status_code = 404


class ShiprocketRateLimitedError(ShiprocketError):
    """Carrier throttled the request; back off and retry."""
    default_code = "SHIPROCKET_RATE_LIMITED"
    default_status_code = 429
    retryable = True


class ShiprocketInvalidDataError(ShiprocketError):
    """Missing or malformed field, detected locally or reported by the carrier."""
    default_code = "SHIPROCKET_INVALID_DATA"
    default_status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        self.field = field
        super().__init__(message, details=details, **kwargs)


class ShiprocketUnavailableError(ShiprocketError):
    """Carrier server error or connectivity failure; safe to retry after a delay."""
    default_code = "SHIPROCKET_UNAVAILABLE"
    default_status_code = 503
    retryable = True


class ShiprocketTimeoutError(ShiprocketUnavailableError):
    """Carrier call exceeded its timeout."""
    default_code = "SHIPROCKET_TIMEOUT"
    default_status_code = 504


class ShiprocketMisconfiguredError(ShiprocketError):
    """Local credentials or shared secrets are missing. Not retried."""
    default_code = "SHIPROCKET_MISCONFIGURED"
    default_status_code = 500


class ShiprocketNoCourierError(ShiprocketError):
    """No courier accepted the shipment during waybill assignment."""
    default_code = "SHIPROCKET_NO_COURIER"
    default_status_code = 409
