"""
Shiprocket error translation

Maps carrier HTTP responses and transport failures onto the
ShiprocketError taxonomy.

Shiprocket status codes:
- 400: Bad Request - invalid request or data
- 401: Unauthorized - token/credentials invalid
- 404: Not Found - resource doesn't exist
- 405: Method Not Allowed - wrong HTTP method
- 422: Unprocessable Entity - cannot be fulfilled
- 429: Too Many Requests
- 5xx: Server errors
"""
import logging
from typing import Any, Dict, Optional

import httpx

from shiprocket_fulfillment.core.exceptions import (
    ShiprocketError,
    ShiprocketInvalidDataError,
    ShiprocketNotFoundError,
    ShiprocketRateLimitedError,
    ShiprocketTimeoutError,
    ShiprocketUnauthorizedError,
    ShiprocketUnavailableError,
)

logger = logging.getLogger(__name__)


def format_validation_errors(errors: Any) -> Optional[str]:
    """
    Collapse a carrier field-error map into one line.

    {"billing_phone": ["is required"], "pincode": ["invalid", "too short"]}
    -> "Validation failed: billing_phone: is required; pincode: invalid, too short"
    """
    if not isinstance(errors, dict) or not errors:
        return None

    parts = []
    for field, messages in errors.items():
        if isinstance(messages, (list, tuple)):
            text = ", ".join(str(m) for m in messages)
        else:
            text = str(messages)
        parts.append(f"{field}: {text}")
    return f"Validation failed: {'; '.join(parts)}"


def extract_error_message(payload: Any, default: str = "Unknown Shiprocket error") -> str:
    """Pull the most useful message out of a carrier error body."""
    if isinstance(payload, dict):
        aggregated = format_validation_errors(payload.get("errors"))
        if aggregated:
            return aggregated
        message = payload.get("message")
        if message:
            return str(message)
    elif isinstance(payload, str) and payload.strip():
        return payload.strip()[:500]
    return default


def translate_http_error(
    status: int,
    payload: Any,
    operation: Optional[str] = None,
) -> ShiprocketError:
    """
    Build the typed error for a carrier error response.

    The carrier status and body are kept in details so callers can inspect
    them (idempotent cancellation relies on this).
    """
    prefix = f"[{operation}] " if operation else ""
    message = extract_error_message(payload)
    details: Dict[str, Any] = {"status": status, "payload": payload}
    if operation:
        details["operation"] = operation

    if status == 401:
        return ShiprocketUnauthorizedError(
            f"{prefix}Shiprocket authentication failed. Please verify your API credentials.",
            details=details,
        )
    if status == 404:
        return ShiprocketNotFoundError(f"{prefix}{message}", details=details)
    if status == 429:
        return ShiprocketRateLimitedError(
            f"{prefix}Shiprocket rate limit exceeded. Please retry after a few seconds.",
            details=details,
        )
    if status == 405:
        return ShiprocketInvalidDataError(
            f"{prefix}Invalid API method for this endpoint.",
            details=details,
        )
    if status >= 500:
        return ShiprocketUnavailableError(
            f"{prefix}Shiprocket server error ({status}). Please try again later.",
            details=details,
        )
    # 400, 422 and any other client error
    return ShiprocketInvalidDataError(f"{prefix}{message}", details=details)


def translate_transport_error(exc: httpx.RequestError, operation: Optional[str] = None) -> ShiprocketError:
    """Map an httpx transport failure; timeouts keep their own error kind."""
    prefix = f"[{operation}] " if operation else ""
    details: Dict[str, Any] = {"error": type(exc).__name__}
    if operation:
        details["operation"] = operation

    if isinstance(exc, httpx.TimeoutException):
        return ShiprocketTimeoutError(
            f"{prefix}Shiprocket request timed out. Please try again.",
            details=details,
        )
    if isinstance(exc, httpx.ConnectError):
        return ShiprocketUnavailableError(
            f"{prefix}Unable to connect to Shiprocket. Please check your network connection.",
            code="SHIPROCKET_CONNECT_ERROR",
            details=details,
        )
    return ShiprocketUnavailableError(f"{prefix}Network error: {exc}", code="NETWORK_ERROR", details=details)


def translate_response(response: httpx.Response, operation: Optional[str] = None) -> ShiprocketError:
    """Convenience wrapper reading status and body from an httpx response."""
    try:
        payload = response.json()
    except ValueError:
        payload = response.text[:500]

    error = translate_http_error(response.status_code, payload, operation)
    logger.error(f"[SHIPROCKET] {operation or 'request'} failed: {response.status_code} - {error.message}")
    return error
