"""
Error handling and sanitization

- ShiprocketError -> JSON {"success": false, "error", "code"} with the
  error's own status code
- Unhandled exceptions -> logged with traceback, generic 500 to the client
- Messages containing credentials or internals are replaced before they
  leave the service
"""
import logging
import traceback
from typing import Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import ShiprocketError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "bearer",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "traceback",
    "file \"",
]

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize an error message for safe client exposure.

    Full messages are returned in DEBUG mode only.
    """
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return GENERIC_ERROR_MESSAGE

    # Truncate very long messages
    if len(message) > 300:
        return message[:300] + "..."

    return message


async def shiprocket_error_handler(request: Request, exc: ShiprocketError) -> JSONResponse:
    """Render a ShiprocketError raised anywhere below a route."""
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")

    headers = {}
    if exc.retryable:
        headers["Retry-After"] = "30"

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": sanitize_error_message(exc.message),
            "code": exc.code,
        },
        headers=headers,
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            # Let FastAPI handle HTTPExceptions normally
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            content = {
                "success": False,
                "error": str(e) if settings.DEBUG else "Internal server error",
                "error_id": error_id,
            }
            if settings.DEBUG:
                content["type"] = type(e).__name__
            return JSONResponse(status_code=500, content=content)
