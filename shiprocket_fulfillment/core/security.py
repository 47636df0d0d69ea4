"""
Security utilities - bearer token verification, shared-secret comparison

Bearer tokens are issued by the host storefront (HS256 JWT, "sub" is the
customer id, "is_admin" marks staff). This service only verifies them.
"""
import hmac
import logging
from typing import Optional

from jose import JWTError, jwt

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import (
    ShiprocketMisconfiguredError,
    ShiprocketUnauthorizedError,
)

logger = logging.getLogger(__name__)


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify JWT token"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        return None


def verify_webhook_token(provided: Optional[str], expected: Optional[str]) -> None:
    """
    Check the x-api-key header of a Shiprocket callback.

    A missing expected secret is a configuration error, distinct from a
    caller presenting the wrong one. Comparison is constant time.
    """
    if not expected:
        logger.warning("[WEBHOOK] SHIPROCKET_WEBHOOK_TOKEN not configured")
        raise ShiprocketMisconfiguredError("Webhook not configured", code="WEBHOOK_NOT_CONFIGURED")

    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("[WEBHOOK] Invalid or missing token")
        raise ShiprocketUnauthorizedError("Unauthorized", code="WEBHOOK_UNAUTHORIZED")
