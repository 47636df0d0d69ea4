"""
Shiprocket Webhook Routes

Shiprocket posts shipment status updates to /store/shiprocket/hook with the
shared secret in the x-api-key header.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError

from shiprocket_fulfillment.api.deps import get_tracking_service
from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import ShiprocketInvalidDataError
from shiprocket_fulfillment.core.security import verify_webhook_token
from shiprocket_fulfillment.schemas.shiprocket import ShiprocketWebhookPayload, WebhookAck
from shiprocket_fulfillment.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/store/shiprocket", tags=["Shiprocket Webhooks"])


@router.post("/hook", response_model=WebhookAck)
async def handle_shiprocket_webhook(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    service: TrackingService = Depends(get_tracking_service),
):
    """
    Handle a Shiprocket tracking webhook.

    The token is checked before the body is read. The stored record keeps
    the body as sent in raw_payload.
    """
    verify_webhook_token(x_api_key, settings.SHIPROCKET_WEBHOOK_TOKEN)

    try:
        body = await request.json()
    except ValueError as e:
        logger.warning(f"[WEBHOOK] Failed to parse payload: {e}")
        raise ShiprocketInvalidDataError("Invalid JSON payload", code="INVALID_PAYLOAD")

    if not isinstance(body, dict):
        raise ShiprocketInvalidDataError("Invalid payload - expected a JSON object", code="INVALID_PAYLOAD")

    try:
        payload = ShiprocketWebhookPayload.model_validate(body)
    except ValidationError as e:
        logger.warning(f"[WEBHOOK] Payload rejected: {e.error_count()} validation errors")
        raise ShiprocketInvalidDataError("Invalid payload", code="INVALID_PAYLOAD")

    if payload.awb is None or str(payload.awb).strip() == "":
        logger.warning("[WEBHOOK] Missing AWB in payload")
        raise ShiprocketInvalidDataError("Invalid payload - missing AWB", field="awb")

    record = await service.process_webhook(body)
    logger.info(f"[WEBHOOK] Tracking updated for AWB {record.awb} - Record ID: {record.id}")

    return WebhookAck(awb=record.awb)
