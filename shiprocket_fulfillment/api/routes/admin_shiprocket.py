"""
Admin Shiprocket Routes

- Full tracking record by AWB
- Force sync from Shiprocket, optionally regenerating a fulfillment's
  label, invoice and manifest
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from shiprocket_fulfillment.api.deps import (
    Actor,
    get_client_manager,
    get_current_admin,
    get_tracking_service,
)
from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import ShiprocketNotFoundError
from shiprocket_fulfillment.core.rate_limit import limiter
from shiprocket_fulfillment.schemas.shiprocket import (
    DocumentLinks,
    TrackingAdmin,
    TrackingAdminResponse,
    TrackingSyncRequest,
    TrackingSyncResponse,
    TrackingSyncSummary,
)
from shiprocket_fulfillment.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/shiprocket", tags=["Admin - Shiprocket"])


@router.get("/tracking/{awb}", response_model=TrackingAdminResponse)
async def admin_get_tracking(
    awb: str,
    admin: Actor = Depends(get_current_admin),
    service: TrackingService = Depends(get_tracking_service),
):
    """Full tracking record, including the last raw payload."""
    record = await service.get_by_awb(awb)
    if record is None:
        raise ShiprocketNotFoundError("Tracking not found")
    return TrackingAdminResponse(tracking=TrackingAdmin.model_validate(record))


@router.post(
    "/tracking/{awb}/sync",
    response_model=TrackingSyncResponse,
    dependencies=[Depends(get_client_manager)],
)
@limiter.limit(settings.RATE_LIMIT_ADMIN_SYNC)
async def admin_sync_tracking(
    request: Request,
    awb: str,
    body: Optional[TrackingSyncRequest] = None,
    admin: Actor = Depends(get_current_admin),
    service: TrackingService = Depends(get_tracking_service),
):
    """
    Pull the latest tracking from Shiprocket and store it.

    For when webhooks have not fired. Document regeneration failures are
    logged and leave documents empty in the response.
    """
    fulfillment_id = body.fulfillment_id if body else None
    logger.info(f"[TRACKING] Admin {admin.id} syncing AWB {awb}")

    result = await service.sync_from_carrier(awb, fulfillment_id=fulfillment_id)

    documents = None
    if result.documents is not None:
        documents = DocumentLinks(**result.documents.to_dict())

    return TrackingSyncResponse(
        tracking=TrackingSyncSummary.model_validate(result.record),
        documents=documents,
    )
