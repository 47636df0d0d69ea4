"""
Storefront Shiprocket Routes

Provides endpoints for:
- Delivery estimate (public, rate limited per client IP)
- Tracking lookup by AWB (ownership gated)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from shiprocket_fulfillment.api.deps import (
    Actor,
    get_client_manager,
    get_delivery_estimate_limiter,
    get_optional_actor,
    get_tracking_service,
)
from shiprocket_fulfillment.core.exceptions import ShiprocketInvalidDataError
from shiprocket_fulfillment.core.rate_limit import ClientRateLimiter, get_client_ip
from shiprocket_fulfillment.schemas.shiprocket import (
    DeliveryEstimateResponse,
    TrackingPublic,
    TrackingPublicResponse,
)
from shiprocket_fulfillment.services.tracking_service import TrackingService
from shiprocket_fulfillment.services.validation import is_valid_pincode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/store/shiprocket", tags=["Shiprocket"])


# ==================== Helper Functions ====================


def _rate_limit_headers(limiter: ClientRateLimiter, client_id: str) -> dict:
    return {
        "X-RateLimit-Limit": str(limiter.max_requests),
        "X-RateLimit-Remaining": str(limiter.get_remaining(client_id)),
        "X-RateLimit-Reset": str(limiter.get_reset_time(client_id)),
    }


def _require_pincode(value: Optional[str], field: str, label: str) -> str:
    if not value:
        raise ShiprocketInvalidDataError(
            f"'{field}' query parameter is required",
            code="MISSING_PINCODE",
            field=field,
        )
    value = value.strip()
    if not is_valid_pincode(value):
        raise ShiprocketInvalidDataError(
            f"{label} pincode must be a 6-digit number",
            code="INVALID_PINCODE",
            field=field,
        )
    return value


# ==================== Delivery Estimate ====================


@router.get("/delivery-estimate", response_model=DeliveryEstimateResponse)
async def get_delivery_estimate(
    request: Request,
    response: Response,
    delivery_pincode: Optional[str] = Query(None, description="Destination pincode (6 digits)"),
    pickup_pincode: Optional[str] = Query(None, description="Defaults to the configured pickup location"),
    weight: Optional[float] = Query(None, gt=0, description="Package weight in kg, defaults to 0.5"),
    cod: bool = Query(False, description="Cash on delivery"),
    limiter: ClientRateLimiter = Depends(get_delivery_estimate_limiter),
):
    """
    Check serviceability and the preferred courier for a pincode.

    Public endpoint; each client IP may call it a limited number of times
    per window.
    """
    client_id = get_client_ip(request)
    if not limiter.is_allowed(client_id):
        reset = limiter.get_reset_time(client_id)
        logger.warning(f"[RATE_LIMIT] Delivery estimate limit exceeded for {client_id}")
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": f"Rate limit exceeded. Try again in {reset} seconds.",
                "code": "RATE_LIMITED",
            },
            headers={
                "X-RateLimit-Limit": str(limiter.max_requests),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset),
                "Retry-After": str(reset),
            },
        )
    response.headers.update(_rate_limit_headers(limiter, client_id))

    manager = get_client_manager(request)
    delivery = _require_pincode(delivery_pincode, "delivery_pincode", "Delivery")

    if pickup_pincode:
        pickup = _require_pincode(pickup_pincode, "pickup_pincode", "Pickup")
    else:
        pickup = _require_pincode(await manager.get_pickup_pincode(), "pickup_pincode", "Pickup")

    estimate = await manager.get_delivery_estimate(pickup, delivery, weight=weight, cod=cod)
    return DeliveryEstimateResponse(**estimate.to_dict())


# ==================== Tracking ====================


@router.get("/tracking/{awb}", response_model=TrackingPublicResponse)
async def get_tracking(
    awb: str,
    actor: Optional[Actor] = Depends(get_optional_actor),
    service: TrackingService = Depends(get_tracking_service),
):
    """
    Current tracking status and scan history for a shipment.

    Records linked to another customer's order answer 404, same as unknown AWBs.
    """
    record = await service.get_for_customer(awb, actor.id if actor else None)
    return TrackingPublicResponse(tracking=TrackingPublic.model_validate(record))
