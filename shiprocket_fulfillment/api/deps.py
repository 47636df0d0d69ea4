"""
API dependencies
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.database import get_db
from shiprocket_fulfillment.core.exceptions import ShiprocketMisconfiguredError
from shiprocket_fulfillment.core.rate_limit import ClientRateLimiter
from shiprocket_fulfillment.core.security import decode_token
from shiprocket_fulfillment.services.host import EventBus, OrderStore
from shiprocket_fulfillment.services.shiprocket_client import ShiprocketClientManager
from shiprocket_fulfillment.services.tracking_service import TrackingService

security = HTTPBearer()


@dataclass
class Actor:
    """Caller identity taken from a host-issued bearer token."""
    id: str
    is_admin: bool = False


def _actor_from_payload(payload: Optional[dict]) -> Optional[Actor]:
    if not payload or not payload.get("sub"):
        return None
    return Actor(id=str(payload["sub"]), is_admin=bool(payload.get("is_admin", False)))


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """Get current authenticated caller"""
    actor = _actor_from_payload(decode_token(credentials.credentials))
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    return actor


async def get_current_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require admin caller"""
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return actor


async def get_optional_actor(
    credentials: HTTPAuthorizationCredentials = Depends(HTTPBearer(auto_error=False)),
) -> Optional[Actor]:
    """Get current caller if authenticated, None otherwise"""
    if not credentials:
        return None
    return _actor_from_payload(decode_token(credentials.credentials))


# ==================== Shared services ====================


def get_client_manager(request: Request) -> ShiprocketClientManager:
    manager = getattr(request.app.state, "shiprocket", None)
    if manager is None or not manager.is_configured:
        raise ShiprocketMisconfiguredError(
            "Shiprocket credentials (SHIPROCKET_EMAIL, SHIPROCKET_PASSWORD) are not configured"
        )
    return manager


def get_order_store(request: Request) -> Optional[OrderStore]:
    return getattr(request.app.state, "order_store", None)


def get_event_bus(request: Request) -> Optional[EventBus]:
    return getattr(request.app.state, "event_bus", None)


def get_delivery_estimate_limiter(request: Request) -> ClientRateLimiter:
    return request.app.state.delivery_estimate_limiter


def get_tracking_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> TrackingService:
    """Tracking service bound to the request session; the carrier client is optional."""
    return TrackingService(
        db,
        client=getattr(request.app.state, "shiprocket", None),
        event_bus=get_event_bus(request),
        order_store=get_order_store(request),
        carrier_timezone=settings.SHIPROCKET_CARRIER_TIMEZONE,
    )
