"""
In-process event bus and tracking subscribers

Used when the host application does not supply its own EventBus.
"""
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]

# Shiprocket shipment_status_id for a completed delivery
DELIVERED_STATUS_ID = 7


class InProcessEventBus:
    """Dispatches events to registered async handlers; handler errors are logged."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._handlers[name].append(handler)

    async def emit(self, name: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(name, ())):
            try:
                await handler(payload)
            except Exception as e:
                logger.error(f"[EVENTS] Handler {getattr(handler, '__name__', handler)} failed for {name}: {e}")


async def log_tracking_update(payload: Dict[str, Any]) -> None:
    """Subscriber for shiprocket.tracking.updated."""
    awb = payload.get("awb")
    logger.info(f"[TRACKING] AWB {awb} status updated to {payload.get('current_status')}")

    if payload.get("shipment_status_id") == DELIVERED_STATUS_ID:
        logger.info(f"[TRACKING] Shipment {awb} marked as DELIVERED")
