"""
Shiprocket Fulfillment Service
FastAPI application entry point

- One ShiprocketClientManager per process on app.state.shiprocket
- Per-IP throttle for the public delivery estimate
- Token refresh job
- Rate limiting with SlowAPI on admin routes
- Error sanitization middleware
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from shiprocket_fulfillment import __version__
from shiprocket_fulfillment.api.routes import admin_shiprocket, shiprocket, shiprocket_webhooks
from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.database import dispose_engine
from shiprocket_fulfillment.core.error_handler import ErrorSanitizationMiddleware, shiprocket_error_handler
from shiprocket_fulfillment.core.exceptions import ShiprocketError
from shiprocket_fulfillment.core.rate_limit import (
    delivery_estimate_limiter_from_settings,
    limiter,
    rate_limit_exceeded_handler,
)
from shiprocket_fulfillment.jobs.shiprocket_jobs import ShiprocketJobRunner
from shiprocket_fulfillment.services.events import InProcessEventBus, log_tracking_update
from shiprocket_fulfillment.services.host import EventBus, OrderStore
from shiprocket_fulfillment.services.shiprocket_client import ShiprocketClientManager
from shiprocket_fulfillment.services.tracking_service import TRACKING_UPDATED_EVENT

logger = logging.getLogger(__name__)


def default_event_bus() -> InProcessEventBus:
    bus = InProcessEventBus()
    bus.subscribe(TRACKING_UPDATED_EVENT, log_tracking_update)
    return bus


def create_app(
    order_store: Optional[OrderStore] = None,
    event_bus: Optional[EventBus] = None,
    client_manager: Optional[ShiprocketClientManager] = None,
) -> FastAPI:
    """
    Build the application.

    The host passes its order store and event bus; without an order store,
    tracking linked to an order is never shown on the storefront.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the shared client, start background tasks, clean up on shutdown."""
        manager = client_manager or ShiprocketClientManager.from_settings(settings)
        app.state.shiprocket = manager
        if not manager.is_configured:
            logger.warning("[SHIPROCKET] Credentials not configured - carrier endpoints will return 500")

        estimate_limiter = delivery_estimate_limiter_from_settings()
        app.state.delivery_estimate_limiter = estimate_limiter
        await estimate_limiter.start_cleanup_task(settings.DELIVERY_ESTIMATE_RATE_LIMIT_CLEANUP_SECONDS)

        if settings.AUTO_MIGRATE:
            from shiprocket_fulfillment.core.database import get_engine
            from shiprocket_fulfillment.migrations.shiprocket_tracking_table import (
                migrate_shiprocket_tracking_table,
            )
            try:
                await migrate_shiprocket_tracking_table(get_engine())
            except Exception as e:
                logger.error(f"shiprocket_tracking migration failed: {e}")

        job_runner = None
        if settings.SHIPROCKET_TOKEN_REFRESH_ENABLED and manager.is_configured:
            job_runner = ShiprocketJobRunner(
                manager,
                refresh_interval_seconds=settings.SHIPROCKET_TOKEN_TTL_DAYS * 24 * 60 * 60,
            )
            await job_runner.start()
            logger.info("[JOBS] Shiprocket token refresh ENABLED")
        else:
            logger.info("[JOBS] Shiprocket token refresh DISABLED via config or missing credentials")

        yield

        # Cleanup on shutdown
        if job_runner:
            await job_runner.stop()
        await estimate_limiter.stop_cleanup_task()
        await manager.close()
        logger.info("Shiprocket client closed")
        await dispose_engine()

    app = FastAPI(
        lifespan=lifespan,
        title="Shiprocket Fulfillment API",
        description="""
## Shiprocket Fulfillment API

Shiprocket carrier integration for the storefront.

### Features
- **Delivery estimate**: serviceability and preferred courier for a pincode
- **Tracking**: live shipment status fed by Shiprocket webhooks
- **Admin sync**: pull tracking on demand and regenerate shipping documents

### Rate Limits
- Delivery estimate: 30 requests/minute per IP
- Admin sync: 20 requests/minute
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Health check"},
            {"name": "Shiprocket", "description": "Storefront delivery estimate and tracking"},
            {"name": "Shiprocket Webhooks", "description": "Shiprocket status callbacks"},
            {"name": "Admin - Shiprocket", "description": "Tracking records and force sync"},
        ],
    )

    app.state.order_store = order_store
    app.state.event_bus = event_bus or default_event_bus()

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(ShiprocketError, shiprocket_error_handler)

    # Error sanitization (catches unhandled exceptions)
    app.add_middleware(ErrorSanitizationMiddleware)

    # CORS - adjust origins for production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(shiprocket.router)
    app.include_router(shiprocket_webhooks.router)
    app.include_router(admin_shiprocket.router)

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Liveness plus the state of the Shiprocket token."""
        manager = getattr(app.state, "shiprocket", None)
        expires_at = manager.token_expires_at if manager else None
        return {
            "status": "healthy",
            "version": __version__,
            "shiprocket": {
                "configured": bool(manager and manager.is_configured),
                "token_valid": bool(manager and manager.is_token_valid()),
                "token_expires_at": expires_at.isoformat() if expires_at else None,
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shiprocket_fulfillment.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
