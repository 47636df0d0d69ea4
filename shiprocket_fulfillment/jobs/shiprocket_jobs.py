"""
Background jobs for the Shiprocket integration

- Token refresh: logs in again every SHIPROCKET_TOKEN_TTL_DAYS so requests
  never wait on an expired token

Jobs never raise; failures are logged and retried on the next cycle.
"""
import asyncio
import logging
from typing import List

from shiprocket_fulfillment.core.exceptions import ShiprocketError
from shiprocket_fulfillment.services.shiprocket_client import ShiprocketClientManager

logger = logging.getLogger(__name__)

# Retry sooner than the full interval after a failed refresh
TOKEN_REFRESH_RETRY_SECONDS = 15 * 60


async def refresh_shiprocket_token(manager: ShiprocketClientManager) -> bool:
    """
    Force a token refresh. Entry point for external schedulers as well.

    Returns:
        True on success
    """
    if not manager.is_configured:
        logger.warning("[JOBS] Shiprocket credentials not configured, skipping token refresh")
        return False

    try:
        await manager.force_refresh()
        logger.info("[JOBS] Shiprocket token refreshed")
        return True
    except ShiprocketError as e:
        logger.error(f"[JOBS] Shiprocket token refresh failed: {e.message}")
        return False


class ShiprocketJobRunner:
    """
    Manages and runs Shiprocket background jobs.
    """

    def __init__(self, manager: ShiprocketClientManager, refresh_interval_seconds: float):
        self.manager = manager
        self.refresh_interval_seconds = refresh_interval_seconds
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start all background jobs."""
        if self._running:
            logger.warning("[JOBS] Shiprocket jobs already running")
            return

        self._running = True
        logger.info("[JOBS] Starting Shiprocket background jobs")
        self._tasks = [
            asyncio.create_task(self._token_refresh_loop()),
        ]

    async def stop(self):
        """Stop all background jobs."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("[JOBS] Shiprocket background jobs stopped")

    async def _token_refresh_loop(self):
        """Refresh on startup, then once per interval."""
        while self._running:
            ok = await refresh_shiprocket_token(self.manager)
            delay = self.refresh_interval_seconds
            if not ok and self.manager.is_configured:
                delay = min(TOKEN_REFRESH_RETRY_SECONDS, self.refresh_interval_seconds)
            await asyncio.sleep(delay)
