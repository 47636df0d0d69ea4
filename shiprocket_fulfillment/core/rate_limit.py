"""
Rate limiting

Two limiters:
- ClientRateLimiter: fixed-window counter per client IP guarding the public
  delivery-estimate endpoint (30 requests / 60 s by default). The window
  opens on a client's first request and resets once it has elapsed.
- SlowAPI limiter for decorated admin routes.

Both use in-memory storage (suitable for single-instance deployments).
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from shiprocket_fulfillment.core.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Get client IP, respecting proxy headers.

    Order: first X-Forwarded-For entry, X-Real-IP, then the socket peer.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First IP in the chain is the original client
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return get_remote_address(request) or "unknown"


@dataclass
class _Window:
    count: int
    started_at: float


class ClientRateLimiter:
    """
    In-memory per-client request counter with periodic cleanup.

    Thread-safe; the clock is injectable for tests.
    """

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        # {identifier: window}, insertion ordered
        self._windows: Dict[str, _Window] = {}
        self._lock = Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    def _expired(self, window: _Window, now: float) -> bool:
        return now - window.started_at >= self.window_seconds

    def is_allowed(self, identifier: str) -> bool:
        """Count a request; False once the client has used up its window."""
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)

            if window is None or self._expired(window, now):
                if window is None and len(self._windows) >= self.max_entries:
                    self._cleanup_locked(now)
                    # Still full: drop the oldest client window
                    while len(self._windows) >= self.max_entries:
                        self._windows.pop(next(iter(self._windows)))
                self._windows[identifier] = _Window(count=1, started_at=now)
                return True

            if window.count >= self.max_requests:
                return False

            window.count += 1
            return True

    def get_remaining(self, identifier: str) -> int:
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or self._expired(window, self._clock()):
                return self.max_requests
            return max(0, self.max_requests - window.count)

    def get_reset_time(self, identifier: str) -> int:
        """Seconds until the client's window resets, 0 when no window is open."""
        with self._lock:
            window = self._windows.get(identifier)
            if window is None:
                return 0
            reset_at = window.started_at + self.window_seconds
            return max(0, math.ceil(reset_at - self._clock()))

    def cleanup_expired(self) -> int:
        """
        Remove expired windows.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = self._cleanup_locked(self._clock())

        if removed > 0:
            logger.debug(f"[RATE_LIMIT] Cleanup removed {removed} entries")
        return removed

    def _cleanup_locked(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if self._expired(window, now)]
        for key in expired:
            del self._windows[key]
        return len(expired)

    async def start_cleanup_task(self, interval_seconds: float = 300) -> None:
        """Start background cleanup task."""
        async def cleanup_loop():
            while True:
                await asyncio.sleep(interval_seconds)
                self.cleanup_expired()

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.info(f"[RATE_LIMIT] Cleanup task started (interval: {interval_seconds}s)")

    async def stop_cleanup_task(self) -> None:
        """Stop background cleanup task."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            logger.info("[RATE_LIMIT] Cleanup task stopped")

    def stats(self) -> dict:
        with self._lock:
            return {
                "tracked_clients": len(self._windows),
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
            }


def delivery_estimate_limiter_from_settings() -> ClientRateLimiter:
    return ClientRateLimiter(
        max_requests=settings.DELIVERY_ESTIMATE_RATE_LIMIT,
        window_seconds=settings.DELIVERY_ESTIMATE_RATE_LIMIT_WINDOW_SECONDS,
        max_entries=settings.DELIVERY_ESTIMATE_RATE_LIMIT_MAX_ENTRIES,
    )


# SlowAPI limiter for admin routes
limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Custom handler for SlowAPI rate limit exceeded errors.
    Returns structured JSON response with retry-after header.
    """
    logger.warning(
        f"[RATE_LIMIT] Exceeded: {get_client_ip(request)} on {request.url.path}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "Too many requests. Please try again later.",
            "code": "RATE_LIMITED",
        },
        headers={"Retry-After": "60"},
    )
