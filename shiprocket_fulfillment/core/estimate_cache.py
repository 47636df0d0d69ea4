"""
Bounded TTL cache for carrier lookups

Purpose:
- Avoids repeating serviceability calls for the same postcode pair
- Key: (pickup_postcode, delivery_postcode, weight, cod)
- TTL: 4 hours (configurable)
- Max size: 1000 entries

Eviction is by insertion order: when the cache is full the entry that was
stored first goes, however recently it was read. Reads never reorder.

Usage:
    cache = EstimateCache(ttl_seconds=14400, max_size=1000)

    cached = cache.get(key)
    if cached is None:
        result = await fetch(...)
        cache.set(key, result)
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class EstimateCache(Generic[V]):
    """
    FIFO-evicting cache with per-entry expiry.

    Guarded by a lock so it can be shared between the event loop and
    worker threads.

    Attributes:
        ttl_seconds: Time-to-live for cache entries
        max_size: Maximum entries before the oldest insertion is evicted
    """

    def __init__(
        self,
        ttl_seconds: float = 4 * 60 * 60,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        name: str = "ESTIMATE_CACHE",
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (expires_at, value)
        self._cache: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._cache[key]
                self._misses += 1
                logger.debug(f"[{self.name}] Expired: {key}")
                return None

            self._hits += 1
            return value

    def set(self, key: Hashable, value: V) -> None:
        """Store value; a re-stored key counts as a fresh insertion."""
        with self._lock:
            self._cache.pop(key, None)

            while len(self._cache) >= self.max_size:
                evicted_key, _ = self._cache.popitem(last=False)
                self._evictions += 1
                logger.debug(f"[{self.name}] Evicted oldest entry {evicted_key} (capacity)")

            self._cache[key] = (self._clock() + self.ttl_seconds, value)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._cache.get(key)
            return entry is not None and self._clock() < entry[0]

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all cached entries."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        logger.info(f"[{self.name}] Cleared {count} entries")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
                "size": len(self._cache),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "evictions": self._evictions,
            }
