"""
Tests for the bounded estimate cache.
"""
import pytest

from shiprocket_fulfillment.core.estimate_cache import EstimateCache


class TestEstimateCache:
    """Test TTL and insertion-order eviction."""

    def test_hit_within_ttl(self, clock):
        cache = EstimateCache(ttl_seconds=60, max_size=10, clock=clock)
        cache.set("k", "v")

        clock.advance(59)
        assert cache.get("k") == "v"

    def test_expires_after_ttl(self, clock):
        cache = EstimateCache(ttl_seconds=60, max_size=10, clock=clock)
        cache.set("k", "v")

        clock.advance(60)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_evicts_first_inserted_even_when_recently_read(self, clock):
        cache = EstimateCache(ttl_seconds=60, max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        # Reading "a" does not protect it
        assert cache.get("a") == 1
        cache.set("c", 3)

        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3
        assert cache.get_stats()["evictions"] == 1

    def test_reinsert_moves_key_to_newest(self, clock):
        cache = EstimateCache(ttl_seconds=60, max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 10

    def test_contains_and_invalidate(self, clock):
        cache = EstimateCache(ttl_seconds=60, max_size=2, clock=clock)
        cache.set(("560001", "110001", 0.5, 0), "estimate")

        assert ("560001", "110001", 0.5, 0) in cache
        assert cache.invalidate(("560001", "110001", 0.5, 0))
        assert ("560001", "110001", 0.5, 0) not in cache

    def test_stats(self, clock):
        cache = EstimateCache(ttl_seconds=60, max_size=5, clock=clock)
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            EstimateCache(max_size=0)
