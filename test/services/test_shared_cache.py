# ============================================================================
# FILE: test/services/test_shared_cache.py
# In-memory shared cache semantics
# ============================================================================

import asyncio

from conftest import FakeClock
from payment_resilience.services.shared_cache import InMemorySharedCache


class TestInMemorySharedCache:

    async def test_set_get_delete(self):
        cache = InMemorySharedCache()
        await cache.set("k", "v")

        assert await cache.get("k") == "v"
        await cache.delete("k")
        assert await cache.get("k") is None

    async def test_ttl_expires(self):
        clock = FakeClock()
        cache = InMemorySharedCache(clock=clock)
        await cache.set("k", "v", ttl_seconds=10)

        clock.advance(9)
        assert await cache.get("k") == "v"
        clock.advance(1)
        assert await cache.get("k") is None

    async def test_increment_keeps_first_expiry(self):
        """✓ TTL is set on creation and not extended by later increments"""
        clock = FakeClock()
        cache = InMemorySharedCache(clock=clock)

        assert await cache.increment("n", ttl_seconds=10) == 1
        clock.advance(6)
        assert await cache.increment("n", ttl_seconds=10) == 2
        clock.advance(5)
        assert await cache.get("n") is None

    async def test_concurrent_increments_are_atomic(self):
        cache = InMemorySharedCache()

        await asyncio.gather(*(cache.increment("n") for _ in range(50)))

        assert await cache.get("n") == "50"

    async def test_ping(self):
        assert await InMemorySharedCache().ping() is True
