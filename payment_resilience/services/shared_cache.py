"""
Shared cache collaborator.

The webhook replay guard keeps its processed markers and failure counters
here. In a multi-instance deployment the cache must be shared (Redis): the
same notification can be routed to any instance. InMemorySharedCache exists
for single-process development and tests only.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool


class SharedCache(ABC):
    """get/set/delete with per-key expiry, plus an atomic counter."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """Atomically add one to an integer value and return the new value."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisSharedCache(SharedCache):
    # INCR then set the expiry only on first creation, in one round trip
    _INCREMENT_SCRIPT = """
    local value = redis.call('INCR', KEYS[1])
    if value == 1 and tonumber(ARGV[1]) > 0 then
        redis.call('EXPIRE', KEYS[1], ARGV[1])
    end
    return value
    """

    def __init__(self, client: Redis, pool: Optional[ConnectionPool] = None):
        self._client = client
        self._pool = pool

    @classmethod
    def from_url(cls, url: str) -> "RedisSharedCache":
        pool = ConnectionPool.from_url(url, decode_responses=True)
        return cls(Redis(connection_pool=pool), pool)

    async def get(self, key: str) -> Optional[str]:
        value = await self._client.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(key, value, ex=ttl_seconds or None)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        result = await self._client.eval(self._INCREMENT_SCRIPT, 1, key, int(ttl_seconds or 0))
        return int(result)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()


class InMemorySharedCache(SharedCache):
    """Process-local cache honouring TTLs. Not safe across instances."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._entries[key] = (str(value), self._expiry(ttl_seconds))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        async with self._lock:
            current = self._live(key)
            if current is None:
                value, expires_at = 1, self._expiry(ttl_seconds)
            else:
                value, expires_at = int(current) + 1, self._entries[key][1]
            self._entries[key] = (str(value), expires_at)
            return value
