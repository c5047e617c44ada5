"""
Key-value store layer used by the refresh coordinator.

Three operations, each a single round trip: get, set with expiry, and set
with expiry only if absent. Failures surface as StoreUnavailable; nothing
here retries. Retry policy belongs to the coordinator.
"""

import asyncio
import math
import time
from typing import Callable, Optional, Protocol

from coinframe.errors import StoreUnavailable
from coinframe.utils.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """What the coordinator needs from a store."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set_with_expiry(self, key: str, value: str, ttl: float) -> bool:
        ...

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        ...


def _ttl_seconds(ttl: float) -> int:
    """Redis EX takes whole seconds; never round a TTL down to zero."""
    return max(1, math.ceil(ttl))


class _StatsMixin:
    """Hit/miss counters shared by both stores."""

    _hits: int = 0
    _misses: int = 0

    def _count(self, val: Optional[str]) -> None:
        if val is None:
            self._misses += 1
        else:
            self._hits += 1

    def cache_stats(self) -> dict:
        """Return hit/miss statistics."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
            "total": total,
        }


class RedisStore(_StatsMixin):
    """Async Redis store.

    Every call either succeeds or raises StoreUnavailable. There is no
    silent fallback to a miss.
    """

    def __init__(self, url: str, pool_size: int = 10, socket_timeout: float = 5.0, client=None):
        self._url = url
        self._pool_size = pool_size
        self._socket_timeout = socket_timeout
        self._redis = client
        self._hits = 0
        self._misses = 0

    async def connect(self) -> None:
        """Connect to Redis and verify with PING."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
                max_connections=self._pool_size,
            )
        try:
            await self._redis.ping()
        except Exception as e:
            raise StoreUnavailable(f"Redis ping failed: {e}") from e
        logger.info("Redis store connected", url=self._url.split("@")[-1])

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis store closed")

    async def health_check(self) -> dict:
        """Return store health status."""
        if not self._redis:
            return {"backend": "redis", "status": "unavailable", "reason": "not connected", **self.cache_stats()}
        try:
            await self._redis.ping()
            info = await self._redis.info("memory")
            return {
                "backend": "redis",
                "status": "healthy",
                "used_memory": info.get("used_memory_human", "unknown"),
                **self.cache_stats(),
            }
        except Exception as e:
            return {"backend": "redis", "status": "unhealthy", "reason": str(e), **self.cache_stats()}

    def _client(self):
        if not self._redis:
            raise StoreUnavailable("Redis store is not connected")
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        client = self._client()
        try:
            val = await client.get(key)
        except Exception as e:
            logger.warning("Redis GET failed", key=key, error=str(e))
            raise StoreUnavailable(f"GET failed: {e}", key) from e
        self._count(val)
        return val

    async def set_with_expiry(self, key: str, value: str, ttl: float) -> bool:
        client = self._client()
        try:
            res = await client.set(key, value, ex=_ttl_seconds(ttl))
        except Exception as e:
            logger.warning("Redis SET failed", key=key, error=str(e))
            raise StoreUnavailable(f"SET failed: {e}", key) from e
        return bool(res)

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        client = self._client()
        try:
            # SET NX returns None when the key already exists
            res = await client.set(key, value, ex=_ttl_seconds(ttl), nx=True)
        except Exception as e:
            logger.warning("Redis SET NX failed", key=key, error=str(e))
            raise StoreUnavailable(f"SET NX failed: {e}", key) from e
        return bool(res)


class MemoryStore(_StatsMixin):
    """In-process store with the same contract as RedisStore.

    Only gives mutual exclusion between tasks of one process. The clock is
    injectable so expiry can be driven by tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            val = self._live(key, self._clock())
        self._count(val)
        return val

    async def set_with_expiry(self, key: str, value: str, ttl: float) -> bool:
        async with self._lock:
            self._data[key] = (value, self._clock() + ttl)
        return True

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        async with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._data[key] = (value, now + ttl)
            return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()

    async def health_check(self) -> dict:
        return {"backend": "memory", "status": "healthy", "keys": len(self._data), **self.cache_stats()}
