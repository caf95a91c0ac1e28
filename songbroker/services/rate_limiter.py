"""Shared counters and locks for provider rate limiting and sweep exclusion."""

import logging
import threading
import time
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

PROVIDER_CALLS_KEY = "provider-calls-per-minute"


class AtomicCounterStore(Protocol):
    """Key-value store with atomic increment-with-TTL and expiring locks."""

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key`` and return the new value. A new key expires after ``ttl_seconds``."""
        ...

    async def acquire_lock(self, key: str, ttl_seconds: int) -> bool:
        """Take ``key`` if nobody holds it. The lock expires on its own."""
        ...

    async def release_lock(self, key: str) -> None:
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...


class RedisCounterStore:
    """AtomicCounterStore backed by Redis."""

    def __init__(self, client: aioredis.Redis, prefix: str = "songbroker:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCounterStore":
        return cls(aioredis.from_url(redis_url, decode_responses=True))

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def increment(self, key: str, ttl_seconds: int) -> int:
        # SET NX seeds the window with its expiry, INCR counts; both run in one MULTI/EXEC
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._key(key), 0, ex=ttl_seconds, nx=True)
            pipe.incr(self._key(key))
            _, count = await pipe.execute()
        return int(count)

    async def acquire_lock(self, key: str, ttl_seconds: int) -> bool:
        acquired = await self.client.set(self._key(key), "1", ex=ttl_seconds, nx=True)
        return bool(acquired)

    async def release_lock(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def get(self, key: str) -> Optional[str]:
        value = await self.client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=ttl_seconds)

    async def ping(self) -> bool:
        return bool(await self.client.ping())


class InMemoryCounterStore:
    """
    Process-local AtomicCounterStore.

    Used in tests and single-process development setups. Expiry is checked
    lazily against ``monotonic``.
    """

    def __init__(self, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self._values: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._monotonic():
            del self._values[key]
            return None
        return value

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                count = 1
                expires_at = self._monotonic() + ttl_seconds
            else:
                count = int(current) + 1
                expires_at = self._values[key][1]
            self._values[key] = (str(count), expires_at)
            return count

    async def acquire_lock(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = ("1", self._monotonic() + ttl_seconds)
            return True

    async def release_lock(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._monotonic() + ttl_seconds)

    async def ping(self) -> bool:
        return True


class RateLimiter:
    """Fixed-window limiter over an AtomicCounterStore."""

    def __init__(self, store: AtomicCounterStore):
        self.store = store

    async def try_acquire(self, key: str, limit: int, window_seconds: int) -> bool:
        """
        Count one call against ``key`` and report whether it is within ``limit``.

        The increment happens even when the limit is already exceeded, so the
        answer depends only on arrival order within the window.
        """
        count = await self.store.increment(f"ratelimit:{key}", window_seconds)
        if count > limit:
            logger.info(f"Rate limit reached for {key}: {count}/{limit} in {window_seconds}s window")
            return False
        return True
