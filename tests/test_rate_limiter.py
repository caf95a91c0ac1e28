"""Tests for the shared counter store and rate limiter."""

import asyncio

import pytest

from songbroker.services.rate_limiter import InMemoryCounterStore, RateLimiter, RedisCounterStore


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.mark.asyncio
@pytest.mark.parametrize("attempts,limit", [(30, 20), (20, 20), (5, 20), (1, 0)])
async def test_concurrent_acquires_respect_limit(attempts, limit):
    """Exactly min(N, L) of N concurrent acquisitions succeed."""
    limiter = RateLimiter(InMemoryCounterStore())

    results = await asyncio.gather(
        *(limiter.try_acquire("provider", limit, 60) for _ in range(attempts))
    )

    assert sum(results) == min(attempts, limit)
    assert results == [True] * min(attempts, limit) + [False] * max(0, attempts - limit)


@pytest.mark.asyncio
async def test_window_expiry_resets_counter():
    monotonic = FakeMonotonic()
    limiter = RateLimiter(InMemoryCounterStore(monotonic=monotonic))

    assert await limiter.try_acquire("provider", 2, 60)
    assert await limiter.try_acquire("provider", 2, 60)
    assert not await limiter.try_acquire("provider", 2, 60)

    monotonic.value += 61
    assert await limiter.try_acquire("provider", 2, 60)


@pytest.mark.asyncio
async def test_window_starts_at_first_increment():
    monotonic = FakeMonotonic()
    limiter = RateLimiter(InMemoryCounterStore(monotonic=monotonic))

    assert await limiter.try_acquire("provider", 1, 60)
    monotonic.value += 30
    assert not await limiter.try_acquire("provider", 1, 60)
    monotonic.value += 31
    assert await limiter.try_acquire("provider", 1, 60)


@pytest.mark.asyncio
async def test_keys_are_independent():
    limiter = RateLimiter(InMemoryCounterStore())

    assert await limiter.try_acquire("a", 1, 60)
    assert await limiter.try_acquire("b", 1, 60)
    assert not await limiter.try_acquire("a", 1, 60)


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released():
    store = InMemoryCounterStore()

    assert await store.acquire_lock("sweep", 900)
    assert not await store.acquire_lock("sweep", 900)

    await store.release_lock("sweep")
    assert await store.acquire_lock("sweep", 900)


@pytest.mark.asyncio
async def test_lock_expires_on_its_own():
    monotonic = FakeMonotonic()
    store = InMemoryCounterStore(monotonic=monotonic)

    assert await store.acquire_lock("sweep", 900)
    monotonic.value += 901
    assert await store.acquire_lock("sweep", 900)


@pytest.mark.asyncio
async def test_get_and_set_with_ttl():
    monotonic = FakeMonotonic()
    store = InMemoryCounterStore(monotonic=monotonic)

    await store.set("last-run", "2026-10-01T12:00:00+00:00", 3600)
    assert await store.get("last-run") == "2026-10-01T12:00:00+00:00"

    monotonic.value += 3601
    assert await store.get("last-run") is None


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisCounterStore."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.transactions: list[list[tuple]] = []

    def _set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.expiry[key] = ex
        return True

    def _incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    def pipeline(self, transaction=True):
        assert transaction is True
        return FakePipeline(self)

    async def set(self, key, value, ex=None, nx=False):
        return self._set(key, value, ex=ex, nx=nx)

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        self.expiry.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def ping(self):
        return True


class FakePipeline:
    def __init__(self, client: FakeRedis):
        self.client = client
        self.commands: list[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def set(self, key, value, ex=None, nx=False):
        self.commands.append(("set", key, value, ex, nx))
        return self

    def incr(self, key):
        self.commands.append(("incr", key))
        return self

    async def execute(self):
        self.client.transactions.append(list(self.commands))
        results = []
        for command in self.commands:
            if command[0] == "set":
                _, key, value, ex, nx = command
                results.append(self.client._set(key, value, ex=ex, nx=nx))
            else:
                results.append(self.client._incr(command[1]))
        return results


@pytest.mark.asyncio
async def test_redis_increment_seeds_expiry_and_counts_in_one_transaction():
    client = FakeRedis()
    store = RedisCounterStore(client)

    assert await store.increment("provider", 60) == 1
    client.expiry["songbroker:provider"] = 42  # window already running
    assert await store.increment("provider", 60) == 2

    assert client.transactions[0] == [
        ("set", "songbroker:provider", 0, 60, True),
        ("incr", "songbroker:provider"),
    ]
    assert len(client.transactions) == 2
    # The second SET NX does not extend the running window
    assert client.expiry["songbroker:provider"] == 42


@pytest.mark.asyncio
async def test_redis_rate_limiter_uses_prefixed_keys():
    client = FakeRedis()
    limiter = RateLimiter(RedisCounterStore(client))

    assert await limiter.try_acquire("provider", 1, 60)
    assert not await limiter.try_acquire("provider", 1, 60)
    assert client.data == {"songbroker:ratelimit:provider": "2"}


@pytest.mark.asyncio
async def test_redis_lock_and_values():
    client = FakeRedis()
    store = RedisCounterStore(client)

    assert await store.acquire_lock("sweep", 900)
    assert not await store.acquire_lock("sweep", 900)
    assert client.expiry["songbroker:sweep"] == 900
    await store.release_lock("sweep")
    assert await store.acquire_lock("sweep", 900)

    await store.set("last-run", "2026-10-01T12:00:00+00:00", 3600)
    assert await store.get("last-run") == "2026-10-01T12:00:00+00:00"
    assert await store.get("missing") is None
    assert await store.ping()
