from unittest.mock import AsyncMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import ManualClock
from ratelimit import (
    FALLBACK_IDENTITY,
    MemoryWindowStore,
    RateLimiter,
    RedisWindowStore,
    build_rate_limiter,
    client_identity,
)


async def test_admits_up_to_limit_then_denies(limiter):
    results = [(await limiter.admit("10.0.0.1")).allowed for _ in range(4)]
    assert results == [True, True, True, False]


async def test_identities_have_separate_windows(limiter):
    for _ in range(3):
        assert (await limiter.admit("10.0.0.1")).allowed
    assert not (await limiter.admit("10.0.0.1")).allowed
    assert (await limiter.admit("10.0.0.2")).allowed


async def test_window_slides(limiter, window_clock):
    for _ in range(3):
        await limiter.admit("a")
        window_clock.advance(10)
    assert not (await limiter.admit("a")).allowed

    # oldest hit was 30s ago; after 31 more seconds it leaves the 60s window
    window_clock.advance(31)
    assert (await limiter.admit("a")).allowed
    assert not (await limiter.admit("a")).allowed


async def test_new_window_admits_again(limiter, window_clock):
    for _ in range(3):
        await limiter.admit("a")
    assert not (await limiter.admit("a")).allowed
    window_clock.advance(61)
    assert (await limiter.admit("a")).allowed


async def test_denied_requests_do_not_consume_quota(window_clock):
    limiter = RateLimiter(MemoryWindowStore(clock=window_clock), limit=1, window_seconds=60)
    assert (await limiter.admit("a")).allowed
    for _ in range(5):
        window_clock.advance(10)
        assert not (await limiter.admit("a")).allowed
    window_clock.advance(11)
    assert (await limiter.admit("a")).allowed


async def test_remaining_counts_down(limiter):
    remaining = [(await limiter.admit("a")).remaining for _ in range(3)]
    assert remaining == [2, 1, 0]


async def test_bypass_when_unconfigured():
    limiter = build_rate_limiter(None, limit=1, window_seconds=60)
    assert limiter.bypassed
    assert limiter.mode == "bypass"
    for _ in range(10):
        admission = await limiter.admit("a")
        assert admission.allowed
        assert admission.mode == "bypass"


def test_memory_url_selects_in_process_store():
    limiter = build_rate_limiter("memory://", limit=5, window_seconds=60)
    assert limiter.mode == "memory"
    assert not limiter.bypassed


async def test_store_outage_admits():
    store = AsyncMock()
    store.mode = "redis"
    store.hit.side_effect = RedisConnectionError("connection refused")
    limiter = RateLimiter(store, limit=1, window_seconds=60)
    assert (await limiter.admit("a")).allowed


def test_client_identity():
    assert client_identity("203.0.113.7, 10.0.0.1") == "203.0.113.7"
    assert client_identity(None, "198.51.100.2") == "198.51.100.2"
    assert client_identity("  ", None) == FALLBACK_IDENTITY
    assert client_identity(None) == FALLBACK_IDENTITY


async def test_expired_identities_are_forgotten(window_clock):
    store = MemoryWindowStore(clock=window_clock)
    for i in range(1000):
        assert (await store.hit(f"10.0.{i // 256}.{i % 256}", 3, 60))[0]

    window_clock.advance(3600)
    assert (await store.hit("203.0.113.7", 3, 60))[0]
    assert list(store._hits) == ["203.0.113.7"]


async def test_live_identities_survive_cleanup(window_clock):
    store = MemoryWindowStore(clock=window_clock)
    await store.hit("old", 3, 60)
    window_clock.advance(30)
    await store.hit("recent", 3, 60)
    window_clock.advance(40)

    await store.hit("new", 3, 60)
    assert set(store._hits) == {"recent", "new"}


@pytest.fixture
def redis_clock():
    return ManualClock()


@pytest.fixture
def redis_limiter(redis_clock):
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    return RateLimiter(RedisWindowStore(client=client, clock=redis_clock), limit=3, window_seconds=60)


async def test_redis_admits_up_to_limit_then_denies(redis_limiter):
    results = [(await redis_limiter.admit("10.0.0.1")).allowed for _ in range(5)]
    assert results == [True, True, True, False, False]
    assert redis_limiter.mode == "redis"
    assert (await redis_limiter.admit("10.0.0.2")).allowed


async def test_redis_denials_do_not_consume_quota(redis_clock):
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    limiter = RateLimiter(RedisWindowStore(client=client, clock=redis_clock), limit=1, window_seconds=60)
    assert (await limiter.admit("a")).allowed
    for _ in range(5):
        redis_clock.advance(10)
        assert not (await limiter.admit("a")).allowed
    redis_clock.advance(11)
    assert (await limiter.admit("a")).allowed


async def test_redis_window_slides(redis_limiter, redis_clock):
    for _ in range(3):
        await redis_limiter.admit("a")
        redis_clock.advance(10)
    assert not (await redis_limiter.admit("a")).allowed

    redis_clock.advance(31)
    admission = await redis_limiter.admit("a")
    assert admission.allowed
    assert admission.remaining == 0
    assert not (await redis_limiter.admit("a")).allowed
