"""Sliding-window admission control keyed by client identity.

Each admitted request is recorded with its timestamp; a request is admitted
only while fewer than ``limit`` admitted requests fall inside the trailing
``window_seconds``. Denied requests are not recorded, so they do not eat
into the quota.
"""
import asyncio
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from log import get_logger

logger = get_logger(__name__)

FALLBACK_IDENTITY = "local"
MEMORY_URL = "memory://"


@dataclass(frozen=True)
class Admission:
    allowed: bool
    mode: str
    remaining: int | None = None


class WindowStore(Protocol):
    mode: str

    async def hit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Record one request if under ``limit``; return (allowed, requests in window)."""


class RedisWindowStore:
    mode = "redis"

    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  return {0, count}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, count + 1}
"""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: aioredis.Redis | None = None,
        socket_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._clock = clock
        self._window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    async def hit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        allowed, count = await self._window(
            keys=[f"ratelimit:chat:{key}"],
            args=[self._clock(), window_seconds, limit, uuid.uuid4().hex],
        )
        return bool(int(allowed)), int(count)

    async def close(self) -> None:
        await self.client.aclose()


class MemoryWindowStore:
    """Process-local window log, for single-worker deployments and tests."""

    mode = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._last_sweep: float | None = None

    async def hit(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        async with self._lock:
            now = self._clock()
            self._sweep(now, window_seconds)
            hits = self._hits[key]
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                return False, len(hits)
            hits.append(now)
            return True, len(hits)

    def _sweep(self, now: float, window_seconds: int) -> None:
        # drop identities whose newest hit has left the window, at most once per window
        if self._last_sweep is not None and now - self._last_sweep < window_seconds:
            return
        self._last_sweep = now
        cutoff = now - window_seconds
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]


class RateLimiter:
    def __init__(self, store: WindowStore | None, limit: int, window_seconds: int):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    @property
    def mode(self) -> str:
        return self.store.mode if self.store else "bypass"

    @property
    def bypassed(self) -> bool:
        return self.store is None

    async def admit(self, identity: str) -> Admission:
        if self.store is None:
            return Admission(allowed=True, mode="bypass")

        try:
            allowed, count = await self.store.hit(identity, self.limit, self.window_seconds)
        except RedisError as exc:
            # an unreachable limiter must not take the chat down with it
            logger.error("rate_limit_store_failed", identity=identity, error=str(exc))
            return Admission(allowed=True, mode=self.mode)

        if not allowed:
            logger.warning("rate_limit_denied", identity=identity, limit=self.limit,
                           window_seconds=self.window_seconds)
        return Admission(allowed=allowed, mode=self.mode, remaining=max(0, self.limit - count))

    async def close(self) -> None:
        if isinstance(self.store, RedisWindowStore):
            await self.store.close()


def build_rate_limiter(redis_url: str | None, limit: int, window_seconds: int) -> RateLimiter:
    if not redis_url:
        logger.warning("rate_limiter_bypassed", reason="REDIS_URL not configured")
        return RateLimiter(None, limit, window_seconds)
    if redis_url == MEMORY_URL:
        store: WindowStore = MemoryWindowStore()
    else:
        store = RedisWindowStore(redis_url)
    logger.info("rate_limiter_enabled", mode=store.mode, limit=limit, window_seconds=window_seconds)
    return RateLimiter(store, limit, window_seconds)


def client_identity(forwarded_for: str | None, real_ip: str | None = None) -> str:
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return FALLBACK_IDENTITY
