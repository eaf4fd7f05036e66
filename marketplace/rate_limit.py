"""
Sliding-window request limiting behind allow(key) -> bool.
InMemoryRateLimiter serves a single instance; RedisRateLimiter shares counters across instances.
"""
import asyncio
import time
import uuid
from collections import deque

import redis.asyncio as redis

from marketplace.config import settings
from marketplace.redis_client import get_redis


class InMemoryRateLimiter:
    def __init__(self, max_requests: int, window_seconds: float, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if not hits:
                del self._hits[key]

    async def allow(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            self._evict(now)
            hits = self._hits.setdefault(key, deque())
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True


class RedisRateLimiter:
    """
    One sorted set per key, scored by request time; entries older than the window are trimmed.
    Trim, add and count run in one MULTI and the count includes the caller's own entry.
    A refused request removes its entry again.
    """

    def __init__(
        self, client: redis.Redis, max_requests: int, window_seconds: float, prefix: str = "ratelimit:", clock=time.time
    ):
        self._client = client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._prefix = prefix
        self._clock = clock

    async def allow(self, key: str) -> bool:
        now = self._clock()
        zkey = f"{self._prefix}{key}"
        member = f"{now}:{uuid.uuid4().hex}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(zkey, 0, now - self.window_seconds)
            pipe.zadd(zkey, {member: now})
            pipe.zcard(zkey)
            pipe.expire(zkey, int(self.window_seconds) + 1)
            _, _, count, _ = await pipe.execute()
        if count > self.max_requests:
            await self._client.zrem(zkey, member)
            return False
        return True


async def build_rate_limiter():
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(
            await get_redis(),
            settings.rate_limit_max_requests,
            settings.rate_limit_window_seconds,
        )
    return InMemoryRateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)
