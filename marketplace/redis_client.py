import json

import redis.asyncio as redis

from marketplace.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int | None = None) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should ack without reprocessing.
    Returns False if key is new -> caller owns it now.
    Uses SET NX: if we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds or settings.idempotency_ttl_seconds)
    return not was_set


async def release_idempotency(key: str) -> None:
    """Forget a claimed key so a redelivery is processed again."""
    r = await get_redis()
    await r.delete(key)


async def get_cached_response(key: str) -> dict | None:
    r = await get_redis()
    raw = await r.get(key)
    return json.loads(raw) if raw else None


async def cache_response(key: str, value: dict, ttl_seconds: int | None = None) -> None:
    r = await get_redis()
    await r.set(key, json.dumps(value), ex=ttl_seconds or settings.idempotency_ttl_seconds)
