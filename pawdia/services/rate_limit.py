"""Generation rate limit: fixed window per account via Redis."""

import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pawdia.core.config import get_settings
from pawdia.core.exceptions import RateLimitedError
from pawdia.core.logging import get_logger

log = get_logger(__name__)

KEY_PREFIX = "generate:count"

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis | None:
    """Shared client, or None when REDIS_URL is not configured."""
    global _redis
    url = get_settings().redis_url
    if not url:
        return None
    if _redis is None:
        _redis = aioredis.from_url(url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _key(account_id: str, window_seconds: int, now: float | None = None) -> str:
    window = int((now or time.time()) // window_seconds)
    return f"{KEY_PREFIX}:{account_id}:{window}"


async def incr_generation_count(redis, account_id: str, window_seconds: int) -> int:
    """Increment and return the count for the current window; set TTL on first increment."""
    key = _key(account_id, window_seconds)
    n = await redis.incr(key)
    if n == 1:
        await redis.expire(key, window_seconds + 1)
    return n


async def check_generation_rate(account_id: str, redis=None) -> None:
    """Raise RateLimitedError when over the limit. Fails open if Redis is down or absent."""
    settings = get_settings()
    redis = redis if redis is not None else get_redis()
    if redis is None or settings.generation_rate_limit <= 0:
        return
    window = settings.generation_rate_window_seconds
    try:
        n = await incr_generation_count(redis, account_id, window)
    except RedisError as e:
        log.warning("rate_limit_unavailable", account_id=account_id, error=str(e))
        return
    if n > settings.generation_rate_limit:
        retry_after = window - int(time.time()) % window
        raise RateLimitedError(retry_after=retry_after)
