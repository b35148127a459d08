"""Redis store for short-lived counters.

Handles:
- Fixed-window rate limit counters for outbound click tracking

TTL policies:
- Click rate limit windows: 60 seconds
"""

import logging

import redis.asyncio as redis

from commerce_engine.settings import get_settings

# TTL constants (in seconds)
TTL_RATE_LIMIT_WINDOW = 60  # 1 minute

# Key prefixes
PREFIX_RATE_LIMIT = "ratelimit:"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis() -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    # Validate connectivity early (especially for `rediss://` in production).
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


# ============================================================
# Rate limiting
# ============================================================


async def hit_rate_limit(key: str, limit: int, window: int = TTL_RATE_LIMIT_WINDOW) -> bool:
    """Count one hit against a fixed window and report whether it is allowed.

    Args:
        key: Counter key (e.g., "ip:<hash>").
        limit: Maximum hits per window.
        window: Window length in seconds.

    Returns:
        True if the hit is within the limit, False once the limit is exceeded.
        Fails open (True) when Redis is unavailable.
    """
    counter_key = f"{PREFIX_RATE_LIMIT}{key}"
    try:
        client = _get_redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(counter_key)
            pipe.expire(counter_key, window, nx=True)
            count, _ = await pipe.execute()
    except (RuntimeError, redis.RedisError) as e:
        logger.warning(f"Rate limit check skipped for {key}: {e}")
        return True
    return int(count) <= limit
