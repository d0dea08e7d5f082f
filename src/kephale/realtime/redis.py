"""Redis connection pool shared by presence, call state and pub/sub.

Learn: The pool is created once in the app lifespan. Every consumer is
written to tolerate its absence: presence reads report everyone offline,
call lookups return nothing, and publishes are dropped with a warning.
"""

from typing import Optional

import redis.asyncio as aioredis

from kephale.config import settings

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def get_redis_optional() -> Optional[aioredis.Redis]:
    """FastAPI dependency — the pool, or None when Redis is unavailable."""
    return _redis
