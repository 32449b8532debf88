"""Shared async Redis connection pool."""

import redis.asyncio as redis

from src.utils.settings.redis import RedisSettings

_redis_pool: redis.ConnectionPool | None = None


def redis_key(*parts: object) -> str:
    """Namespaced key, e.g. `credit-ledger:rotation:monthly:<account>`."""
    return ":".join([RedisSettings().REDIS_KEY_PREFIX, *(str(p) for p in parts)])


async def get_redis_client() -> redis.Redis:
    """Client over the process-wide pool; usable as a FastAPI dependency."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.ConnectionPool.from_url(
            RedisSettings().REDIS_URL, decode_responses=True
        )
    return redis.Redis(connection_pool=_redis_pool)


async def close_redis_pool() -> None:
    """Called from the application lifespan on shutdown."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
