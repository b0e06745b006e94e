"""Shared Redis connection pool backing the notification queue."""

import redis.asyncio as redis

from storefront.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, client: redis.Redis | None = None) -> None:
    """Initialize the shared Redis client.

    Args:
        url: Override for settings.redis_url
        client: Pre-built client (e.g. FakeAsyncRedis in tests); skips URL parsing
    """
    global _redis

    if _redis is not None:
        return

    if client is None:
        settings = get_settings()
        client = redis.from_url(
            url or settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    # Verify connectivity before publishing the client
    await client.ping()
    _redis = client


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
