"""
Redis client initialization.

Redis is only needed when booking locks are shared between processes
(booking_lock_backend = "redis"), so the client is created on first use.
"""

from typing import Optional

import redis.asyncio as redis
from tripdesk.app.core.config import settings


_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Return the process-wide Redis client, creating it on first call."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=settings.redis_decode_responses,
        )
    return _redis_client


async def ping_redis() -> bool:
    """
    Test Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        return await get_redis_client().ping()
    except redis.RedisError:
        return False


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
