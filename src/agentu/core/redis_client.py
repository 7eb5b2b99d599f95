"""
Redis client management.

``get_redis_client()`` returns a ``redis.asyncio`` client when
AGENTU_REDIS_URL is set and reachable, otherwise a process-local
InMemoryRedisClient.
"""

from typing import Any

import redis.asyncio as redis

from .config import get_settings_instance
from .in_memory_redis import InMemoryRedisClient
from .logging import get_logger

logger = get_logger(__name__)

# Global Redis client instance (internal use only)
_redis_client: Any | None = None


async def _create_redis_client(redis_url: str) -> Any:
    """Create and test a Redis client connection."""
    settings = get_settings_instance()
    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_connection_timeout,
    )
    await client.ping()
    logger.info("Redis client initialized successfully", extra={"redis_url": redis_url})
    return client


async def get_redis_client() -> Any:
    """Get or create the shared Redis client (falls back to in-memory)."""
    global _redis_client  # noqa: PLW0603

    if _redis_client is not None:
        return _redis_client

    settings = get_settings_instance()
    if not settings.redis_enabled:
        logger.info("No Redis URL configured, using InMemoryRedisClient")
        _redis_client = InMemoryRedisClient()
        return _redis_client

    try:
        _redis_client = await _create_redis_client(settings.redis_url)
    except (redis.RedisError, OSError) as e:
        logger.warning(
            "Redis connection failed, falling back to InMemoryRedisClient",
            extra={"redis_url": settings.redis_url, "error": str(e)},
        )
        _redis_client = InMemoryRedisClient()
    return _redis_client


def reset_redis_client() -> None:
    """Reset the Redis client singleton (for testing only)."""
    global _redis_client  # noqa: PLW0603
    _redis_client = None
