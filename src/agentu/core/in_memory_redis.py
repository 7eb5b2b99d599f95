"""
In-memory Redis client for the rate-limit fallback.

Implements the subset of the ``redis.asyncio`` client surface the rate
limiter touches, so the limiter runs unchanged when AGENTU_REDIS_URL is
not configured.
"""

import time
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)


class InMemoryRedisClient:
    """In-memory Redis client (single process)."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._expiry: dict[str, float] = {}

    def _evict_if_expired(self, key: str) -> None:
        if key in self._expiry and time.time() > self._expiry[key]:
            self._data.pop(key, None)
            del self._expiry[key]

    async def ping(self) -> str:
        return "PONG"

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        """Set a key-value pair with optional expiration."""
        self._data[key] = value
        if ex:
            self._expiry[key] = time.time() + ex
        return True

    async def get(self, key: str) -> Any | None:
        self._evict_if_expired(key)
        return self._data.get(key)

    async def expire(self, key: str, seconds: int) -> bool:
        """Record an expiration ``seconds`` from now; does not check the key exists."""
        self._expiry[key] = time.time() + seconds
        return True

    async def incrby(self, key: str, amount: int) -> int:
        """
        Increment the numeric value stored at key by the given amount.

        An expired key is treated as missing (0). Numeric strings are coerced
        to int the way Redis does; anything else raises like Redis would.
        """
        self._evict_if_expired(key)
        current = self._data.get(key, 0)
        if isinstance(current, str):
            try:
                current = int(current)
            except ValueError as err:
                raise ValueError("ERR value is not an integer or out of range") from err
        new_value = current + amount
        self._data[key] = new_value
        return new_value

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if key in self._data:
                del self._data[key]
                deleted += 1
            self._expiry.pop(key, None)
        return deleted

    async def close(self) -> None:
        self._data.clear()
        self._expiry.clear()

    def __str__(self) -> str:
        return f"InMemoryRedisClient(data_size={len(self._data)})"
