"""
Rate limiting for provider calls.

Every (credential, provider) pair has two buckets: one meters requests per
minute, the other meters prompt tokens per minute. With Redis configured a
bucket is a true token bucket kept in a Redis hash and updated by a single
Lua script. The in-memory client gets per-minute fixed windows instead.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, replace
from typing import Any

from .config import Settings, get_settings_instance
from .in_memory_redis import InMemoryRedisClient
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0
    limit: int = 0
    reset_seconds: int = 0
    kind: str = ""

    def to_details(self) -> dict[str, int]:
        """Structured fields for error details and log extras."""
        return {
            "limit": self.limit,
            "remaining": max(0, self.remaining),
            "reset_seconds": self.reset_seconds,
            "retry_after": self.retry_after_seconds,
        }


# Refill for the time elapsed since the last call, then take ARGV[4] units if
# the bucket holds them. KEYS[1] is the bucket hash.
# ARGV: now_ms, capacity, refill per ms, cost, ttl_ms
BUCKET_SCRIPT = """
local level, stamp = unpack(redis.call('HMGET', KEYS[1], 'level', 'stamp'))
local now = tonumber(ARGV[1])
local cap = tonumber(ARGV[2])
local per_ms = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
level = tonumber(level) or cap
stamp = tonumber(stamp) or now
level = math.min(cap, level + math.max(0, now - stamp) * per_ms)
local granted, wait_ms = 0, 0
if level >= cost then
  level = level - cost
  granted = 1
elseif per_ms > 0 then
  wait_ms = math.ceil((cost - level) / per_ms)
else
  wait_ms = 1000
end
redis.call('HSET', KEYS[1], 'level', level, 'stamp', now)
redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[5]))
return {granted, math.floor(level), wait_ms}
"""

# Put back units taken by a request that a later check rejected.
# KEYS[1] is the bucket hash. ARGV: capacity, units
REFUND_SCRIPT = """
local level = tonumber(redis.call('HGET', KEYS[1], 'level'))
if level then
  redis.call('HSET', KEYS[1], 'level', math.min(tonumber(ARGV[1]), level + tonumber(ARGV[2])))
end
return 1
"""


class TokenBucketRateLimiter:
    """Buckets under one key namespace, each refilling ``capacity`` units per window."""

    def __init__(self, namespace: str, redis_client: Any | None = None, window_seconds: int = 60):
        self.namespace = namespace
        self.window_seconds = window_seconds
        self._redis = redis_client

    async def _client(self) -> Any:
        if self._redis is None:
            from .redis_client import get_redis_client

            self._redis = await get_redis_client()
        return self._redis

    async def check(self, key: str, capacity: int, cost: int = 1) -> RateLimitResult:
        """Take ``cost`` units from the bucket if it holds them."""
        capacity = max(1, int(capacity))
        cost = max(1, int(cost))
        bucket = f"{self.namespace}:{key}"
        redis = await self._client()

        if isinstance(redis, InMemoryRedisClient):
            return await self._fixed_window(redis, bucket, capacity, cost)
        try:
            return await self._token_bucket(redis, bucket, capacity, cost)
        except Exception as e:
            logger.warning(
                "Rate limit script failed, using a fixed window",
                extra={"bucket": bucket, "error": str(e)},
            )
            return await self._fixed_window(redis, bucket, capacity, cost)

    def _window_slot(self, bucket: str, now: int) -> str:
        return f"{bucket}:w{now // self.window_seconds}"

    async def refund(self, key: str, capacity: int, cost: int = 1) -> None:
        """Return units a granted check took, for a request rejected further along."""
        capacity = max(1, int(capacity))
        cost = max(1, int(cost))
        bucket = f"{self.namespace}:{key}"
        redis = await self._client()

        if isinstance(redis, InMemoryRedisClient):
            slot = self._window_slot(bucket, int(time.time()))
            # A window that already rolled over has nothing to give back
            if await redis.get(slot) is not None:
                await redis.incrby(slot, -cost)
            return
        try:
            await redis.eval(REFUND_SCRIPT, 1, bucket, capacity, cost)
        except Exception as e:
            logger.warning("Rate limit refund failed", extra={"bucket": bucket, "error": str(e)})

    async def _fixed_window(self, redis: Any, bucket: str, capacity: int, cost: int) -> RateLimitResult:
        now = int(time.time())
        window = self.window_seconds
        reset = window - now % window
        slot = self._window_slot(bucket, now)

        used = await redis.incrby(slot, cost)
        await redis.expire(slot, window)
        if used <= capacity:
            return RateLimitResult(allowed=True, remaining=capacity - used, limit=capacity, reset_seconds=reset)

        # Give the units back so a rejected request does not shrink the window
        await redis.incrby(slot, -cost)
        logger.debug("Fixed window exhausted", extra={"bucket": bucket, "cost": cost, "capacity": capacity})
        return RateLimitResult(
            allowed=False,
            retry_after_seconds=reset,
            remaining=capacity - (used - cost),
            limit=capacity,
            reset_seconds=reset,
        )

    async def _token_bucket(self, redis: Any, bucket: str, capacity: int, cost: int) -> RateLimitResult:
        per_ms = capacity / (self.window_seconds * 1000.0)
        now_ms = int(time.time() * 1000)
        granted, level, wait_ms = await redis.eval(
            BUCKET_SCRIPT, 1, bucket, now_ms, capacity, per_ms, cost, self.window_seconds * 2000
        )
        allowed = int(granted) == 1
        level = max(0, int(level))
        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=0 if allowed else max(1, math.ceil(int(wait_ms) / 1000)),
            remaining=level,
            limit=capacity,
            reset_seconds=max(1, math.ceil((capacity - level) / per_ms / 1000)),
        )


class RateLimitService:
    """Admission control for provider calls.

    Limits come from each provider's ``rate_limit_config``. A key missing
    there falls back to the global LLM defaults in settings; 0 disables it.
    """

    def __init__(self, settings: Settings | None = None, redis_client: Any | None = None):
        self.settings = settings or get_settings_instance()
        self.requests = TokenBucketRateLimiter("rl:llm:rpm", redis_client)
        self.tokens = TokenBucketRateLimiter("rl:llm:tpm", redis_client)

    @property
    def enabled(self) -> bool:
        return self.settings.enable_rate_limiting

    def limits_for(self, rate_limit_config: dict[str, Any] | None) -> tuple[int, int]:
        """Resolve (rpm, tpm) for a provider."""
        config = rate_limit_config or {}
        rpm = config.get("requests_per_minute", self.settings.llm_rate_limit_requests_per_minute)
        tpm = config.get("tokens_per_minute", self.settings.llm_rate_limit_tokens_per_minute)
        return int(rpm or 0), int(tpm or 0)

    async def admit(
        self,
        credential_id: str,
        provider_id: str,
        rate_limit_config: dict[str, Any] | None,
        prompt_tokens: int,
    ) -> RateLimitResult:
        """Take one request permit, then ``prompt_tokens`` token permits.

        Returns the first denial, with ``kind`` naming the limit that was hit.
        A token denial gives the request permit back, so calls that never
        reach the provider do not use up its request allowance.
        """
        if not self.enabled:
            return RateLimitResult(allowed=True)

        rpm, tpm = self.limits_for(rate_limit_config)
        key = f"credential:{credential_id}:provider:{provider_id}"
        if rpm > 0:
            result = await self.requests.check(key, rpm)
            if not result.allowed:
                return replace(result, kind="requests per minute")
        if tpm > 0:
            result = await self.tokens.check(key, tpm, cost=prompt_tokens)
            if not result.allowed:
                if rpm > 0:
                    await self.requests.refund(key, rpm)
                return replace(result, kind="tokens per minute")
        return RateLimitResult(allowed=True)


_rate_limit_service: RateLimitService | None = None


def get_rate_limit_service() -> RateLimitService:
    """Get the rate limit service singleton."""
    global _rate_limit_service  # noqa: PLW0603
    if _rate_limit_service is None:
        _rate_limit_service = RateLimitService()
    return _rate_limit_service
