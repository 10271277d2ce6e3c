"""
Per-identity fixed-window rate limiting.

Two backends share one contract:
- RateLimiter keeps counters in process memory. Counters are lost on restart
  and are not shared between instances, so every API worker throttles on its
  own.
- RedisRateLimiter keeps counters in Redis (INCR + PEXPIRE) so that limits
  hold across instances.
"""
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """A request budget: `limit` calls per `window_ms` milliseconds."""

    limit: int
    window_ms: int


RATE_LIMITS: Dict[str, RateLimitRule] = {
    "payment_operations": RateLimitRule(limit=10, window_ms=60 * 1000),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _Window:
    count: int
    reset_at: int


class AsyncRateLimiter(Protocol):
    """Interface used by the API layer; both backends satisfy it."""

    async def check(self, key: str, limit: int, window_ms: int) -> bool: ...

    async def time_until_reset(self, key: str) -> int: ...


class RateLimiter:
    """
    In-memory rate limiter.

    Example:
        limiter = RateLimiter()
        if not limiter.is_allowed(f"user:{user_id}", 10, 60_000):
            retry_after_ms = limiter.get_time_until_reset(f"user:{user_id}")
    """

    def __init__(self, clock=_now_ms) -> None:
        self._storage: Dict[str, _Window] = {}
        self._clock = clock

    def is_allowed(self, key: str, limit: int, window_ms: int) -> bool:
        """
        Check whether a request for `key` fits within the limit, counting it if so.

        Args:
            key: Unique identifier (user ID, email, IP)
            limit: Maximum requests allowed per window
            window_ms: Window length in milliseconds

        Returns:
            bool: True if the request is allowed, False if rate limited
        """
        now = self._clock()
        entry = self._storage.get(key)

        if entry is None or now > entry.reset_at:
            self._storage[key] = _Window(count=1, reset_at=now + window_ms)
            return True

        if entry.count >= limit:
            return False

        entry.count += 1
        return True

    def get_time_until_reset(self, key: str) -> int:
        """Milliseconds until the window for `key` resets, 0 if not tracked."""
        entry = self._storage.get(key)
        if entry is None:
            return 0
        return max(0, entry.reset_at - self._clock())

    def reset(self, key: str) -> None:
        """Forget the counter for `key`."""
        self._storage.pop(key, None)

    def cleanup(self) -> int:
        """
        Drop expired windows.

        Returns:
            int: Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._storage.items() if now > entry.reset_at]
        for key in expired:
            del self._storage[key]

        if expired:
            logger.debug("rate_limiter_cleanup", removed=len(expired), remaining=len(self._storage))
        return len(expired)

    def __len__(self) -> int:
        return len(self._storage)

    async def check(self, key: str, limit: int, window_ms: int) -> bool:
        return self.is_allowed(key, limit, window_ms)

    async def time_until_reset(self, key: str) -> int:
        return self.get_time_until_reset(key)


class RedisRateLimiter:
    """
    Redis-backed rate limiter for multi-instance deployments.

    The first INCR in a window creates the key and sets its expiry, so Redis
    expires stale windows without a sweep.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        redis_url: Optional[str] = None,
        prefix: str = "ratelimit",
    ):
        """
        Initialize Redis rate limiter.

        Args:
            redis_client: Optional Redis client (created from redis_url if not provided)
            redis_url: Redis connection URL
            prefix: Key namespace
        """
        self.redis_client = redis_client
        self.redis_url = redis_url
        self.prefix = prefix

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            if not self.redis_url:
                raise RuntimeError("RedisRateLimiter needs a client or a redis_url")
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def check(self, key: str, limit: int, window_ms: int) -> bool:
        """Count a request for `key` and report whether it is within the limit."""
        redis = await self._ensure_redis()
        redis_key = self._key(key)

        pipe = redis.pipeline()
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        count, ttl = await pipe.execute()

        # A TTL of -1 means the key exists without expiry: first hit in this window
        if ttl is None or int(ttl) < 0:
            await redis.pexpire(redis_key, window_ms)

        return int(count) <= limit

    async def time_until_reset(self, key: str) -> int:
        """Milliseconds until the window for `key` resets, 0 if not tracked."""
        redis = await self._ensure_redis()
        ttl = await redis.pttl(self._key(key))
        return max(0, int(ttl or 0))

    async def reset(self, key: str) -> None:
        redis = await self._ensure_redis()
        await redis.delete(self._key(key))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
