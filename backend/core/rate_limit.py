"""
Rate Limiting — fixed-window request counters in Redis.

One counter per (scope, identifier) per window: the first hit creates the
key with the window as its expiry, later hits only increment it. The
remaining TTL is the Retry-After for rejected requests.

If Redis cannot be reached the request is let through and a warning logged,
so a cache outage does not take the intake form down with it.
"""

from dataclasses import dataclass

import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter:
    def __init__(self, redis, *, scope: str, max_requests: int, window_seconds: int):
        self.redis = redis
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.scope}:{identifier}"

    async def hit(self, identifier: str) -> RateLimitResult:
        key = self._key(identifier)
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, self.window_seconds)
            if count <= self.max_requests:
                return RateLimitResult(allowed=True)
            ttl = await self.redis.ttl(key)
            if ttl < 0:
                # Counter lost its expiry (first EXPIRE never ran); restart the window.
                await self.redis.expire(key, self.window_seconds)
                ttl = self.window_seconds
        except RedisError as exc:
            logger.warning("rate_limit.unavailable", scope=self.scope, error=str(exc))
            return RateLimitResult(allowed=True)

        logger.info("rate_limit.exceeded", scope=self.scope, identifier=identifier, count=count)
        return RateLimitResult(allowed=False, retry_after_seconds=max(1, ttl))
