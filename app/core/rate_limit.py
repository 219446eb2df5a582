"""Shared fixed-window rate limiting backed by Redis.

Counters live in Redis so every API instance sees the same budget. Each
window is a separate key created with ``INCR`` and expired with ``EXPIRE``
in one MULTI/EXEC pipeline, so a key never outlives its window.
"""
from dataclasses import dataclass
from fastapi import Depends, Request
from typing import Callable, Dict, Optional, Tuple
import logging
import math
import time

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.auth import get_current_user
from app.core.config import settings
from app.core.exceptions import RateLimitExceededError
from app.models.user import User

logger = logging.getLogger(__name__)


# Preset name -> (max requests, window seconds)
RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "strict": (3, 60),
    "standard": (10, 60),
    "relaxed": (30, 60),
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int  # seconds until the window resets

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in),
        }


class RateLimiter:
    """Counts hits per actor and action in the current window"""

    def __init__(self, redis_client: Optional[redis.Redis], enabled: bool = True, clock: Callable[[], float] = time.time):
        self.redis_client = redis_client
        self.enabled = enabled and redis_client is not None
        self.clock = clock

    @classmethod
    def from_settings(cls) -> "RateLimiter":
        client = redis.from_url(settings.REDIS_URL) if settings.REDIS_URL else None
        return cls(client, enabled=settings.RATE_LIMIT_ENABLED)

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> RateLimitResult:
        now = self.clock()
        reset_in = max(1, math.ceil(window_seconds - (now % window_seconds)))

        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=max_requests, reset_in=reset_in)

        window = int(now // window_seconds)
        redis_key = f"ratelimit:{key}:{window}"
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, window_seconds)
                count, _ = await pipe.execute()
        except RedisError as e:
            # Fail open: losing the limiter must not take bookings down
            logger.warning(f"Rate limiter unavailable, allowing {key}: {e}")
            return RateLimitResult(allowed=True, remaining=max_requests, reset_in=reset_in)

        count = int(count)
        return RateLimitResult(
            allowed=count <= max_requests,
            remaining=max(0, max_requests - count),
            reset_in=reset_in
        )

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()


def get_rate_limiter(request: Request) -> RateLimiter:
    """The limiter created at application startup"""
    return request.app.state.rate_limiter


def rate_limit(action: str, preset: str = "standard"):
    """Dependency enforcing a per-user budget for ``action``"""
    max_requests, window_seconds = RATE_LIMITS[preset]

    async def _enforce(
        current_user: User = Depends(get_current_user),
        limiter: RateLimiter = Depends(get_rate_limiter)
    ) -> RateLimitResult:
        result = await limiter.hit(f"{action}:{current_user.id}", max_requests, window_seconds)
        if not result.allowed:
            raise RateLimitExceededError(
                f"Rate limit exceeded. Try again in {result.reset_in} seconds.",
                remaining=result.remaining,
                reset_in=result.reset_in
            )
        return result

    return _enforce
