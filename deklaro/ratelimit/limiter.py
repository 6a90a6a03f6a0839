"""Fixed-window request throttling backed by Redis.

Each (policy, key) pair owns one counter whose TTL is the window. The first
request of a window creates the counter with ``SET NX PX``; every request
increments it. All three commands go in one MULTI/EXEC, so the counter is
shared correctly by every API process. When the key expires the window resets
to zero in one step.
"""

import logging
import math
from typing import Literal

from pydantic import BaseModel
from redis.asyncio import Redis

from deklaro.shared.errors import RateLimitedError

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"


class RateLimitPolicy(BaseModel):
    name: str
    max_requests: int
    window_seconds: int
    strategy: Literal["ip", "tenant"]


UPLOAD = RateLimitPolicy(name="upload", max_requests=10, window_seconds=15 * 60, strategy="tenant")
OCR = RateLimitPolicy(name="ocr", max_requests=30, window_seconds=5 * 60, strategy="tenant")
API = RateLimitPolicy(name="api", max_requests=100, window_seconds=60, strategy="ip")
AUTH = RateLimitPolicy(name="auth", max_requests=5, window_seconds=15 * 60, strategy="ip")
READ = RateLimitPolicy(name="read", max_requests=300, window_seconds=60, strategy="tenant")

RATE_LIMITS = {policy.name.upper(): policy for policy in (UPLOAD, OCR, API, AUTH, READ)}


class RateLimitStatus(BaseModel):
    allowed: bool
    limit: int
    current: int
    remaining: int
    reset_in: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in),
        }


class FixedWindowRateLimiter:
    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    @staticmethod
    def key_for(
        policy: RateLimitPolicy, *, ip: str | None = None, tenant_id: str | None = None
    ) -> str | None:
        subject = ip if policy.strategy == "ip" else tenant_id
        if not subject:
            return None
        return f"{KEY_PREFIX}:{policy.name}:{policy.strategy}:{subject}"

    async def hit(self, policy: RateLimitPolicy, key: str) -> RateLimitStatus:
        """Count one request against the key's current window."""
        window_ms = policy.window_seconds * 1000
        async with self.redis.pipeline(transaction=True) as pipe:
            _, current, ttl_ms = await (
                pipe.set(key, 0, px=window_ms, nx=True).incr(key).pttl(key).execute()
            )

        current = int(current)
        ttl_ms = int(ttl_ms)
        if ttl_ms < 0:
            # Key lost its expiry; never let a window become permanent
            await self.redis.pexpire(key, window_ms)
            ttl_ms = window_ms

        return RateLimitStatus(
            allowed=current <= policy.max_requests,
            limit=policy.max_requests,
            current=current,
            remaining=max(policy.max_requests - current, 0),
            reset_in=max(math.ceil(ttl_ms / 1000), 1),
        )

    async def check(
        self,
        policy: RateLimitPolicy,
        *,
        ip: str | None = None,
        tenant_id: str | None = None,
    ) -> RateLimitStatus | None:
        """Count the request and raise when the window's ceiling is exceeded.

        Returns:
            Window status, or None when the request carries no key for the
            policy's strategy (not limited)

        Raises:
            RateLimitedError: Ceiling exceeded in the current window
        """
        key = self.key_for(policy, ip=ip, tenant_id=tenant_id)
        if key is None:
            return None

        status = await self.hit(policy, key)
        if not status.allowed:
            logger.info(f"Rate limit {policy.name} exceeded for {key} ({status.current})")
            raise RateLimitedError(
                f"Too many requests. Please try again in {status.reset_in} seconds.",
                limit=status.limit,
                remaining=0,
                retry_after=status.reset_in,
            )
        return status
