"""Fixed window request limits per identity and resource."""

import logging
from dataclasses import dataclass
from time import time
from typing import Any, Optional

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "ratelimit:"


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


class RateLimiter:
    """
    Counts requests in fixed windows of ``window`` seconds.

    Each ``(identity, resource)`` pair gets one counter per window, created
    with ``INCR`` and expiring with the window, so every worker process shares
    the same budget.
    """

    def __init__(self, redis_client: Any, limit: int = 100, window: int = 60):
        self.redis_client = redis_client
        self.limit = limit
        self.window = window

    def _key(self, identity: str, resource: str, window_start: int) -> str:
        return f"{RATE_LIMIT_KEY_PREFIX}{identity}:{resource}:{window_start}"

    async def check(
        self, identity: str, resource: str, now: Optional[float] = None
    ) -> RateLimitDecision:
        now = time() if now is None else now
        window_start = int(now) - (int(now) % self.window)
        key = self._key(identity, resource, window_start)

        async with self.redis_client.pipeline() as redis_pipe:
            redis_pipe.incr(key)
            redis_pipe.expire(key, self.window)
            count, _ = await redis_pipe.execute()

        count = int(count)
        retry_after = max(1, window_start + self.window - int(now))
        if count > self.limit:
            logger.info("rate limit exceeded for %s on %s", identity, resource)
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        return RateLimitDecision(
            allowed=True, remaining=self.limit - count, retry_after=retry_after
        )

    async def allow(
        self, identity: str, resource: str, now: Optional[float] = None
    ) -> bool:
        decision = await self.check(identity, resource, now)
        return decision.allowed
