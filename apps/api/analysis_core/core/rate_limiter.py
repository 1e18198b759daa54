"""Per-provider rate limiting backed by Redis.

Fixed-window counters shared by every worker process. The counter for the
current window is incremented atomically; calls over budget fail fast unless a
bounded wait is configured and the window resets within it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from analysis_core.core.config import settings
from analysis_core.core.exceptions import RateLimitExceededError
from analysis_core.schemas.analysis import utcnow

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window limiter for a single provider."""

    def __init__(
        self,
        redis_client: redis.Redis,
        provider: str,
        limit: int = settings.PROVIDER_RATE_LIMIT_CALLS,
        window_seconds: int = settings.PROVIDER_RATE_LIMIT_WINDOW,
        max_wait: float = settings.PROVIDER_RATE_LIMIT_MAX_WAIT,
        operation_timeout: float = settings.CACHE_OPERATION_TIMEOUT,
        now: Callable[[], datetime] = utcnow
    ):
        self.redis_client = redis_client
        self.provider = provider
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_wait = max_wait
        self.operation_timeout = operation_timeout
        self._now = now

    def _window(self) -> tuple:
        ts = self._now().timestamp()
        index = int(ts // self.window_seconds)
        reset_in = (index + 1) * self.window_seconds - ts
        return f"ratelimit:{self.provider}:{index}", reset_in

    async def _increment(self, key: str) -> int:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self.window_seconds * 2)
            count, _ = await pipe.execute()
        return int(count)

    async def acquire(self) -> None:
        """Consume one call from the budget or raise RateLimitExceededError."""
        remaining_wait = self.max_wait
        while True:
            key, reset_in = self._window()
            try:
                count = await asyncio.wait_for(self._increment(key), timeout=self.operation_timeout)
            except (RedisError, asyncio.TimeoutError) as e:
                # Shared counter unreachable: let the call through rather than stall every provider
                logger.warning(f"Rate limiter for {self.provider} unavailable, allowing call: {e}")
                return

            if count <= self.limit:
                return

            if reset_in > remaining_wait:
                logger.warning(
                    f"Rate limit exceeded for {self.provider}: {count}/{self.limit} "
                    f"in {self.window_seconds}s window"
                )
                raise RateLimitExceededError(self.provider, retry_after=reset_in)

            logger.debug(f"Rate limit reached for {self.provider}, waiting {reset_in:.2f}s")
            await asyncio.sleep(reset_in)
            remaining_wait -= reset_in

    async def get_usage(self) -> Dict[str, Any]:
        """Calls consumed in the current window."""
        key, reset_in = self._window()
        try:
            used = await asyncio.wait_for(self.redis_client.get(key), timeout=self.operation_timeout)
        except (RedisError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not read rate limit usage for {self.provider}: {e}")
            used = None
        return {
            "provider": self.provider,
            "used": int(used or 0),
            "limit": self.limit,
            "window_seconds": self.window_seconds,
            "resets_in": round(reset_in, 2)
        }
