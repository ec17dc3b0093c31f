"""Adaptive per-connection rate limiter.

One instance per provider connection. State is local to the instance: the
current backoff delay, the time of the last request, and the last quota
snapshot the provider reported.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from workbridge.models import RateLimitInfo

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces out requests and backs off exponentially on 429/5xx."""

    def __init__(
        self,
        *,
        min_delay: float = 0.1,
        max_delay: float = 60.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.current_delay = min_delay
        self._clock = clock
        self._sleep = sleep
        self._last_request_at = 0.0
        self._quota: RateLimitInfo | None = None
        self._lock = asyncio.Lock()

    @property
    def quota(self) -> RateLimitInfo | None:
        return self._quota

    async def wait(self) -> None:
        """Suspend until it is safe to issue the next request."""
        async with self._lock:
            quota = self._quota
            if quota is not None and quota.remaining <= 0:
                wait_for = max(
                    quota.retry_after or 0.0,
                    quota.reset_at - self._clock(),
                )
                if wait_for > 0:
                    wait_for = min(wait_for, self.max_delay)
                    logger.info("Quota exhausted, waiting %.1fs", wait_for)
                    await self._sleep(wait_for)
                self._quota = None

            elapsed = self._clock() - self._last_request_at
            if elapsed < self.current_delay:
                await self._sleep(self.current_delay - elapsed)

            self._last_request_at = self._clock()

    def record_success(self, info: RateLimitInfo | None = None) -> None:
        """Reset backoff and absorb the provider's quota snapshot."""
        self._quota = info
        self.current_delay = self.min_delay

    def record_rate_limit(self, retry_after: float | None = None) -> None:
        """Double the backoff; block ``wait()`` until ``retry_after`` elapses."""
        if retry_after:
            self._quota = RateLimitInfo(
                remaining=0,
                reset_at=self._clock() + retry_after,
                retry_after=retry_after,
            )
        self.current_delay = min(self.current_delay * 2, self.max_delay)

    def record_server_error(self) -> None:
        """Double the backoff without touching quota tracking."""
        self.current_delay = min(self.current_delay * 2, self.max_delay)
