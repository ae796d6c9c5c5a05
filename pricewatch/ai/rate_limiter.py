"""Rate limiting and retry timing for AI disambiguation calls."""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

from pricewatch.config import settings

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Admit at most ``max_per_window`` calls in any rolling window.

    Callers over the limit wait for capacity instead of being rejected. One
    instance is shared by every adapter in the process; the lock serializes
    access to the admission timestamps.
    """

    def __init__(
        self,
        max_per_window: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_per_window = max(1, max_per_window)
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._admitted: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()

    async def acquire(self) -> float:
        """Wait for a slot in the window.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._admitted) < self.max_per_window:
                    self._admitted.append(now)
                    return waited

                wait_time = self.window_seconds - (now - self._admitted[0])
                if wait_time <= 0:
                    continue
                logger.info(f"AI rate limit reached, waiting {wait_time:.1f}s")
                await self._sleep(wait_time)
                waited += wait_time

    @property
    def in_window(self) -> int:
        """Admissions currently counted against the window."""
        self._evict(self._clock())
        return len(self._admitted)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None

    value = value.strip()
    try:
        seconds = float(value)
        return max(0.0, seconds)
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def retry_delay(
    retry_after: Optional[str],
    attempt: int,
    base_delay: float,
    max_delay: float = 60.0,
) -> float:
    """Delay before retrying a rate-limited call.

    A Retry-After header wins; otherwise back off exponentially from
    ``base_delay``. Either way the result is capped at ``max_delay``.
    """
    delay = parse_retry_after(retry_after)
    if delay is None:
        delay = base_delay * (2 ** min(max(attempt, 0), 6))
    return min(delay, max_delay)


_shared_limiter: Optional[SlidingWindowRateLimiter] = None


def get_ai_rate_limiter() -> SlidingWindowRateLimiter:
    """Process-wide AI limiter built from settings."""
    global _shared_limiter
    if _shared_limiter is None:
        _shared_limiter = SlidingWindowRateLimiter(settings.ai_max_requests_per_minute)
    return _shared_limiter
