"""
RateLimiter - fixed time-window permit counter for outbound backend calls.

The window resets lazily on the first call after it expires; no background
timer is involved.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger


class RateLimiter:
    """
    Fixed-size window limiter.

    Usage:
        limiter = RateLimiter(max_requests=100, window=timedelta(seconds=60))

        if not limiter.try_acquire():
            raise RateLimitExceededError("couchdb", limiter.get_time_until_reset())
    """

    def __init__(
        self,
        max_requests: int = 100,
        window: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._count = 0
        self._window_start = clock()
        self._rejected = 0

    def try_acquire(self) -> bool:
        """Take one permit if the current window has any left."""
        now = self._clock()
        if now - self._window_start > self.window:
            self._count = 0
            self._window_start = now

        if self._count >= self.max_requests:
            self._rejected += 1
            logger.warning(
                f"Rate limit exceeded: {self._count}/{self.max_requests} requests "
                f"in current window"
            )
            return False

        self._count += 1
        return True

    def get_time_until_reset(self) -> float:
        """Seconds until the current window expires."""
        remaining = self._window_start + self.window - self._clock()
        return max(0.0, remaining.total_seconds())

    def reset(self) -> None:
        self._count = 0
        self._rejected = 0
        self._window_start = self._clock()

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "requests": self._count,
            "max_requests": self.max_requests,
            "window_seconds": self.window.total_seconds(),
            "window_start": self._window_start.isoformat(),
            "rejected": self._rejected,
        }
