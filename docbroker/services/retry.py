"""
RetryPolicy - bounded retry with exponential backoff.

One policy object describes both the attempt budget and the delay between
attempts, so the same combinator drives write-conflict retries and the
per-deployment polling budget.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=0.1,
                             retry_on=(DocumentConflictError,))
        result = await policy.run(lambda attempt: save(attempt), "save(alice)")
    """

    max_attempts: int = 3
    base_delay: float = 0.1  # seconds
    multiplier: float = 2.0
    retry_on: tuple[type[BaseException], ...] = field(default_factory=tuple)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def backoff(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based): base * multiplier^(attempt-1)."""
        return self.base_delay * self.multiplier ** (attempt - 1)

    def exhausted(self, attempts: int) -> bool:
        """True once attempts used up the budget."""
        return attempts >= self.max_attempts

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        Call operation(attempt) until it succeeds or the budget runs out.

        Only exceptions in ``retry_on`` are retried; anything else propagates
        immediately. The last retryable exception is re-raised when the
        budget is exhausted.
        """
        attempt = 1
        while True:
            try:
                return await operation(attempt)
            except self.retry_on as e:
                if self.exhausted(attempt):
                    logger.warning(
                        f"{operation_name}: giving up after {attempt} attempts ({e})"
                    )
                    raise
                delay = self.backoff(attempt)
                logger.info(
                    f"{operation_name}: attempt {attempt}/{self.max_attempts} failed "
                    f"({type(e).__name__}), retrying in {delay * 1000:.0f}ms"
                )
                await self.sleep(delay)
                attempt += 1
