"""
RequestDeduplicator - Coalesces concurrent backend reads for the same key.

When several requests miss the cache for the same document at once, only
one backend call is made and every caller receives its result (or error).
"""

import asyncio
from typing import Any, Awaitable, Callable, Hashable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    def __init__(self, debug: bool = False):
        self._in_flight: dict[Hashable, asyncio.Task[Any]] = {}
        self._debug = debug
        self.total = 0
        self.deduplicated = 0

    async def dedupe(self, key: Hashable, request_fn: Callable[[], Awaitable[T]]) -> T:
        """Join the in-flight request for key, or start one."""
        task = self._in_flight.get(key)
        if task is not None:
            self.deduplicated += 1
            self._log(f"DEDUPE: joining in-flight request {key}")
        else:
            self.total += 1
            task = asyncio.create_task(request_fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda _t: self._in_flight.pop(key, None))
        # shield so one cancelled caller does not cancel the shared request
        return await asyncio.shield(task)

    async def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        self._in_flight.clear()
        return len(tasks)

    def get_in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_status(self) -> dict[str, Any]:
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": len(self._in_flight),
        }

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")
