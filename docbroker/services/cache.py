"""
TTLCache - per-collection in-memory cache with independent expiry policies.

Features:
- One namespace per collection tag, each with its own TTL
- Collections whose TTL is None never expire; they are only invalidated explicitly
- Empty values are refused so a failed lookup can never masquerade as a document
- Async-safe operations guarded by a single lock
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Hashable, Protocol

from loguru import logger

from docbroker.services.errors import CacheError


class CachePolicy(Protocol):
    """Anything that names a cache namespace and its TTL."""

    @property
    def value(self) -> str: ...

    @property
    def ttl(self) -> timedelta | None: ...


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    collection: str
    key: Hashable
    value: Any
    inserted_at: datetime

    def is_fresh(self, ttl: timedelta | None, now: datetime) -> bool:
        """Check if entry is younger than ttl (None means no expiry)."""
        if ttl is None:
            return True
        return now - self.inserted_at < ttl


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


class TTLCache:
    """
    Async-compatible cache keyed by (collection, key).

    Usage:
        cache = TTLCache()

        cached = await cache.get(Collection.USERS, "alice")
        if cached is None:
            doc = await fetch_user("alice")
            await cache.set(Collection.USERS, "alice", doc)
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._entries: dict[str, dict[Hashable, CacheEntry]] = {}
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    async def get(self, collection: CachePolicy, key: Hashable) -> Any | None:
        """
        Get value from cache.

        Returns the cached value if present and younger than the collection's
        TTL, None otherwise. Expired entries are dropped on access.
        """
        async with self._lock:
            bucket = self._entries.get(collection.value, {})
            entry = bucket.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {collection.value}:{key}")
                return None

            if not entry.is_fresh(collection.ttl, self._clock()):
                del bucket[key]
                self._stats.misses += 1
                self._stats.expirations += 1
                self._log(f"EXPIRED: {collection.value}:{key}")
                return None

            self._stats.hits += 1
            self._log(f"HIT: {collection.value}:{key}")
            return entry.value

    async def set(self, collection: CachePolicy, key: Hashable, value: Any) -> None:
        """
        Set value in cache, restarting its expiry clock.

        Raises:
            CacheError: If value is None or empty
        """
        if _is_empty(value):
            raise CacheError(
                f"Refusing to cache empty value for {collection.value}:{key}"
            )

        entry = CacheEntry(
            collection=collection.value,
            key=key,
            value=value,
            inserted_at=self._clock(),
        )
        async with self._lock:
            self._entries.setdefault(collection.value, {})[key] = entry
            self._log(f"SET: {collection.value}:{key}")

    async def invalidate(
        self, collection: CachePolicy, key: Hashable | None = None
    ) -> int:
        """
        Remove one entry, or the whole collection when key is omitted.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            bucket = self._entries.get(collection.value)
            if not bucket:
                return 0

            if key is None:
                removed = len(bucket)
                bucket.clear()
            else:
                removed = 1 if bucket.pop(key, None) is not None else 0

            if removed:
                self._log(
                    f"INVALIDATE: {removed} entries in {collection.value}"
                    + (f" (key={key})" if key is not None else "")
                )
            return removed

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            count = sum(len(bucket) for bucket in self._entries.values())
            self._entries.clear()
            self._log(f"CLEAR: {count} entries removed")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.sizes = {
            name: len(bucket) for name, bucket in self._entries.items() if bucket
        }
        return self._stats

    def reset_stats(self) -> None:
        self._stats = CacheStats()

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TTLCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    sizes: dict[str, int] | None = None

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "sizes": dict(self.sizes or {}),
            "hit_rate": f"{self.hit_rate:.2%}",
        }
