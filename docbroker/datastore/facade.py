"""
DocumentStoreFacade - cache-first, rate-limited, breaker-guarded access to
the document database.

Combines:
- TTLCache for reads (per-collection TTL, targeted invalidation)
- RateLimiter for every outbound backend call
- CircuitBreaker around every backend call
- RetryPolicy for optimistic-concurrency conflicts on write
- RequestDeduplicator so concurrent misses share one backend read
"""

import copy
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from docbroker import workflow
from docbroker.datastore.collections import ALL_KEY, Collection
from docbroker.datastore.couchdb import DocumentStore, SaveResult
from docbroker.services.cache import TTLCache
from docbroker.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from docbroker.services.deduplicator import RequestDeduplicator
from docbroker.services.errors import (
    ConflictRetriesExhaustedError,
    DocumentConflictError,
    DocumentNotFoundError,
    ForbiddenFieldError,
    RateLimitExceededError,
)
from docbroker.services.rate_limiter import RateLimiter
from docbroker.services.retry import RetryPolicy

T = TypeVar("T")

_META_FIELDS = ("_id", "_rev")
_MISSING = object()


def _field_changes(
    base: dict[str, Any] | None, document: dict[str, Any]
) -> tuple[dict[str, Any], set[str]]:
    """
    Fields the caller set or removed relative to the revision it started from.

    Without a matching base every caller field counts as a change.
    """
    fields = {k: v for k, v in document.items() if k not in _META_FIELDS}
    if base is None or base.get("_rev") != document.get("_rev"):
        return fields, set()

    changes = {k: v for k, v in fields.items() if base.get(k, _MISSING) != v}
    removed = {k for k in base if k not in _META_FIELDS and k not in document}
    return changes, removed


class DocumentStoreFacade:
    """
    Usage:
        facade = DocumentStoreFacade(CouchDBClient(url, user, password))

        user = await facade.get(Collection.USERS, "alice")
        saved = await facade.save(Collection.USERS, {**user, "displayName": "Alice"})
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: TTLCache | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        save_policy: RetryPolicy | None = None,
        service_id: str = "couchdb",
        debug: bool = False,
    ):
        self._store = store
        self._service_id = service_id
        self._cache = cache or TTLCache(debug=debug)
        self._rate_limiter = rate_limiter or RateLimiter()
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            service_id,
            CircuitBreakerConfig(
                ignored_exceptions=(DocumentConflictError, DocumentNotFoundError)
            ),
        )
        self._save_policy = save_policy or RetryPolicy(
            max_attempts=3,
            base_delay=timedelta(milliseconds=100).total_seconds(),
            retry_on=(DocumentConflictError,),
        )
        self._deduplicator = RequestDeduplicator(debug=debug)

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def _backend(
        self, operation: Callable[[], Awaitable[T]], operation_name: str
    ) -> T:
        """Single gate for every backend call: rate limit, then breaker."""
        if not self._rate_limiter.try_acquire():
            raise RateLimitExceededError(
                self._service_id, self._rate_limiter.get_time_until_reset()
            )
        return await self._circuit_breaker.call(operation, operation_name)

    async def _cached_read(
        self,
        collection: Collection,
        key: str,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        cached = await self._cache.get(collection, key)
        if cached is not None:
            # callers may mutate what they get back
            return copy.deepcopy(cached)

        result = await self._deduplicator.dedupe(
            (collection.value, key),
            lambda: self._backend(operation, operation_name),
        )
        if result:
            await self._cache.set(collection, key, copy.deepcopy(result))
        # coalesced callers share one result object
        return copy.deepcopy(result)

    # Reads

    async def get(self, collection: Collection, doc_id: str) -> dict[str, Any]:
        """
        Get a document, from cache when fresh.

        Raises:
            DocumentNotFoundError: If the document does not exist (never cached)
            RateLimitExceededError: If the local rate limit is exhausted
            CircuitOpenError: If the backend is presumed down
        """
        database = collection.database
        return await self._cached_read(
            collection,
            doc_id,
            lambda: self._store.get(database, doc_id),
            f"get({database}/{doc_id})",
        )

    async def get_all(self, collection: Collection) -> list[dict[str, Any]]:
        """List every document in a collection, cached under a collection-wide key."""
        database = collection.database
        return await self._cached_read(
            collection,
            ALL_KEY,
            lambda: self._store.list_all(database),
            f"list_all({database})",
        )

    async def find(
        self, collection: Collection, selector: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Run a selector query. Results are not cached."""
        database = collection.database
        return await self._backend(
            lambda: self._store.query(database, selector), f"query({database})"
        )

    # Writes

    async def save(
        self, collection: Collection, document: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Save a document, resolving revision conflicts by re-applying the
        caller's changes onto the latest stored revision.

        Returns:
            The saved document including its new ``_rev``

        Raises:
            ForbiddenFieldError: If the document carries a reserved field
            InconsistentStateError: If workflow stage/status do not match
            ConflictRetriesExhaustedError: If every attempt conflicted
        """
        policy = collection.policy
        database = collection.database
        doc_id = document.get("_id")

        for field in policy.forbidden_fields:
            if field in document:
                logger.error(
                    f"Blocked save of reserved field '{field}' to {database} ({doc_id})"
                )
                raise ForbiddenFieldError(collection.value, field, doc_id)

        if policy.validates_workflow:
            workflow.validate(document)

        base = await self._cache.get(collection, doc_id) if doc_id else None
        changes, removed = _field_changes(base, document)
        pending = dict(document)

        async def attempt(number: int) -> SaveResult:
            nonlocal pending
            if number > 1:
                latest = await self._fetch_latest(database, doc_id)
                pending = self._rebase(latest, doc_id, changes, removed)
                if policy.validates_workflow:
                    workflow.validate(pending)
            to_write = pending
            return await self._backend(
                lambda: self._store.save(database, to_write),
                f"save({database}/{doc_id}) attempt {number}",
            )

        try:
            result = await self._save_policy.run(attempt, f"save({database}/{doc_id})")
        except DocumentConflictError as e:
            raise ConflictRetriesExhaustedError(
                database, doc_id or "<new>", self._save_policy.max_attempts
            ) from e

        saved = {**pending, "_id": result.id, "_rev": result.rev}
        await self._cache.set(collection, result.id, copy.deepcopy(saved))
        await self._invalidate_derived(collection, result.id)
        return saved

    async def delete(self, collection: Collection, doc_id: str) -> None:
        """Delete a document at its latest revision and drop it from cache."""
        database = collection.database

        async def attempt(number: int) -> None:
            latest = await self._fetch_latest(database, doc_id)
            if latest is None:
                raise DocumentNotFoundError(database, doc_id)
            await self._backend(
                lambda: self._store.delete(database, doc_id, latest["_rev"]),
                f"delete({database}/{doc_id}) attempt {number}",
            )

        await self._save_policy.run(attempt, f"delete({database}/{doc_id})")
        await self._cache.invalidate(collection, doc_id)
        await self._invalidate_derived(collection, doc_id)

    async def _fetch_latest(
        self, database: str, doc_id: str | None
    ) -> dict[str, Any] | None:
        if not doc_id:
            return None
        try:
            return await self._backend(
                lambda: self._store.get(database, doc_id),
                f"get({database}/{doc_id}) for rebase",
            )
        except DocumentNotFoundError:
            return None

    @staticmethod
    def _rebase(
        latest: dict[str, Any] | None,
        doc_id: str | None,
        changes: dict[str, Any],
        removed: set[str],
    ) -> dict[str, Any]:
        if latest is None:
            # deleted in the meantime: recreate from the caller's fields
            rebased = dict(changes)
            if doc_id:
                rebased["_id"] = doc_id
            return rebased

        rebased = {k: v for k, v in latest.items() if k not in removed}
        rebased.update(changes)
        rebased["_id"] = latest.get("_id", doc_id)
        rebased["_rev"] = latest["_rev"]
        return rebased

    async def _invalidate_derived(self, collection: Collection, doc_id: str) -> None:
        await self._cache.invalidate(collection, ALL_KEY)
        for rule in collection.policy.invalidates:
            await self._cache.invalidate(rule.collection, rule.resolve(doc_id))

    # Cache management

    async def invalidate(self, collection: Collection, key: str | None = None) -> int:
        """Explicit cache busting after an out-of-band mutation."""
        return await self._cache.invalidate(collection, key)

    async def get_cached(self, collection: Collection, key: str) -> Any | None:
        """Read a computed view (models, health, ...) from cache only."""
        return await self._cache.get(collection, key)

    async def set_cached(self, collection: Collection, key: str, value: Any) -> None:
        """Store a computed view under its collection's TTL."""
        await self._cache.set(collection, key, value)

    async def reset(self) -> None:
        """Drop all cached state and resilience counters."""
        await self._deduplicator.cancel_all()
        await self._cache.clear()
        self._cache.reset_stats()
        self._circuit_breaker.reset()
        self._rate_limiter.reset()

    def get_health_status(self) -> dict[str, Any]:
        return {
            "cache": self._cache.get_stats().to_dict(),
            "circuit_breaker": self._circuit_breaker.get_status(),
            "rate_limiter": self._rate_limiter.get_status(),
            "deduplicator": self._deduplicator.get_status(),
        }
