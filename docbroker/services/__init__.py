"""
Service layer infrastructure - resilience patterns for backend calls.

Provides:
- TTLCache: Per-collection cache with independent TTLs
- RateLimiter: Fixed-window permit counter
- CircuitBreaker: Stops calling a failing backend
- RetryPolicy: Bounded retry with exponential backoff
- RequestDeduplicator: Coalesces concurrent identical reads
"""

from docbroker.services.errors import (
    CacheError,
    CircuitOpenError,
    ConflictRetriesExhaustedError,
    DocumentConflictError,
    DocumentNotFoundError,
    DocumentStoreError,
    ExternalServiceError,
    ForbiddenFieldError,
    InconsistentStateError,
    RateLimitExceededError,
    RetryableError,
    ServiceError,
)
from docbroker.services.cache import CacheEntry, CacheStats, TTLCache
from docbroker.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from docbroker.services.deduplicator import RequestDeduplicator
from docbroker.services.rate_limiter import RateLimiter
from docbroker.services.retry import RetryPolicy

__all__ = [
    # Errors
    "ServiceError",
    "RetryableError",
    "CacheError",
    "CircuitOpenError",
    "RateLimitExceededError",
    "DocumentStoreError",
    "DocumentConflictError",
    "ConflictRetriesExhaustedError",
    "DocumentNotFoundError",
    "ForbiddenFieldError",
    "InconsistentStateError",
    "ExternalServiceError",
    # Cache
    "TTLCache",
    "CacheEntry",
    "CacheStats",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    # Rate limiting / retry / dedup
    "RateLimiter",
    "RetryPolicy",
    "RequestDeduplicator",
]
