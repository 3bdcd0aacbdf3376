"""
CircuitBreaker - Stops calling the document store while it is failing.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Backend presumed down, requests are rejected
- HALF_OPEN: Recovery timeout elapsed, a single trial request is allowed

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: After recovery_timeout since the last failure
- HALF_OPEN → CLOSED: On successful trial
- HALF_OPEN → OPEN: On failed trial (failure timer restarts)

Exceptions listed in ``ignored_exceptions`` (write conflicts, missing
documents) prove the backend answered, so they never count as failures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from docbroker.services.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5
    recovery_timeout: timedelta = timedelta(seconds=30)
    ignored_exceptions: tuple[type[BaseException], ...] = field(default_factory=tuple)


class CircuitBreaker:
    """
    Circuit breaker guarding every call to a single backend.

    Usage:
        cb = CircuitBreaker("couchdb")
        doc = await cb.call(lambda: client.get("maia_users", "alice"), "get(alice)")
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN and self._recovery_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN")
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _recovery_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.config.recovery_timeout

    def can_request(self) -> bool:
        """Check if a request is allowed."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.HALF_OPEN:
            return not self._trial_in_flight

        return False

    async def call(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        """
        Run operation through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (or a trial is already running)
        """
        if not self.can_request():
            logger.warning(
                f"Circuit breaker '{self.service_id}' {self._state.value}, "
                f"rejecting {operation_name}"
            )
            raise CircuitOpenError(self.service_id, self.get_time_until_reset() or 0)

        is_trial = self._state == CircuitState.HALF_OPEN
        if is_trial:
            self._trial_in_flight = True

        try:
            result = await operation()
        except self.config.ignored_exceptions:
            # Backend answered; only a pending trial is resolved by it
            if self._state == CircuitState.HALF_OPEN:
                self._close()
            raise
        except Exception as e:
            logger.error(f"Circuit breaker '{self.service_id}': {operation_name} failed: {e}")
            self.record_failure()
            raise
        except BaseException:
            # Cancelled trial proved nothing; let the next caller try
            if is_trial and self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                logger.info(
                    f"Circuit breaker '{self.service_id}': trial {operation_name} "
                    f"cancelled, HALF_OPEN slot released"
                )
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful request."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed request."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._open()

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._trial_in_flight = False
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._last_failure_time:
            return None

        reset_at = self._last_failure_time + self.config.recovery_timeout
        remaining = (reset_at - self._clock()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "time_until_reset": self.get_time_until_reset(),
        }
