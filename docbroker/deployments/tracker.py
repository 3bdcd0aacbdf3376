"""
In-memory registry of in-flight provisioning operations, keyed by subject.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class DeploymentTrackingEntry:
    subject_id: str
    operation_id: str
    operation_name: str
    start_time: datetime
    status: DeploymentStatus = DeploymentStatus.PENDING
    last_check: datetime | None = None
    retry_count: int = 0
    max_retries: int = 60

    def is_due(self, now: datetime, interval: timedelta) -> bool:
        """True once the last check (or start) is at least one interval old."""
        return now - (self.last_check or self.start_time) >= interval

    def duration_seconds(self, now: datetime) -> float:
        return (now - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "operation_id": self.operation_id,
            "operation_name": self.operation_name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
        }


class DeploymentTracker:
    """
    Usage:
        tracker = DeploymentTracker(max_retries=60)
        tracker.set_activation_hook(reconciler.activate)
        tracker.track("alice", "agent-uuid", "alice-agent-2025")
    """

    def __init__(
        self,
        max_retries: int = 60,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.max_retries = max_retries
        self._clock = clock
        self._entries: dict[str, DeploymentTrackingEntry] = {}
        self._on_activate: Callable[[], None] | None = None

    def set_activation_hook(self, hook: Callable[[], None]) -> None:
        """Called whenever the registry goes from empty to non-empty."""
        self._on_activate = hook

    def track(
        self, subject_id: str, operation_id: str, operation_name: str
    ) -> DeploymentTrackingEntry:
        was_empty = not self._entries
        previous = self._entries.get(subject_id)
        if previous is not None:
            logger.warning(
                f"Replacing tracked deployment {previous.operation_id} for "
                f"{subject_id} with {operation_id}"
            )

        entry = DeploymentTrackingEntry(
            subject_id=subject_id,
            operation_id=operation_id,
            operation_name=operation_name,
            start_time=self._clock(),
            max_retries=self.max_retries,
        )
        self._entries[subject_id] = entry
        logger.info(
            f"Tracking deployment {operation_name} ({operation_id}) for {subject_id}"
        )

        if was_empty and self._on_activate is not None:
            self._on_activate()
        return entry

    def untrack(
        self, subject_id: str, entry: DeploymentTrackingEntry | None = None
    ) -> DeploymentTrackingEntry | None:
        """
        Stop tracking subject_id.

        With ``entry`` given, only that exact entry is removed; a newer
        operation tracked for the same subject in the meantime is kept.
        """
        current = self._entries.get(subject_id)
        if current is None or (entry is not None and current is not entry):
            return None
        return self._entries.pop(subject_id)

    def get(self, subject_id: str) -> DeploymentTrackingEntry | None:
        return self._entries.get(subject_id)

    def entries(self) -> list[DeploymentTrackingEntry]:
        return list(self._entries.values())

    def is_empty(self) -> bool:
        return not self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def reset(self) -> None:
        self._entries.clear()
