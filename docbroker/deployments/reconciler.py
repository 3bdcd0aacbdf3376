"""
Deployment reconciliation loop.
Polls the provisioning service for every tracked deployment using APScheduler
and writes terminal outcomes back through the document facade.

The interval job exists only while the tracker has entries: it is added on
the first track() and removed at the end of the cycle that empties the set.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from docbroker import workflow
from docbroker.datastore.collections import Collection
from docbroker.datastore.facade import DocumentStoreFacade
from docbroker.deployments.notifications import DeploymentEvent, NotificationSink
from docbroker.deployments.provisioning import OperationStatus, ProvisioningService
from docbroker.deployments.tracker import (
    DeploymentStatus,
    DeploymentTracker,
    DeploymentTrackingEntry,
)
from docbroker.services.errors import ExternalServiceError, ServiceError
from docbroker.services.retry import RetryPolicy

JOB_ID = "deployment_reconcile_job"


class DeploymentReconciler:
    """Drives tracked deployments to a terminal state."""

    def __init__(
        self,
        tracker: DeploymentTracker,
        facade: DocumentStoreFacade,
        provisioning: ProvisioningService,
        notifier: NotificationSink,
        interval: timedelta = timedelta(seconds=5),
        scheduler: Any = None,
        clock: Callable[[], datetime] = datetime.now,
        poll_policy: RetryPolicy | None = None,
    ):
        self.tracker = tracker
        self.facade = facade
        self.provisioning = provisioning
        self.notifier = notifier
        self.interval = interval
        # constant backoff: one poll per interval, max_retries polls per entry
        self.poll_policy = poll_policy or RetryPolicy(
            max_attempts=tracker.max_retries,
            base_delay=interval.total_seconds(),
            multiplier=1.0,
        )
        self.scheduler = scheduler if scheduler is not None else AsyncIOScheduler()
        self._clock = clock
        self._is_active = False

        tracker.set_activation_hook(self.activate)

    @property
    def is_active(self) -> bool:
        """Whether the polling job is currently scheduled."""
        return self._is_active

    def track(
        self, subject_id: str, operation_id: str, operation_name: str
    ) -> DeploymentTrackingEntry:
        return self.tracker.track(subject_id, operation_id, operation_name)

    def activate(self) -> None:
        """Schedule the polling job (no-op if already scheduled)."""
        if self._is_active:
            return

        if not self.scheduler.running:
            self.scheduler.start()

        self.scheduler.add_job(
            self.run_cycle,
            trigger="interval",
            seconds=self.interval.total_seconds(),
            id=JOB_ID,
            name="Deployment Reconciler",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._is_active = True
        logger.info(
            f"Deployment reconciler started: polling every "
            f"{self.interval.total_seconds():.0f}s"
        )

    def deactivate(self) -> None:
        if not self._is_active:
            return
        self.scheduler.remove_job(JOB_ID)
        self._is_active = False
        logger.info("Deployment reconciler idle: no tracked deployments")

    async def run_cycle(self) -> None:
        """One poll over every due entry, then stop if nothing is left."""
        now = self._clock()
        for entry in self.tracker.entries():
            if not entry.is_due(now, self._next_delay(entry)):
                continue
            try:
                await self._check(entry, now)
            except Exception as e:
                logger.error(
                    f"Reconciliation of {entry.operation_id} for {entry.subject_id} "
                    f"failed: {e}"
                )
                self._count_retry(entry, reason=str(e))

        if self.tracker.is_empty():
            self.deactivate()

    def _next_delay(self, entry: DeploymentTrackingEntry) -> timedelta:
        return timedelta(seconds=self.poll_policy.backoff(entry.retry_count + 1))

    async def _check(self, entry: DeploymentTrackingEntry, cycle_start: datetime) -> None:
        # cycle time, not check time, so provider latency cannot skip a tick
        entry.last_check = cycle_start
        try:
            status = await self.provisioning.get_operation_status(entry.operation_id)
        except ExternalServiceError as e:
            # transient: shares the still-pending retry budget
            logger.warning(f"Provisioning status for {entry.operation_id} unavailable: {e}")
            self._count_retry(entry, reason="provider error")
            return

        if status == OperationStatus.READY:
            await self._on_ready(entry)
        elif status == OperationStatus.FAILED:
            await self._on_failed(entry)
        else:
            self._count_retry(entry, reason="still provisioning")

    async def _on_ready(self, entry: DeploymentTrackingEntry) -> None:
        try:
            await self._persist_ready(entry)
        except ServiceError as e:
            logger.error(
                f"Could not persist deployment {entry.operation_id} for "
                f"{entry.subject_id}: {e}"
            )
            self._count_retry(entry, reason="persist failed")
            return

        entry.status = DeploymentStatus.SUCCEEDED
        self.tracker.untrack(entry.subject_id, entry)
        logger.info(
            f"Deployment {entry.operation_name} for {entry.subject_id} is running"
        )
        await self._notify(entry)

    async def _persist_ready(self, entry: DeploymentTrackingEntry) -> None:
        record = await self.facade.get(Collection.USERS, entry.subject_id)
        updated = workflow.apply_state(
            record,
            workflow.WorkflowStage.AGENT_ASSIGNED,
            workflow.ApprovalStatus.APPROVED,
        )
        updated.update(
            assignedAgentId=entry.operation_id,
            assignedAgentName=entry.operation_name,
            agentAssignedAt=self._clock().isoformat(),
        )
        await self.facade.save(Collection.USERS, updated)

    async def _on_failed(self, entry: DeploymentTrackingEntry) -> None:
        # record left as-is for operator inspection
        entry.status = DeploymentStatus.FAILED
        self.tracker.untrack(entry.subject_id, entry)
        logger.warning(
            f"Deployment {entry.operation_name} ({entry.operation_id}) for "
            f"{entry.subject_id} failed at the provider"
        )
        await self._notify(entry)

    def _count_retry(self, entry: DeploymentTrackingEntry, reason: str) -> None:
        entry.retry_count += 1
        if self.poll_policy.exhausted(entry.retry_count):
            self.tracker.untrack(entry.subject_id, entry)
            logger.warning(
                f"Giving up on deployment {entry.operation_id} for {entry.subject_id} "
                f"after {entry.retry_count} checks ({reason})"
            )

    async def _notify(self, entry: DeploymentTrackingEntry) -> None:
        event = DeploymentEvent(
            subject_id=entry.subject_id,
            operation_name=entry.operation_name,
            operation_id=entry.operation_id,
            duration_seconds=entry.duration_seconds(self._clock()),
            outcome=entry.status.value,
        )
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.error(f"Deployment notification for {entry.subject_id} failed: {e}")

    def reset(self) -> None:
        self.tracker.reset()
        self.deactivate()

    def shutdown(self) -> None:
        self.deactivate()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Deployment reconciler stopped")
