"""
Service container - every stateful component is built once here and passed
to its consumers, instead of living as a module-level singleton.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from loguru import logger

from docbroker.datastore.couchdb import CouchDBClient, DocumentStore
from docbroker.datastore.facade import DocumentStoreFacade
from docbroker.deployments.notifications import (
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from docbroker.deployments.provisioning import (
    DigitalOceanAgentsClient,
    ProvisioningService,
)
from docbroker.deployments.reconciler import DeploymentReconciler
from docbroker.deployments.tracker import DeploymentTracker
from docbroker.services.cache import TTLCache
from docbroker.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from docbroker.services.errors import DocumentConflictError, DocumentNotFoundError
from docbroker.services.rate_limiter import RateLimiter
from docbroker.services.retry import RetryPolicy
from docbroker.settings import Settings


@dataclass
class BrokerServices:
    settings: Settings
    store: DocumentStore
    facade: DocumentStoreFacade
    tracker: DeploymentTracker
    reconciler: DeploymentReconciler
    provisioning: ProvisioningService
    notifier: NotificationSink

    async def start(self) -> bool:
        """Check backend connectivity. Polling starts lazily on first track()."""
        test_connection = getattr(self.store, "test_connection", None)
        if test_connection is None:
            return True
        return await test_connection()

    async def reset(self) -> None:
        """Return every component to its initial state (test isolation)."""
        self.reconciler.reset()
        await self.facade.reset()

    async def shutdown(self) -> None:
        self.reconciler.shutdown()
        for component in (self.store, self.provisioning, self.notifier):
            close = getattr(component, "close", None)
            if close is not None:
                await close()
        logger.info("Broker services shut down")


def build_services(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    provisioning: ProvisioningService | None = None,
    notifier: NotificationSink | None = None,
    scheduler: Any = None,
    clock: Callable[[], datetime] = datetime.now,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BrokerServices:
    """Wire all components from settings; collaborators may be injected."""
    store = store or CouchDBClient(
        settings.couchdb_url,
        settings.couchdb_user,
        settings.couchdb_password,
        timeout=settings.couchdb_timeout,
    )
    facade = DocumentStoreFacade(
        store,
        cache=TTLCache(clock=clock),
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window=timedelta(seconds=settings.rate_limit_window_seconds),
            clock=clock,
        ),
        circuit_breaker=CircuitBreaker(
            "couchdb",
            CircuitBreakerConfig(
                failure_threshold=settings.breaker_failure_threshold,
                recovery_timeout=timedelta(seconds=settings.breaker_recovery_seconds),
                ignored_exceptions=(DocumentConflictError, DocumentNotFoundError),
            ),
            clock=clock,
        ),
        save_policy=RetryPolicy(
            max_attempts=settings.save_max_attempts,
            base_delay=settings.save_backoff_base_ms / 1000,
            retry_on=(DocumentConflictError,),
            sleep=sleep,
        ),
    )

    provisioning = provisioning or DigitalOceanAgentsClient(
        settings.provisioning_api_token,
        base_url=settings.provisioning_api_url,
        timeout=settings.provisioning_timeout,
    )
    if notifier is None:
        if settings.notification_webhook_url:
            notifier = WebhookNotificationSink(settings.notification_webhook_url)
        else:
            notifier = LogNotificationSink()

    tracker = DeploymentTracker(max_retries=settings.deployment_max_retries, clock=clock)
    reconciler = DeploymentReconciler(
        tracker,
        facade,
        provisioning,
        notifier,
        interval=timedelta(seconds=settings.deployment_poll_interval_seconds),
        scheduler=scheduler,
        clock=clock,
    )

    return BrokerServices(
        settings=settings,
        store=store,
        facade=facade,
        tracker=tracker,
        reconciler=reconciler,
        provisioning=provisioning,
        notifier=notifier,
    )
