"""
Notification sinks for terminal deployment events.
"""

from typing import Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from docbroker.services.errors import ExternalServiceError


class DeploymentEvent(BaseModel):
    """Emitted once per tracked deployment when it reaches a terminal state."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject_id: str
    operation_name: str
    operation_id: str
    duration_seconds: float
    outcome: str  # 'succeeded' | 'failed'


class NotificationSink(Protocol):
    async def notify(self, event: DeploymentEvent) -> None: ...


class LogNotificationSink:
    """Writes events to the log only."""

    async def notify(self, event: DeploymentEvent) -> None:
        logger.info(
            f"Deployment {event.outcome}: {event.operation_name} ({event.operation_id}) "
            f"for {event.subject_id} after {event.duration_seconds:.1f}s"
        )


class WebhookNotificationSink:
    """POSTs events as camelCase JSON to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), transport=transport
        )

    async def notify(self, event: DeploymentEvent) -> None:
        payload = event.model_dump(mode="json", by_alias=True)
        try:
            response = await self._client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Webhook delivery failed: {e}", service_id="webhook"
            ) from e
        logger.debug(f"Delivered deployment event for {event.subject_id}")

    async def close(self) -> None:
        await self._client.aclose()
