"""
External provisioning service: DigitalOcean GenAI agent deployments.
"""

from enum import Enum
from typing import Any, Protocol

import httpx
from loguru import logger

from docbroker.services.errors import ExternalServiceError

SERVICE_ID = "digitalocean"


class OperationStatus(str, Enum):
    READY = "ready"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"


_READY = {"running", "ready"}
_FAILED = {"failed", "error", "deployment_failed", "undeployment_failed"}


def classify_status(raw: str | None) -> OperationStatus:
    """Map a provider status string (e.g. 'STATUS_RUNNING') to OperationStatus."""
    if not raw:
        return OperationStatus.IN_PROGRESS
    normalized = raw.lower().removeprefix("status_")
    if normalized in _READY:
        return OperationStatus.READY
    if normalized in _FAILED:
        return OperationStatus.FAILED
    return OperationStatus.IN_PROGRESS


class ProvisioningService(Protocol):
    async def get_operation_status(self, operation_id: str) -> OperationStatus: ...


class DigitalOceanAgentsClient:
    """
    Reads agent deployment state from the DigitalOcean GenAI API.

    Usage:
        client = DigitalOceanAgentsClient(token)
        status = await client.get_operation_status(agent_uuid)
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.digitalocean.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_token}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._http_client

    async def get_agent(self, agent_id: str) -> dict[str, Any]:
        client = await self._get_http_client()
        try:
            response = await client.get(f"/v2/gen-ai/agents/{agent_id}")
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise ExternalServiceError(
                f"Request for agent {agent_id} timed out after {self._timeout}s",
                service_id=SERVICE_ID,
            ) from e
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                service_id=SERVICE_ID,
            ) from e
        except (httpx.RequestError, ValueError) as e:
            raise ExternalServiceError(str(e), service_id=SERVICE_ID) from e
        return body.get("agent", body)

    async def get_operation_status(self, operation_id: str) -> OperationStatus:
        agent = await self.get_agent(operation_id)
        raw = (agent.get("deployment") or {}).get("status")
        status = classify_status(raw)
        logger.debug(f"Agent {operation_id} deployment status {raw!r} -> {status.value}")
        return status

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
