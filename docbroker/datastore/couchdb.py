"""
CouchDB / Cloudant document store client.

Thin async wrapper over the CouchDB HTTP API. Knows nothing about caching,
rate limiting or retries; those live in the facade.
"""

from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from loguru import logger

from docbroker.services.errors import (
    DocumentConflictError,
    DocumentNotFoundError,
    DocumentStoreError,
)


@dataclass
class SaveResult:
    id: str
    rev: str


class DocumentStore(Protocol):
    """What the facade needs from a document database."""

    async def get(self, database: str, doc_id: str) -> dict[str, Any]: ...

    async def save(self, database: str, document: dict[str, Any]) -> SaveResult: ...

    async def list_all(self, database: str) -> list[dict[str, Any]]: ...

    async def query(
        self, database: str, selector: dict[str, Any]
    ) -> list[dict[str, Any]]: ...

    async def delete(self, database: str, doc_id: str, rev: str) -> None: ...


class CouchDBClient:
    """
    Usage:
        client = CouchDBClient("http://localhost:5984", "admin", "secret")
        doc = await client.get("maia_users", "alice")
        result = await client.save("maia_users", {**doc, "displayName": "Alice"})
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password) if username else None
        self._timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self.is_cloudant = "cloudant" in url or "bluemix" in url

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._http_client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> httpx.Response:
        client = await self._get_http_client()
        try:
            return await client.request(method, path, params=params, json=json_data)
        except httpx.TimeoutException as e:
            raise DocumentStoreError(f"CouchDB request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            raise DocumentStoreError(f"CouchDB request failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise DocumentStoreError(
            f"HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    @staticmethod
    def _doc_path(database: str, doc_id: str) -> str:
        # design documents keep their slash
        if doc_id.startswith("_design/"):
            return f"/{database}/_design/{quote(doc_id[8:], safe='')}"
        return f"/{database}/{quote(doc_id, safe='')}"

    async def get(self, database: str, doc_id: str) -> dict[str, Any]:
        response = await self._request("GET", self._doc_path(database, doc_id))
        if response.status_code == 404:
            raise DocumentNotFoundError(database, doc_id)
        self._raise_for_status(response)
        return response.json()

    async def save(self, database: str, document: dict[str, Any]) -> SaveResult:
        doc_id = document.get("_id")
        if doc_id:
            response = await self._request(
                "PUT", self._doc_path(database, doc_id), json_data=document
            )
        else:
            response = await self._request("POST", f"/{database}", json_data=document)

        if response.status_code == 409:
            raise DocumentConflictError(database, doc_id or "<new>")
        self._raise_for_status(response)
        body = response.json()
        return SaveResult(id=body["id"], rev=body["rev"])

    async def list_all(self, database: str) -> list[dict[str, Any]]:
        response = await self._request(
            "GET", f"/{database}/_all_docs", params={"include_docs": "true"}
        )
        self._raise_for_status(response)
        rows = response.json().get("rows", [])
        return [
            row["doc"]
            for row in rows
            if row.get("doc") and not row["id"].startswith("_design/")
        ]

    async def query(
        self, database: str, selector: dict[str, Any]
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "POST", f"/{database}/_find", json_data={"selector": selector}
        )
        self._raise_for_status(response)
        return response.json().get("docs", [])

    async def delete(self, database: str, doc_id: str, rev: str) -> None:
        response = await self._request(
            "DELETE", self._doc_path(database, doc_id), params={"rev": rev}
        )
        if response.status_code == 404:
            raise DocumentNotFoundError(database, doc_id)
        if response.status_code == 409:
            raise DocumentConflictError(database, doc_id)
        self._raise_for_status(response)

    async def create_database(self, database: str) -> bool:
        """Create database; an existing one (412) counts as success."""
        response = await self._request("PUT", f"/{database}")
        if response.status_code == 412:
            logger.info(f"Database '{database}' already exists")
            return True
        self._raise_for_status(response)
        logger.info(f"Database '{database}' created")
        return True

    async def test_connection(self) -> bool:
        try:
            response = await self._request("GET", "/")
            self._raise_for_status(response)
        except DocumentStoreError as e:
            logger.error(f"CouchDB connection failed: {e}")
            return False
        service_type = "Cloudant" if self.is_cloudant else "CouchDB"
        logger.info(f"Connected to {service_type}: {response.json().get('version')}")
        return True

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
