"""
Shared fixtures: in-memory document store, fake provisioning service, fake
clock and fake scheduler. Nothing here touches the network or real timers.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

import pytest

from docbroker.app import build_services
from docbroker.datastore.couchdb import SaveResult
from docbroker.deployments.notifications import DeploymentEvent
from docbroker.deployments.provisioning import OperationStatus
from docbroker.services.errors import (
    DocumentConflictError,
    DocumentNotFoundError,
)
from docbroker.settings import Settings


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InMemoryDocumentStore:
    """CouchDB-like store with revision checks and call recording."""

    def __init__(self):
        self.databases: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str, str | None]] = []
        self.fail_next: list[Exception] = []
        self.conflict_next = 0
        self._counter = 0

    def _next_rev(self, doc: dict[str, Any] | None) -> str:
        generation = int(doc["_rev"].split("-")[0]) + 1 if doc else 1
        self._counter += 1
        return f"{generation}-{self._counter:04x}"

    def put(self, database: str, document: dict[str, Any]) -> dict[str, Any]:
        """Seed or overwrite a document directly (another writer)."""
        db = self.databases.setdefault(database, {})
        stored = {**document, "_rev": self._next_rev(db.get(document["_id"]))}
        db[document["_id"]] = stored
        return dict(stored)

    def _maybe_fail(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def get(self, database: str, doc_id: str) -> dict[str, Any]:
        self.calls.append(("get", database, doc_id))
        self._maybe_fail()
        doc = self.databases.get(database, {}).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(database, doc_id)
        return dict(doc)

    async def save(self, database: str, document: dict[str, Any]) -> SaveResult:
        doc_id = document.get("_id") or f"doc-{len(self.calls)}"
        self.calls.append(("save", database, doc_id))
        self._maybe_fail()
        db = self.databases.setdefault(database, {})
        current = db.get(doc_id)
        if self.conflict_next:
            self.conflict_next -= 1
            raise DocumentConflictError(database, doc_id)
        if current is not None and current["_rev"] != document.get("_rev"):
            raise DocumentConflictError(database, doc_id)
        if current is None and document.get("_rev"):
            raise DocumentConflictError(database, doc_id)
        stored = {**document, "_id": doc_id, "_rev": self._next_rev(current)}
        db[doc_id] = stored
        return SaveResult(id=doc_id, rev=stored["_rev"])

    async def list_all(self, database: str) -> list[dict[str, Any]]:
        self.calls.append(("list_all", database, None))
        self._maybe_fail()
        return [dict(doc) for doc in self.databases.get(database, {}).values()]

    async def query(self, database: str, selector: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("query", database, None))
        self._maybe_fail()
        return [
            dict(doc)
            for doc in self.databases.get(database, {}).values()
            if all(doc.get(k) == v for k, v in selector.items())
        ]

    async def delete(self, database: str, doc_id: str, rev: str) -> None:
        self.calls.append(("delete", database, doc_id))
        self._maybe_fail()
        db = self.databases.get(database, {})
        if doc_id not in db:
            raise DocumentNotFoundError(database, doc_id)
        if db[doc_id]["_rev"] != rev:
            raise DocumentConflictError(database, doc_id)
        del db[doc_id]

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)


class FakeProvisioning:
    """Returns scripted statuses per operation; an Exception entry is raised.

    ``on_call`` runs while a status request is in flight (latency, races).
    """

    def __init__(self):
        self.script: dict[str, list[Any]] = {}
        self.calls: list[str] = []
        self.on_call: Callable[[str], None] | None = None

    async def get_operation_status(self, operation_id: str) -> OperationStatus:
        self.calls.append(operation_id)
        if self.on_call is not None:
            self.on_call(operation_id)
        queue = self.script.get(operation_id) or [OperationStatus.IN_PROGRESS]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.events: list[DeploymentEvent] = []
        self.fail = fail

    async def notify(self, event: DeploymentEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("sink down")


class FakeScheduler:
    """Stands in for AsyncIOScheduler; jobs are run by calling run_cycle()."""

    def __init__(self):
        self.running = False
        self.jobs: dict[str, dict[str, Any]] = {}
        self.added = 0
        self.removed = 0

    def start(self) -> None:
        self.running = True

    def add_job(self, func, trigger=None, id=None, **kwargs) -> None:
        self.jobs[id] = {"func": func, "trigger": trigger, **kwargs}
        self.added += 1

    def remove_job(self, job_id: str) -> None:
        del self.jobs[job_id]
        self.removed += 1

    def shutdown(self, wait: bool = True) -> None:
        self.running = False


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def provisioning() -> FakeProvisioning:
    return FakeProvisioning()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def settings() -> Settings:
    return Settings.model_validate({"DEPLOYMENT_MAX_RETRIES": 4})


@pytest.fixture
def services(settings, store, provisioning, notifier, scheduler, clock):
    return build_services(
        settings,
        store=store,
        provisioning=provisioning,
        notifier=notifier,
        scheduler=scheduler,
        clock=clock,
        sleep=_no_sleep,
    )


@pytest.fixture
def facade(services):
    return services.facade


@pytest.fixture
def seed_user(store):
    """Put a consistent, approved user document straight into the store."""

    def _seed(user_id: str = "alice", **fields: Any) -> dict:
        return store.put(
            "maia_users",
            {
                "_id": user_id,
                "type": "user",
                "credentialID": f"cred-{user_id}",
                "workflowStage": "approved",
                "approvalStatus": "approved",
                **fields,
            },
        )

    return _seed
