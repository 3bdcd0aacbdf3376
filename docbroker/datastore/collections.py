"""
Collection tags and their cache/invalidation policies.

Every cacheable namespace is a member of the closed ``Collection`` enum; its
TTL, backing database and write-side effects are data in ``POLICIES`` rather
than branches in the facade.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

# Key used for collection-wide listings (getAll); CouchDB reserves ids
# starting with "_", so it can never collide with a document id
ALL_KEY = "_all"

# Placeholder in an invalidation rule meaning "the id that was just written"
SAME_ID = object()


@dataclass(frozen=True)
class Invalidation:
    """Derived cache to drop after a successful write.

    key=None drops the whole collection, SAME_ID drops the written id.
    """

    collection: "Collection"
    key: object = None

    def resolve(self, doc_id: str) -> str | None:
        if self.key is SAME_ID:
            return doc_id
        return self.key  # type: ignore[return-value]


@dataclass(frozen=True)
class CollectionPolicy:
    ttl: timedelta | None  # None: never expires, invalidated on write only
    database: str | None = None  # None: derived view, not directly stored
    forbidden_fields: tuple[str, ...] = ()
    validates_workflow: bool = False
    invalidates: tuple[Invalidation, ...] = field(default_factory=tuple)


class Collection(str, Enum):
    """Cache namespaces."""

    USERS = "users"
    CHATS = "chats"
    AGENT_ASSIGNMENTS = "agent_assignments"
    KNOWLEDGE_BASES = "knowledge_bases"
    AGENTS = "agents"
    MODELS = "models"
    HEALTH = "health"

    @property
    def policy(self) -> CollectionPolicy:
        return POLICIES[self]

    @property
    def ttl(self) -> timedelta | None:
        return POLICIES[self].ttl

    @property
    def database(self) -> str:
        database = POLICIES[self].database
        if database is None:
            raise ValueError(f"Collection '{self.value}' is a derived view with no database")
        return database

    @classmethod
    def for_database(cls, database: str) -> "Collection":
        for collection, policy in POLICIES.items():
            if policy.database == database:
                return collection
        raise ValueError(f"No collection is backed by database '{database}'")


POLICIES: dict[Collection, CollectionPolicy] = {
    Collection.USERS: CollectionPolicy(
        ttl=None,
        database="maia_users",
        forbidden_fields=("currentUser",),
        validates_workflow=True,
        invalidates=(
            Invalidation(Collection.CHATS),
            Invalidation(Collection.HEALTH, "admin"),
            Invalidation(Collection.AGENT_ASSIGNMENTS, SAME_ID),
        ),
    ),
    Collection.CHATS: CollectionPolicy(
        ttl=timedelta(minutes=2), database="maia_chats"
    ),
    Collection.AGENT_ASSIGNMENTS: CollectionPolicy(ttl=timedelta(minutes=15)),
    Collection.KNOWLEDGE_BASES: CollectionPolicy(
        ttl=timedelta(minutes=30), database="maia_knowledge_bases"
    ),
    Collection.AGENTS: CollectionPolicy(
        ttl=timedelta(minutes=15), database="maia_agents"
    ),
    Collection.MODELS: CollectionPolicy(ttl=timedelta(minutes=60)),
    Collection.HEALTH: CollectionPolicy(ttl=timedelta(seconds=30)),
}
