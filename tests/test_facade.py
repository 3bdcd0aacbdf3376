import asyncio

import pytest

from docbroker.datastore.collections import ALL_KEY, Collection
from docbroker.services.circuit_breaker import CircuitState
from docbroker.services.errors import (
    CircuitOpenError,
    ConflictRetriesExhaustedError,
    DocumentConflictError,
    DocumentNotFoundError,
    DocumentStoreError,
    ForbiddenFieldError,
    InconsistentStateError,
    RateLimitExceededError,
    RetryableError,
)


class TestReads:
    async def test_get_after_first_read_is_served_from_cache(self, facade, store, seed_user):
        seed_user("alice")

        first = await facade.get(Collection.USERS, "alice")
        second = await facade.get(Collection.USERS, "alice")

        assert first == second
        assert store.count("get") == 1

    async def test_get_after_invalidate_hits_backend(self, facade, store, seed_user):
        seed_user("alice")
        await facade.get(Collection.USERS, "alice")

        await facade.invalidate(Collection.USERS, "alice")
        await facade.get(Collection.USERS, "alice")

        assert store.count("get") == 2

    async def test_returned_documents_do_not_alias_the_cache(self, facade, seed_user):
        seed_user("alice", displayName="Alice")

        doc = await facade.get(Collection.USERS, "alice")
        doc["displayName"] = "mutated"

        assert (await facade.get(Collection.USERS, "alice"))["displayName"] == "Alice"

    async def test_not_found_is_propagated_and_never_cached(self, facade, store):
        for _ in range(2):
            with pytest.raises(DocumentNotFoundError):
                await facade.get(Collection.USERS, "ghost")
        assert store.count("get") == 2
        assert facade.circuit_breaker.failure_count == 0

    async def test_chat_cache_expires(self, facade, store, clock):
        store.put("maia_chats", {"_id": "c1", "type": "chat"})

        await facade.get_all(Collection.CHATS)
        clock.advance(minutes=1)
        await facade.get_all(Collection.CHATS)
        assert store.count("list_all") == 1

        clock.advance(minutes=1)
        await facade.get_all(Collection.CHATS)
        assert store.count("list_all") == 2

    async def test_empty_listing_is_not_cached(self, facade, store):
        assert await facade.get_all(Collection.AGENTS) == []
        assert await facade.get_all(Collection.AGENTS) == []
        assert store.count("list_all") == 2

    async def test_concurrent_misses_share_one_backend_read(self, facade, store, seed_user):
        seed_user("alice")

        results = await asyncio.gather(
            *(facade.get(Collection.USERS, "alice") for _ in range(5))
        )

        assert all(r["_id"] == "alice" for r in results)
        assert store.count("get") == 1
        assert facade.rate_limiter.get_status()["requests"] == 1

    async def test_coalesced_callers_get_independent_copies(
        self, facade, seed_user
    ):
        seed_user("alice", displayName="Alice")

        first, second = await asyncio.gather(
            facade.get(Collection.USERS, "alice"),
            facade.get(Collection.USERS, "alice"),
        )
        first["displayName"] = "mutated"

        assert second["displayName"] == "Alice"
        assert (await facade.get(Collection.USERS, "alice"))["displayName"] == "Alice"

    async def test_listing_key_never_shadows_a_document_id(self, facade, store, seed_user):
        seed_user("alice")
        await facade.get_all(Collection.USERS)

        with pytest.raises(DocumentNotFoundError):
            await facade.get(Collection.USERS, "all")
        assert ("get", "maia_users", "all") in store.calls

    async def test_find_is_not_cached(self, facade, store, seed_user):
        seed_user("alice")
        seed_user("bob", approvalStatus="approved")

        found = await facade.find(Collection.USERS, {"_id": "bob"})
        await facade.find(Collection.USERS, {"_id": "bob"})

        assert [d["_id"] for d in found] == ["bob"]
        assert store.count("query") == 2

    async def test_derived_views_have_no_database(self, facade):
        with pytest.raises(ValueError):
            await facade.get(Collection.HEALTH, "admin")

        await facade.set_cached(Collection.HEALTH, "admin", {"status": "ready"})
        assert await facade.get_cached(Collection.HEALTH, "admin") == {"status": "ready"}


class TestRateLimit:
    async def test_101st_cold_read_in_window_is_rejected(self, facade, store):
        for i in range(101):
            store.put("maia_agents", {"_id": f"agent-{i}"})

        for i in range(100):
            await facade.get(Collection.AGENTS, f"agent-{i}")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await facade.get(Collection.AGENTS, "agent-100")
        assert isinstance(exc_info.value, RetryableError)
        assert store.count("get") == 100

    async def test_cached_reads_do_not_consume_permits(self, facade, seed_user):
        seed_user("alice")
        for _ in range(150):
            await facade.get(Collection.USERS, "alice")
        assert facade.rate_limiter.get_status()["requests"] == 1

    async def test_window_reset_admits_again(self, facade, store, clock):
        for i in range(101):
            store.put("maia_agents", {"_id": f"agent-{i}"})
        for i in range(100):
            await facade.get(Collection.AGENTS, f"agent-{i}")

        clock.advance(seconds=61)
        assert (await facade.get(Collection.AGENTS, "agent-100"))["_id"] == "agent-100"


class TestCircuitBreaker:
    async def test_five_failures_open_the_breaker(self, facade, store, clock):
        store.fail_next = [DocumentStoreError("HTTP 500", 500) for _ in range(5)]

        for _ in range(5):
            with pytest.raises(DocumentStoreError):
                await facade.get(Collection.USERS, "alice")

        calls_before = len(store.calls)
        with pytest.raises(CircuitOpenError):
            await facade.get(Collection.USERS, "alice")
        assert len(store.calls) == calls_before

        clock.advance(seconds=30)
        store.put("maia_users", {"_id": "alice"})
        assert (await facade.get(Collection.USERS, "alice"))["_id"] == "alice"
        assert facade.circuit_breaker.state == CircuitState.CLOSED

    async def test_breaker_guards_writes_and_listings(self, facade, store):
        store.fail_next = [DocumentStoreError("HTTP 503", 503) for _ in range(5)]
        for _ in range(5):
            with pytest.raises(DocumentStoreError):
                await facade.get_all(Collection.CHATS)

        with pytest.raises(CircuitOpenError):
            await facade.save(Collection.CHATS, {"_id": "c1"})
        with pytest.raises(CircuitOpenError):
            await facade.find(Collection.CHATS, {})


class TestSave:
    async def test_users_save_updates_cache_instead_of_invalidating(
        self, facade, store, seed_user
    ):
        seed_user("alice", displayName="Alice")
        user = await facade.get(Collection.USERS, "alice")

        user["displayName"] = "Alice Smith"
        saved = await facade.save(Collection.USERS, user)
        reads_before = store.count("get")

        cached = await facade.get(Collection.USERS, "alice")
        assert cached["displayName"] == "Alice Smith"
        assert cached["_rev"] == saved["_rev"] != user["_rev"]
        assert store.count("get") == reads_before

    async def test_users_save_invalidates_derived_caches(self, facade, store, seed_user):
        seed_user("alice")
        store.put("maia_chats", {"_id": "c1"})
        await facade.get_all(Collection.CHATS)
        await facade.set_cached(Collection.HEALTH, "admin", {"status": "ready"})
        await facade.set_cached(Collection.AGENT_ASSIGNMENTS, "alice", {"agent": "a1"})
        await facade.set_cached(Collection.AGENT_ASSIGNMENTS, "bob", {"agent": "a2"})

        user = await facade.get(Collection.USERS, "alice")
        await facade.save(Collection.USERS, {**user, "displayName": "A"})

        assert await facade.get_cached(Collection.CHATS, ALL_KEY) is None
        assert await facade.get_cached(Collection.HEALTH, "admin") is None
        assert await facade.get_cached(Collection.AGENT_ASSIGNMENTS, "alice") is None
        assert await facade.get_cached(Collection.AGENT_ASSIGNMENTS, "bob") is not None

    async def test_save_of_other_collections_keeps_user_views(self, facade, store):
        await facade.set_cached(Collection.HEALTH, "admin", {"status": "ready"})
        await facade.save(Collection.KNOWLEDGE_BASES, {"_id": "kb1", "name": "KB"})
        assert await facade.get_cached(Collection.HEALTH, "admin") is not None

    async def test_save_invalidates_own_listing(self, facade, store):
        store.put("maia_knowledge_bases", {"_id": "kb1"})
        await facade.get_all(Collection.KNOWLEDGE_BASES)

        await facade.save(Collection.KNOWLEDGE_BASES, {"_id": "kb2"})
        listing = await facade.get_all(Collection.KNOWLEDGE_BASES)

        assert {d["_id"] for d in listing} == {"kb1", "kb2"}

    async def test_conflict_then_success_rebases_caller_changes(
        self, facade, store, seed_user
    ):
        seed_user("alice", displayName="Alice", theme="light")
        user = await facade.get(Collection.USERS, "alice")

        # another writer wins the race on a different field
        store.put("maia_users", {**user, "theme": "dark"})
        winner_rev = store.databases["maia_users"]["alice"]["_rev"]

        saved = await facade.save(Collection.USERS, {**user, "displayName": "Alicia"})

        ops = [c[0] for c in store.calls]
        assert ops[-3:] == ["save", "get", "save"]
        stored = store.databases["maia_users"]["alice"]
        assert stored["displayName"] == "Alicia"
        assert stored["theme"] == "dark"
        assert saved["_rev"] == stored["_rev"] != winner_rev

    async def test_conflict_without_known_base_applies_all_caller_fields(
        self, facade, store, seed_user
    ):
        seed_user("alice", displayName="Alice")
        store.conflict_next = 1

        await facade.save(
            Collection.USERS,
            {"_id": "alice", "_rev": "0-stale", "displayName": "Al",
             "workflowStage": "approved", "approvalStatus": "approved"},
        )

        stored = store.databases["maia_users"]["alice"]
        assert stored["displayName"] == "Al"
        assert stored["credentialID"] == "cred-alice"

    async def test_conflict_on_every_attempt_is_surfaced(self, facade, store, seed_user):
        seed_user("alice")
        user = await facade.get(Collection.USERS, "alice")
        store.conflict_next = 10

        with pytest.raises(ConflictRetriesExhaustedError) as exc_info:
            await facade.save(Collection.USERS, {**user, "displayName": "x"})

        assert isinstance(exc_info.value, DocumentConflictError)
        assert exc_info.value.attempts == 3
        assert store.count("save") == 3
        assert facade.circuit_breaker.state == CircuitState.CLOSED

    async def test_non_conflict_error_aborts_without_retry(self, facade, store, seed_user):
        seed_user("alice")
        user = await facade.get(Collection.USERS, "alice")
        store.fail_next = [DocumentStoreError("HTTP 500", 500)]

        with pytest.raises(DocumentStoreError) as exc_info:
            await facade.save(Collection.USERS, user)

        assert not isinstance(exc_info.value, DocumentConflictError)
        assert store.count("save") == 1

    async def test_reserved_field_is_rejected_before_any_backend_call(self, facade, store):
        with pytest.raises(ForbiddenFieldError):
            await facade.save(
                Collection.USERS, {"_id": "alice", "currentUser": {"userId": "alice"}}
            )
        assert store.calls == []
        assert facade.rate_limiter.get_status()["requests"] == 0

    async def test_inconsistent_workflow_state_blocks_write(self, facade, store):
        with pytest.raises(InconsistentStateError):
            await facade.save(
                Collection.USERS,
                {"_id": "alice", "workflowStage": "approved", "approvalStatus": "pending"},
            )
        assert store.calls == []

    async def test_rebased_document_is_revalidated(self, facade, store, seed_user):
        seed_user("alice", workflowStage="awaiting_approval", approvalStatus="pending")
        user = await facade.get(Collection.USERS, "alice")

        # concurrent admin suspends the user; our change only clears the status
        store.put(
            "maia_users",
            {**user, "workflowStage": "suspended", "approvalStatus": "suspended"},
        )

        with pytest.raises(InconsistentStateError):
            await facade.save(
                Collection.USERS, {**user, "workflowStage": "awaiting_approval",
                                   "approvalStatus": None},
            )

    async def test_new_document_without_id(self, facade, store):
        saved = await facade.save(Collection.CHATS, {"type": "chat", "title": "hi"})
        assert saved["_id"] in store.databases["maia_chats"]
        assert await facade.get(Collection.CHATS, saved["_id"]) == saved


class TestDeleteAndReset:
    async def test_delete_uses_latest_revision_and_drops_cache(
        self, facade, store, seed_user
    ):
        seed_user("alice")
        await facade.get(Collection.USERS, "alice")
        store.put("maia_users", {**store.databases["maia_users"]["alice"], "x": 1})

        await facade.delete(Collection.USERS, "alice")

        assert "alice" not in store.databases["maia_users"]
        with pytest.raises(DocumentNotFoundError):
            await facade.get(Collection.USERS, "alice")

    async def test_reset_clears_everything(self, facade, store, seed_user):
        seed_user("alice")
        await facade.get(Collection.USERS, "alice")
        facade.circuit_breaker.record_failure()

        await facade.reset()
        await facade.get(Collection.USERS, "alice")

        assert store.count("get") == 2
        status = facade.get_health_status()
        assert status["circuit_breaker"]["failure_count"] == 0
        assert status["rate_limiter"]["requests"] == 1
