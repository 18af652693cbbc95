"""Tests for the fast-tier state store and its backends."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from refineloop.core.messaging import ExecutionJob
from refineloop.persistence.backends import InMemoryBackend, ResilientBackend
from refineloop.persistence.state_store import ExecutionStateStore
from refineloop.schemas.execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    StopReason,
)
from refineloop.worker import ExecutionRunner

TIMESTAMPS = {"created_at", "updated_at", "started_at", "completed_at"}


class FlakyBackend(InMemoryBackend):
    """In-memory stand-in for Redis that can be switched off.

    `failing_sets` holds 1-based positions of set calls that fail once.
    """

    name = "redis"

    def __init__(self, broken: bool = False, failing_sets: set[int] | None = None):
        super().__init__()
        self.broken = broken
        self.failing_sets = failing_sets or set()
        self.calls = 0
        self.set_calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.broken:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._check()
        return await super().get(key)

    async def set(self, key, value, ttl_seconds=None):
        self._check()
        self.set_calls += 1
        if self.set_calls in self.failing_sets:
            raise RedisConnectionError("Connection reset by peer")
        await super().set(key, value, ttl_seconds)

    async def delete(self, key):
        self._check()
        return await super().delete(key)

    async def exists(self, key):
        self._check()
        return await super().exists(key)

    async def keys(self, pattern):
        self._check()
        return await super().keys(pattern)

    async def ping(self):
        self._check()
        return True


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def request_payload() -> ExecutionRequest:
    return ExecutionRequest(
        task="Write a haiku about autumn",
        criteria=["Three lines", "Mentions leaves"],
        max_iterations=5,
        score_threshold=0.8,
    )


@pytest.fixture
def store() -> ExecutionStateStore:
    return ExecutionStateStore(InMemoryBackend())


async def run_sequence(store: ExecutionStateStore, request_payload, records) -> list:
    """A fixed read/write sequence; returns what a caller would observe."""
    observed = []
    await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))
    observed.append(await store.get("exec-1"))
    observed.append(await store.mark_running("exec-1"))
    for record in records:
        observed.append(await store.append_iteration("exec-1", record))
    observed.append(await store.exists("exec-1"))
    observed.append(await store.list_ids())
    observed.append(await store.delete("exec-1"))
    observed.append(await store.get("exec-1"))
    return [
        item.model_dump(exclude=TIMESTAMPS) if hasattr(item, "model_dump") else item
        for item in observed
    ]


class TestExecutionStateStore:
    @pytest.mark.asyncio
    async def test_write_then_read_is_identical(self, store, request_payload):
        snapshot = ExecutionStateStore.create_initial("exec-1", request_payload)

        await store.save(snapshot)

        assert await store.get("exec-1") == snapshot

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, store):
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_update_merges_and_refreshes_timestamp(self, store, request_payload):
        snapshot = ExecutionStateStore.create_initial("exec-1", request_payload)
        await store.save(snapshot)

        updated = await store.update("exec-1", metadata={"client": "cli"})

        assert updated.metadata == {"client": "cli"}
        assert updated.task == snapshot.task
        assert updated.updated_at >= snapshot.updated_at
        assert await store.get("exec-1") == updated

    @pytest.mark.asyncio
    async def test_update_unknown_returns_none(self, store):
        assert await store.update("missing", status=ExecutionStatus.RUNNING) is None

    @pytest.mark.asyncio
    async def test_append_iteration_refreshes_progress(self, store, request_payload, record):
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))

        await store.append_iteration("exec-1", record(1, 0.4))
        snapshot = await store.append_iteration("exec-1", record(2, 0.6))

        assert [r.number for r in snapshot.iterations] == [1, 2]
        assert snapshot.current_iteration == 2
        assert snapshot.current_output == "candidate 2"
        assert snapshot.current_score == 0.6
        assert snapshot.last_feedback.score == 0.6

    @pytest.mark.asyncio
    async def test_append_iteration_rejects_gaps(self, store, request_payload, record):
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))

        with pytest.raises(ValueError):
            await store.append_iteration("exec-1", record(2, 0.5))

    @pytest.mark.asyncio
    async def test_append_to_terminal_execution_is_ignored(self, store, request_payload, record):
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))
        await store.cancel("exec-1", "user")

        snapshot = await store.append_iteration("exec-1", record(1, 0.5))

        assert snapshot.status == ExecutionStatus.CANCELLED
        assert snapshot.iterations == []

    @pytest.mark.asyncio
    async def test_complete_maps_cancelled_reason(self, store, request_payload, record):
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))
        await store.mark_running("exec-1")
        result = ExecutionResult(
            execution_id="exec-1",
            success=False,
            output="",
            final_score=0.0,
            iterations=0,
            reason=StopReason.CANCELLED,
            total_duration_ms=3,
        )

        snapshot = await store.complete("exec-1", result)

        assert snapshot.status == ExecutionStatus.CANCELLED
        assert snapshot.completed_at is not None

    @pytest.mark.asyncio
    async def test_request_cancel_sets_flag(self, store, request_payload):
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))
        await store.mark_running("exec-1")

        assert await store.is_cancel_requested("exec-1") is False
        await store.request_cancel("exec-1", "changed my mind")
        assert await store.is_cancel_requested("exec-1") is True
        assert (await store.get("exec-1")).status == ExecutionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_list_filters_sorts_and_paginates(self, store, request_payload):
        for index in range(5):
            snapshot = ExecutionStateStore.create_initial(f"exec-{index}", request_payload)
            await store.save(snapshot)
        await store.mark_running("exec-1")
        await store.mark_running("exec-3")

        running, total = await store.list(status=ExecutionStatus.RUNNING)
        assert total == 2
        assert {s.id for s in running} == {"exec-1", "exec-3"}

        page, total = await store.list(limit=2, offset=0, sort_by="created_at", sort_order="asc")
        assert total == 5
        assert [s.id for s in page] == ["exec-0", "exec-1"]

        page, _ = await store.list(limit=2, offset=4, sort_by="created_at", sort_order="asc")
        assert [s.id for s in page] == ["exec-4"]

        assert await store.count_active() == 2

    @pytest.mark.asyncio
    async def test_entries_expire(self, request_payload):
        clock = FakeClock()
        store = ExecutionStateStore(InMemoryBackend(clock=clock), ttl_seconds=10)
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))

        clock.now = 9.9
        assert await store.exists("exec-1") is True
        clock.now = 10.0
        assert await store.get("exec-1") is None


class TestResilientBackend:
    """Fallback must be transparent to store callers."""

    @pytest.mark.asyncio
    async def test_unreachable_primary_falls_back_on_connect(self):
        backend = ResilientBackend(FlakyBackend(broken=True))

        await backend.connect()

        assert backend.using_fallback is True
        assert backend.name == "memory"

    @pytest.mark.asyncio
    async def test_same_observable_results_with_and_without_redis(self, request_payload, record):
        records = [record(1, 0.4), record(2, 0.7)]

        healthy = ResilientBackend(FlakyBackend())
        await healthy.connect()
        expected = await run_sequence(ExecutionStateStore(healthy), request_payload, records)

        broken = ResilientBackend(FlakyBackend(broken=True))
        await broken.connect()
        observed = await run_sequence(ExecutionStateStore(broken), request_payload, records)

        assert healthy.using_fallback is False
        assert broken.using_fallback is True
        assert observed == expected

    @pytest.mark.asyncio
    async def test_writes_survive_mid_session_failure(self, request_payload):
        primary = FlakyBackend()
        backend = ResilientBackend(primary, max_reconnect_attempts=10)
        await backend.connect()
        store = ExecutionStateStore(backend)
        snapshot = ExecutionStateStore.create_initial("exec-1", request_payload)
        await store.save(snapshot)

        primary.broken = True

        assert await store.get("exec-1") == snapshot
        assert backend.using_fallback is False

    @pytest.mark.asyncio
    async def test_single_failed_write_is_not_shadowed(self, request_payload, record):
        # save, append 1, then append 2 fails on Redis only
        primary = FlakyBackend(failing_sets={3})
        backend = ResilientBackend(primary, max_reconnect_attempts=10)
        await backend.connect()
        store = ExecutionStateStore(backend)
        await store.save(ExecutionStateStore.create_initial("exec-1", request_payload))
        await store.append_iteration("exec-1", record(1, 0.4))
        await store.append_iteration("exec-1", record(2, 0.5))

        assert (await store.get("exec-1")).current_iteration == 2
        snapshot = await store.append_iteration("exec-1", record(3, 0.6))

        assert [r.number for r in snapshot.iterations] == [1, 2, 3]
        assert backend.using_fallback is False
        assert backend.status()["pending_restore"] == 0

        reopened = ExecutionStateStore(ResilientBackend(primary))
        assert (await reopened.get("exec-1")).current_iteration == 3

    @pytest.mark.asyncio
    async def test_pending_writes_are_restored_to_primary(self):
        primary = FlakyBackend(failing_sets={2})
        backend = ResilientBackend(primary, max_reconnect_attempts=10)
        await backend.connect()
        await backend.set("job:1", "v1", 60)
        await backend.set("job:1", "v2", 60)

        assert await backend.get("job:1") == "v2"
        assert await primary.get("job:1") == "v1"
        assert backend.status()["pending_restore"] == 1

        await backend.get("job:other")

        assert await primary.get("job:1") == "v2"
        assert backend.status()["pending_restore"] == 0

    @pytest.mark.asyncio
    async def test_failed_delete_hides_key(self):
        primary = FlakyBackend()
        backend = ResilientBackend(primary, max_reconnect_attempts=10)
        await backend.connect()
        await backend.set("job:1", "v1", 60)

        primary.broken = True
        await backend.delete("job:1")
        primary.broken = False

        assert await backend.get("job:1") is None
        assert await backend.exists("job:1") is False
        assert await backend.keys("job:*") == []
        assert await primary.exists("job:1") is False

    @pytest.mark.asyncio
    async def test_runner_survives_one_failed_write(self, provider_cls, build_orchestrator, reply):
        # save, mark running, iteration 1, then iteration 2 fails on Redis only
        primary = FlakyBackend(failing_sets={4})
        backend = ResilientBackend(primary, max_reconnect_attempts=10)
        await backend.connect()
        store = ExecutionStateStore(backend)
        provider = provider_cls([reply(0.4), reply(0.5), reply(0.9, passed=True)])
        runner = ExecutionRunner(store, lambda g, e: build_orchestrator(provider))
        job = ExecutionJob(
            execution_id="exec-1",
            task="Write a haiku about autumn",
            criteria=["Three lines"],
            max_iterations=5,
            score_threshold=0.8,
        )

        result = await runner.run(job)

        assert result.success is True
        snapshot = await store.get("exec-1")
        assert snapshot.status == ExecutionStatus.COMPLETED
        assert [r.number for r in snapshot.iterations] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_switches_permanently_after_reconnect_budget(self):
        primary = FlakyBackend()
        backend = ResilientBackend(primary, max_reconnect_attempts=2)
        await backend.connect()
        primary.broken = True

        for _ in range(3):
            await backend.get("anything")

        assert backend.using_fallback is True

        primary.broken = False
        calls = primary.calls
        await backend.set("key", "value", 60)
        assert primary.calls == calls
        assert await backend.get("key") == "value"

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        primary = FlakyBackend()
        backend = ResilientBackend(primary, max_reconnect_attempts=2)
        await backend.connect()

        for _ in range(5):
            primary.broken = True
            await backend.get("a")
            await backend.get("b")
            primary.broken = False
            await backend.get("c")

        assert backend.using_fallback is False
        assert backend.status()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_no_primary_means_memory_only(self):
        backend = ResilientBackend(None)
        await backend.connect()

        await backend.set("k", "v")
        assert await backend.get("k") == "v"
        assert await backend.ping() is True
        assert backend.status()["backend"] == "memory"
