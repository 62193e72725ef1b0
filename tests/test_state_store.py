"""Tests for storage adapters and the state store."""
from __future__ import annotations

from typing import Any, List

import pytest

from agentforge.core.errors import ConfigurationError, StateStoreError, TransactionError
from agentforge.core.models import AgentConfig, AgentMetadata, AgentState, AgentStatus, EntityType, StateEvent, StateEventType
from agentforge.state.storage import MemoryStorageAdapter, QueryOptions, StorageAdapter, StorageFactory
from agentforge.state.store import StateStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class BrokenStorage(StorageAdapter):
    async def get(self, key: str) -> Any:
        raise OSError("disk on fire")

    async def set(self, key: str, value: Any) -> None:
        raise OSError("disk on fire")

    async def delete(self, key: str) -> None:
        raise OSError("disk on fire")

    async def list(self, pattern: str) -> List[str]:
        raise OSError("disk on fire")


@pytest.mark.anyio
async def test_memory_adapter_stores_copies() -> None:
    adapter = MemoryStorageAdapter()
    value = {"items": [1, 2]}

    await adapter.set("k", value)
    value["items"].append(3)
    loaded = await adapter.get("k")
    loaded["items"].append(4)

    assert await adapter.get("k") == {"items": [1, 2]}


@pytest.mark.anyio
async def test_memory_adapter_ttl() -> None:
    clock = [100.0]
    adapter = MemoryStorageAdapter(ttl=5, clock=lambda: clock[0])

    await adapter.set("k", 1)
    clock[0] = 104.0
    assert await adapter.get("k") == 1
    clock[0] = 106.0
    assert await adapter.get("k") is None
    assert await adapter.list("*") == []


@pytest.mark.anyio
async def test_memory_adapter_evicts_oldest() -> None:
    adapter = MemoryStorageAdapter(max_size=2)

    await adapter.set("a", 1)
    await adapter.set("b", 2)
    await adapter.set("a", 3)
    await adapter.set("c", 4)

    assert sorted(await adapter.list("*")) == ["a", "c"]


@pytest.mark.anyio
async def test_memory_adapter_query() -> None:
    adapter = MemoryStorageAdapter()
    await adapter.set("task:1", {"status": "DONE", "rank": 3})
    await adapter.set("task:2", {"status": "DONE", "rank": 1})
    await adapter.set("task:3", {"status": "OPEN", "rank": 2})
    await adapter.set("agent:1", {"status": "DONE", "rank": 0})

    results = await adapter.query(
        QueryOptions(prefix="task:", filter={"status": "DONE"}, sort={"rank": "asc"})
    )
    assert [result.key for result in results] == ["task:2", "task:1"]

    limited = await adapter.query(QueryOptions(prefix="task:", sort={"rank": "desc"}, offset=1, limit=1))
    assert [result.key for result in limited] == ["task:3"]


@pytest.mark.anyio
async def test_memory_adapter_transactions() -> None:
    adapter = MemoryStorageAdapter()
    await adapter.set("a", 1)

    await adapter.begin_transaction()
    await adapter.set("a", 2)
    await adapter.delete("a")
    await adapter.set("b", 3)
    with pytest.raises(TransactionError):
        await adapter.begin_transaction()
    await adapter.rollback_transaction()
    assert await adapter.get("a") == 1
    assert await adapter.get("b") is None

    await adapter.begin_transaction()
    await adapter.set("b", 3)
    await adapter.commit_transaction()
    assert await adapter.get("b") == 3

    with pytest.raises(TransactionError):
        await adapter.commit_transaction()


@pytest.mark.anyio
async def test_closed_adapter_raises() -> None:
    adapter = MemoryStorageAdapter()
    await adapter.close()

    with pytest.raises(StateStoreError):
        await adapter.get("a")


def test_storage_factory() -> None:
    adapter = StorageFactory.create("memory", max_size=10)
    assert isinstance(adapter, MemoryStorageAdapter)

    custom = MemoryStorageAdapter()
    assert StorageFactory.create("custom", adapter=custom) is custom

    with pytest.raises(ConfigurationError):
        StorageFactory.create("redis")
    with pytest.raises(ConfigurationError):
        StorageFactory.create("custom")
    with pytest.raises(ConfigurationError):
        StorageFactory.register("bogus", dict)  # type: ignore[arg-type]

    StorageFactory.register("broken", BrokenStorage)
    assert "broken" in StorageFactory.available()


@pytest.mark.anyio
async def test_update_merges_and_emits_events() -> None:
    store = StateStore()
    events: List[StateEvent] = []
    store.on(StateEventType.TASK_STATE_CHANGED, events.append)
    everything: List[StateEvent] = []
    store.on("*", everything.append)

    await store.update_task_state("t-1", {"status": "PENDING", "progress": 0})
    merged = await store.update_task_state("t-1", {"progress": 0.5})

    assert merged == {"status": "PENDING", "progress": 0.5}
    assert [event.previous_state for event in events] == [None, {"status": "PENDING", "progress": 0}]
    assert events[-1].entity_type is EntityType.TASK
    assert len(everything) == 2

    store.off(StateEventType.TASK_STATE_CHANGED, events.append)
    await store.delete_task_state("t-1")
    assert len(events) == 2
    assert everything[-1].current_state is None
    assert everything[-1].metadata == {"deleted": True}
    assert await store.get_task_state("t-1") is None


@pytest.mark.anyio
async def test_dataclass_state_is_merged_field_by_field() -> None:
    store = StateStore()
    config = AgentConfig(name="worker", id="w-1")
    await store.update_agent_state("w-1", AgentState(config=config, metadata=AgentMetadata()))

    updated = await store.update_agent_state("w-1", {"metadata": AgentMetadata(status=AgentStatus.BUSY)})

    assert updated.config.name == "worker"
    assert updated.metadata.status is AgentStatus.BUSY
    assert await store.list_agents() == ["w-1"]


@pytest.mark.anyio
async def test_list_with_filter_uses_query() -> None:
    store = StateStore()
    await store.update_task_state("a", {"status": "DONE"})
    await store.update_task_state("b", {"status": "OPEN"})

    assert sorted(await store.list_tasks()) == ["a", "b"]
    assert await store.list_tasks({"status": "OPEN"}) == ["b"]


@pytest.mark.anyio
async def test_transaction_context_rolls_back_on_error() -> None:
    store = StateStore()
    await store.update_workflow_state("wf", {"status": "PENDING"})

    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.update_workflow_state("wf", {"status": "IN_PROGRESS"})
            raise RuntimeError("abort")
    assert await store.get_workflow_state("wf") == {"status": "PENDING"}

    async with store.transaction():
        await store.update_workflow_state("wf", {"status": "COMPLETED"})
    assert await store.get_workflow_state("wf") == {"status": "COMPLETED"}


@pytest.mark.anyio
async def test_adapter_failures_are_wrapped() -> None:
    store = StateStore(BrokenStorage())

    with pytest.raises(StateStoreError) as excinfo:
        await store.update_workflow_state("wf", {"status": "PENDING"})
    assert isinstance(excinfo.value.__cause__, OSError)

    # Adapters without transaction support make the calls no-ops.
    async with store.transaction():
        pass


@pytest.mark.anyio
async def test_failing_listener_does_not_break_writes() -> None:
    store = StateStore()

    def broken(event: StateEvent) -> None:
        raise RuntimeError("listener failed")

    store.on("*", broken)
    await store.update_task_state("t", {"n": 1})

    assert await store.get_task_state("t") == {"n": 1}


@pytest.mark.anyio
async def test_request_sync_emits_pair() -> None:
    store = StateStore()
    seen: List[StateEventType] = []
    store.on("*", lambda event: seen.append(event.type))
    await store.update_agent_state("a", {"status": "IDLE"})
    seen.clear()

    await store.request_sync(EntityType.AGENT, "a")

    assert seen == [StateEventType.STATE_SYNC_REQUESTED, StateEventType.STATE_SYNC_COMPLETED]


def test_lock_is_per_entity() -> None:
    store = StateStore()

    assert store.lock("a") is store.lock("a")
    assert store.lock("a") is not store.lock("b")
