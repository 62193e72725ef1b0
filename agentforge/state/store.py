"""State store: namespaced snapshots of agents, tasks and workflows with change events."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from agentforge.core.errors import StateStoreError
from agentforge.core.models import AgentState, EntityType, StateEvent, StateEventType, Task
from agentforge.core.workflow import Workflow

from .storage import MemoryStorageAdapter, QueryOptions, StorageAdapter, merge_state

logger = logging.getLogger(__name__)

StateEventHandler = Callable[[StateEvent], Union[Awaitable[None], None]]

WILDCARD = "*"

_PREFIXES = {
    EntityType.AGENT: "agent:",
    EntityType.TASK: "task:",
    EntityType.WORKFLOW: "workflow:",
}

_CHANGE_EVENTS = {
    EntityType.AGENT: StateEventType.AGENT_STATE_CHANGED,
    EntityType.TASK: StateEventType.TASK_STATE_CHANGED,
    EntityType.WORKFLOW: StateEventType.WORKFLOW_STATE_CHANGED,
}


class StateStore:
    """Single source of truth for runtime state.

    Every mutation is ``get -> merge -> set`` followed by a :class:`StateEvent`.
    Nothing here is atomic across awaits: callers racing on one entity must
    hold :meth:`lock` or run inside :meth:`transaction`.
    """

    def __init__(self, storage: Optional[StorageAdapter] = None) -> None:
        self._storage = storage or MemoryStorageAdapter()
        self._handlers: Dict[str, List[StateEventHandler]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def storage(self) -> StorageAdapter:
        return self._storage

    # Agents

    async def get_agent_state(self, agent_id: str) -> Optional[AgentState]:
        return await self._get(EntityType.AGENT, agent_id)

    async def update_agent_state(self, agent_id: str, state: Any) -> AgentState:
        return await self._update(EntityType.AGENT, agent_id, state)

    async def delete_agent_state(self, agent_id: str) -> None:
        await self._delete(EntityType.AGENT, agent_id)

    async def list_agents(self, filter: Optional[Dict[str, Any]] = None) -> List[str]:
        return await self._list(EntityType.AGENT, filter)

    # Tasks

    async def get_task_state(self, task_id: str) -> Optional[Task]:
        return await self._get(EntityType.TASK, task_id)

    async def update_task_state(self, task_id: str, state: Any) -> Task:
        return await self._update(EntityType.TASK, task_id, state)

    async def delete_task_state(self, task_id: str) -> None:
        await self._delete(EntityType.TASK, task_id)

    async def list_tasks(self, filter: Optional[Dict[str, Any]] = None) -> List[str]:
        return await self._list(EntityType.TASK, filter)

    # Workflows

    async def get_workflow_state(self, workflow_id: str) -> Optional[Workflow]:
        return await self._get(EntityType.WORKFLOW, workflow_id)

    async def update_workflow_state(self, workflow_id: str, state: Any) -> Workflow:
        return await self._update(EntityType.WORKFLOW, workflow_id, state)

    async def delete_workflow_state(self, workflow_id: str) -> None:
        await self._delete(EntityType.WORKFLOW, workflow_id)

    async def list_workflows(self, filter: Optional[Dict[str, Any]] = None) -> List[str]:
        return await self._list(EntityType.WORKFLOW, filter)

    # Transactions and locking

    async def begin_transaction(self) -> None:
        if self._storage.supports_transactions:
            await self._call("begin_transaction", self._storage.begin_transaction())

    async def commit_transaction(self) -> None:
        if self._storage.supports_transactions:
            await self._call("commit_transaction", self._storage.commit_transaction())

    async def rollback_transaction(self) -> None:
        if self._storage.supports_transactions:
            await self._call("rollback_transaction", self._storage.rollback_transaction())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["StateStore"]:
        """Commit on success, roll back and re-raise on any error."""
        await self.begin_transaction()
        try:
            yield self
        except BaseException:
            await self.rollback_transaction()
            raise
        else:
            await self.commit_transaction()

    def lock(self, entity_id: str) -> asyncio.Lock:
        """Per-entity mutex guarding read-modify-write sequences."""
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    async def close(self) -> None:
        await self._storage.close()
        self._handlers.clear()

    # Events

    def on(self, event_type: Union[StateEventType, str], handler: StateEventHandler) -> None:
        self._handlers[self._event_key(event_type)].append(handler)

    def off(self, event_type: Union[StateEventType, str], handler: StateEventHandler) -> None:
        handlers = self._handlers.get(self._event_key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: StateEvent) -> None:
        # Listener failures are logged; the write they observe has already happened.
        for handler in [*self._handlers.get(event.type.value, []), *self._handlers.get(WILDCARD, [])]:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:  # noqa: BLE001
                logger.exception("State event handler failed for %s %s", event.type.value, event.entity_id)

    async def request_sync(self, entity_type: EntityType, entity_id: str) -> None:
        """Announce that ``entity_id`` should be re-read by replicas, then confirm it."""
        current = await self._get(entity_type, entity_id)
        await self.emit(
            StateEvent(
                type=StateEventType.STATE_SYNC_REQUESTED,
                entity_id=entity_id,
                entity_type=entity_type,
                current_state=current,
            )
        )
        await self.emit(
            StateEvent(
                type=StateEventType.STATE_SYNC_COMPLETED,
                entity_id=entity_id,
                entity_type=entity_type,
                current_state=current,
            )
        )

    # Internals

    @staticmethod
    def _event_key(event_type: Union[StateEventType, str]) -> str:
        return event_type.value if isinstance(event_type, StateEventType) else str(event_type)

    @staticmethod
    def _key(entity_type: EntityType, entity_id: str) -> str:
        return f"{_PREFIXES[entity_type]}{entity_id}"

    async def _call(self, operation: str, awaitable: Awaitable[Any], key: Optional[str] = None) -> Any:
        try:
            return await awaitable
        except StateStoreError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("State store %s failed for %s: %s", operation, key or "<store>", exc)
            raise StateStoreError(
                f"State store {operation} failed: {exc}",
                context={"key": key, "operation": operation},
            ) from exc

    async def _get(self, entity_type: EntityType, entity_id: str) -> Any:
        key = self._key(entity_type, entity_id)
        return await self._call("get", self._storage.get(key), key)

    async def _update(self, entity_type: EntityType, entity_id: str, state: Any) -> Any:
        key = self._key(entity_type, entity_id)
        current = await self._call("get", self._storage.get(key), key)
        merged = merge_state(current, state)
        await self._call("set", self._storage.set(key, merged), key)
        await self.emit(
            StateEvent(
                type=_CHANGE_EVENTS[entity_type],
                entity_id=entity_id,
                entity_type=entity_type,
                previous_state=current,
                current_state=merged,
            )
        )
        return merged

    async def _delete(self, entity_type: EntityType, entity_id: str) -> None:
        key = self._key(entity_type, entity_id)
        current = await self._call("get", self._storage.get(key), key)
        await self._call("delete", self._storage.delete(key), key)
        if current is not None:
            await self.emit(
                StateEvent(
                    type=_CHANGE_EVENTS[entity_type],
                    entity_id=entity_id,
                    entity_type=entity_type,
                    previous_state=current,
                    current_state=None,
                    metadata={"deleted": True},
                )
            )

    async def _list(self, entity_type: EntityType, filter: Optional[Dict[str, Any]]) -> List[str]:
        prefix = _PREFIXES[entity_type]
        if filter and self._storage.supports_query:
            results = await self._call("query", self._storage.query(QueryOptions(filter=filter, prefix=prefix)))
            return [result.key[len(prefix):] for result in results]
        keys = await self._call("list", self._storage.list(f"{prefix}*"))
        return [key[len(prefix):] for key in keys]
