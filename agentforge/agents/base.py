"""Agent lifecycle state machine and task execution."""
from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic_core import PydanticSerializationError

from agentforge.core.errors import (
    AgentLifecycleError,
    AgentUnavailableError,
    MessageRoutingError,
    MessageValidationError,
    StateStoreError,
    TaskTimeoutError,
)
from agentforge.core.message_bus import MessageBroker, Subscription
from agentforge.core.models import (
    AgentConfig,
    AgentMetadata,
    AgentState,
    AgentStatus,
    Message,
    MessageType,
    Task,
    TaskResult,
    TaskStatus,
    utcnow,
)
from agentforge.core.payloads import (
    AgentStatusPayload,
    TaskAssignmentPayload,
    TaskResultPayload,
    decode_payload,
    encode_payload,
)
from agentforge.core.router import MessageManager, MessageRouter
from agentforge.core.task_manager import TaskManager
from agentforge.state.store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0


class AgentBehavior(abc.ABC):
    """Domain logic plugged into an :class:`Agent`.

    ``execute_task`` is the only required method. Hooks default to no-ops.
    """

    @abc.abstractmethod
    async def execute_task(self, task: Task, agent: Agent) -> TaskResult:
        """Run one task and return its result. Raising marks the task failed."""

    async def setup_message_handlers(self, agent: Agent) -> None:
        """Register extra per-type handlers on ``agent.messages``."""
        return None

    async def on_initialize(self, agent: Agent) -> None:
        return None

    async def on_start(self, agent: Agent) -> None:
        return None

    async def on_pause(self, agent: Agent) -> None:
        return None

    async def on_resume(self, agent: Agent) -> None:
        return None

    async def on_stop(self, agent: Agent) -> None:
        return None

    async def on_terminate(self, agent: Agent) -> None:
        return None


class FunctionBehavior(AgentBehavior):
    """Adapt a plain ``async def fn(task)`` into a behavior."""

    def __init__(self, fn: Callable[[Task], Awaitable[Any]]) -> None:
        self._fn = fn

    async def execute_task(self, task: Task, agent: Agent) -> TaskResult:
        outcome = await self._fn(task)
        if isinstance(outcome, TaskResult):
            return outcome
        return TaskResult(success=True, data=outcome)


class Agent:
    """Independent unit owning a lifecycle, a task registry and broker subscriptions."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        behavior: AgentBehavior,
        broker: Optional[MessageBroker] = None,
        state_store: Optional[StateStore] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self.config = config or AgentConfig()
        self.behavior = behavior
        self.metadata = AgentMetadata()
        self.tasks = TaskManager()
        self.messages = MessageManager()
        # Local observers of AGENT_STATUS_UPDATE / AGENT_HEARTBEAT events.
        self.events = MessageRouter()
        self._broker = broker
        self._state_store = state_store
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat: Optional[asyncio.Task[None]] = None
        self._subscriptions: List[Subscription] = []
        self._running = False
        self._terminated = False
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def status(self) -> AgentStatus:
        return self.metadata.status

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def broker(self) -> Optional[MessageBroker]:
        return self._broker

    def get_state(self) -> AgentState:
        return AgentState(
            config=dataclasses.replace(self.config, capabilities=list(self.config.capabilities)),
            metadata=dataclasses.replace(self.metadata, current_tasks=list(self.metadata.current_tasks)),
        )

    def get_status(self) -> AgentStatus:
        return self.metadata.status

    def can_handle(self, task: Task) -> bool:
        return set(task.config.required_capabilities) <= set(self.config.capabilities)

    # Lifecycle

    async def initialize(self, config: Optional[AgentConfig] = None) -> None:
        self._ensure_alive("initialize")
        if config is not None:
            if config.id != self.id:
                logger.warning("Agent %s keeps its id; ignoring id %s from the new config", self.id, config.id)
            self.config = dataclasses.replace(config, id=self.id, capabilities=list(config.capabilities))
        await self.setup_message_handlers()
        await self.behavior.on_initialize(self)
        self.metadata.status = AgentStatus.IDLE
        await self._emit_state_change()

    async def setup_message_handlers(self) -> None:
        """Register handlers locally, then mirror every handled type as a broker subscription."""
        self.messages.add_handler(MessageType.TASK_ASSIGNMENT, self._on_task_assignment)
        await self.behavior.setup_message_handlers(self)
        if self._broker is None:
            return
        await self._unsubscribe_all()
        for message_type in self.messages.types():
            subscription = Subscription(
                type=message_type,
                handler=self._on_message,
                subscriber_id=self.id,
            )
            await self._broker.subscribe(subscription)
            self._subscriptions.append(subscription)

    async def start(self) -> None:
        self._ensure_alive("start")
        if self._running:
            raise AgentLifecycleError(f"Agent {self.id} is already running")
        self._running = True
        self.metadata.status = AgentStatus.IDLE
        self._heartbeat = asyncio.create_task(self._beat(), name=f"heartbeat:{self.id}")
        await self.behavior.on_start(self)
        await self._emit_state_change()

    async def pause(self) -> None:
        self._ensure_alive("pause")
        if not self._running:
            raise AgentLifecycleError(f"Agent {self.id} is not running")
        self.metadata.status = AgentStatus.PAUSED
        self._resumed.clear()
        await self.behavior.on_pause(self)
        await self._emit_state_change()

    async def resume(self) -> None:
        self._ensure_alive("resume")
        if self.metadata.status is not AgentStatus.PAUSED:
            raise AgentLifecycleError(f"Agent {self.id} is not paused")
        self.metadata.status = AgentStatus.BUSY if len(self.tasks) else AgentStatus.IDLE
        self._resumed.set()
        await self.behavior.on_resume(self)
        await self._emit_state_change()

    async def stop(self) -> None:
        self._ensure_alive("stop")
        if not self._running:
            raise AgentLifecycleError(f"Agent {self.id} is not running")
        self._running = False
        self.metadata.status = AgentStatus.TERMINATED
        await self._stop_heartbeat()
        # Wake assignments parked by pause() so they can answer as stopped.
        self._resumed.set()
        await self.behavior.on_stop(self)
        await self._emit_state_change()

    async def terminate(self) -> None:
        """Hard, irreversible teardown. Every later lifecycle call raises."""
        self._ensure_alive("terminate")
        if self._running:
            await self.stop()
        self.metadata.status = AgentStatus.TERMINATED
        self._terminated = True
        self.events.clear()
        await self._unsubscribe_all()
        await self.behavior.on_terminate(self)

    # Task execution

    async def handle_task(self, task: Task) -> TaskResult:
        """Execute ``task`` and keep the accounting. Errors are re-raised to the caller."""
        task_id = task.config.id
        if len(self.tasks) >= self.config.max_concurrent_tasks:
            raise AgentUnavailableError(
                f"Agent {self.id} is at capacity ({self.config.max_concurrent_tasks} task(s))",
                context={"agent_id": self.id, "task_id": task_id},
            )
        self.tasks.add_task(task)
        self.metadata.current_tasks.append(task_id)
        task.metadata.status = TaskStatus.IN_PROGRESS
        task.metadata.assigned_agent = self.id
        task.metadata.started_at = utcnow()
        task.metadata.attempts = max(task.metadata.attempts, 1)
        self._set_working_status(AgentStatus.BUSY)
        await self._emit_state_change()

        try:
            result = await self._execute(task)
        except Exception as exc:
            self._release(task_id)
            task.metadata.status = TaskStatus.FAILED
            task.metadata.error = str(exc)
            task.metadata.completed_at = utcnow()
            task.result = TaskResult(success=False, error=str(exc))
            self.metadata.failed_tasks += 1
            self._set_working_status(AgentStatus.ERROR)
            await self._emit_state_change()
            raise

        self.tasks.set_task_result(task_id, result)
        self._release(task_id)
        task.metadata.status = TaskStatus.COMPLETED
        task.metadata.completed_at = utcnow()
        task.metadata.progress = 1.0
        task.result = result
        self.metadata.completed_tasks += 1
        self._set_working_status(AgentStatus.BUSY if len(self.tasks) else AgentStatus.IDLE)
        await self._emit_state_change()
        return result

    async def _execute(self, task: Task) -> TaskResult:
        timeout = task.config.timeout
        execution = self.behavior.execute_task(task, self)
        if timeout is None:
            outcome = await execution
        else:
            try:
                outcome = await asyncio.wait_for(execution, timeout / 1000)
            except asyncio.TimeoutError as exc:
                raise TaskTimeoutError(task.config.id, timeout, context={"agent_id": self.id}) from exc
        if isinstance(outcome, TaskResult):
            return outcome
        return TaskResult(success=True, data=outcome)

    def _release(self, task_id: str) -> None:
        self.tasks.remove_task(task_id)
        if task_id in self.metadata.current_tasks:
            self.metadata.current_tasks.remove(task_id)

    def _set_working_status(self, status: AgentStatus) -> None:
        # pause() and stop() win over task bookkeeping.
        if self.metadata.status in (AgentStatus.PAUSED, AgentStatus.TERMINATED):
            return
        self.metadata.status = status

    # Messaging

    async def send(self, message: Message) -> Message:
        if self._broker is None:
            raise AgentLifecycleError(f"Agent {self.id} has no broker attached")
        return await self._broker.publish(message)

    async def _on_message(self, message: Message) -> None:
        await self.messages.dispatch(message)

    async def _on_task_assignment(self, message: Message) -> None:
        try:
            task = decode_payload(message, TaskAssignmentPayload).task
        except MessageValidationError as exc:
            logger.error("Agent %s received a malformed assignment %s: %s", self.id, message.id, exc)
            if self._broker is not None:
                await self._broker.reject(message.id, str(exc))
            return

        if not self.can_handle(task):
            if message.is_broadcast:
                return
            await self._reply_result(
                message,
                task,
                TaskResult(
                    success=False,
                    error=f"Agent {self.id} lacks capabilities {sorted(set(task.config.required_capabilities) - set(self.config.capabilities))}",
                ),
            )
            return

        if self._broker is not None:
            await self._broker.acknowledge(message.id)
        await self._resumed.wait()
        if not self._running:
            await self._reply_result(
                message, task, TaskResult(success=False, error=f"Agent {self.id} is not running")
            )
            return

        task.metadata.status = TaskStatus.ASSIGNED
        task.metadata.assigned_agent = self.id
        try:
            result = await self.handle_task(task)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Agent %s failed task %s: %s", self.id, task.config.id, exc)
            result = TaskResult(success=False, error=str(exc))
        await self._reply_result(message, task, result)

    async def _reply_result(self, assignment: Message, task: Task, result: TaskResult) -> None:
        if self._broker is None:
            return
        try:
            payload = encode_payload(
                TaskResultPayload(
                    task_id=task.config.id,
                    result=result,
                    attempt=task.metadata.attempts or None,
                    agent_id=self.id,
                )
            )
        except PydanticSerializationError as exc:
            payload = encode_payload(
                TaskResultPayload(
                    task_id=task.config.id,
                    result=TaskResult(success=False, error=f"Task result is not serializable: {exc}"),
                    attempt=task.metadata.attempts or None,
                    agent_id=self.id,
                )
            )
        await self._broker.publish(
            Message(
                type=MessageType.TASK_RESULT,
                sender=self.id,
                recipient=assignment.reply_to or assignment.sender,
                correlation_id=assignment.id,
                payload=payload,
            )
        )

    # Events

    def _status_message(self, message_type: MessageType) -> Message:
        return Message(
            type=message_type,
            sender=self.id,
            payload=encode_payload(
                AgentStatusPayload(
                    agent_id=self.id,
                    status=self.metadata.status,
                    current_tasks=list(self.metadata.current_tasks),
                    completed_tasks=self.metadata.completed_tasks,
                    failed_tasks=self.metadata.failed_tasks,
                    last_heartbeat=self.metadata.last_heartbeat,
                )
            ),
        )

    async def _emit_state_change(self, message_type: MessageType = MessageType.AGENT_STATUS_UPDATE) -> None:
        try:
            await self.events.route(self._status_message(message_type))
        except MessageRoutingError as exc:
            logger.warning("Agent %s state listener failed: %s", self.id, exc)
        if self._state_store is not None:
            try:
                await self._state_store.update_agent_state(self.id, self.get_state())
            except StateStoreError as exc:
                logger.error("Agent %s could not persist its state: %s", self.id, exc)

    async def _beat(self) -> None:
        while self._running:
            await asyncio.sleep(self._heartbeat_interval)
            self.metadata.last_heartbeat = utcnow()
            try:
                await self._emit_state_change(MessageType.AGENT_HEARTBEAT)
                if self._broker is not None:
                    await self._broker.publish(self._status_message(MessageType.AGENT_HEARTBEAT))
            except Exception:  # noqa: BLE001
                logger.exception("Failed to emit heartbeat for agent %s", self.id)

    async def _stop_heartbeat(self) -> None:
        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is None or heartbeat is asyncio.current_task():
            return
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass

    async def _unsubscribe_all(self) -> None:
        if self._broker is None:
            self._subscriptions.clear()
            return
        for subscription in self._subscriptions:
            await self._broker.unsubscribe(subscription.type, subscriber_id=self.id)
        self._subscriptions.clear()

    def _ensure_alive(self, operation: str) -> None:
        if self._terminated:
            raise AgentLifecycleError(
                f"Cannot {operation} agent {self.id}: it has been terminated",
                context={"agent_id": self.id, "operation": operation},
            )
