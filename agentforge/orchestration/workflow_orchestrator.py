"""Workflow orchestrator: turns a step DAG into task assignments and tracks results."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, List, Optional, Set, Tuple, Union

from agentforge.core.errors import (
    AgentForgeError,
    AgentUnavailableError,
    CommunicationError,
    MessageValidationError,
    TaskTimeoutError,
    WorkflowAlreadyRunningError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from agentforge.core.message_bus import MessageBroker, Subscription
from agentforge.core.models import (
    AgentConfig,
    Message,
    MessageType,
    Task,
    TaskConfig,
    TaskMetadata,
    TaskResult,
    new_id,
    utcnow,
)
from agentforge.core.payloads import (
    ErrorPayload,
    TaskAssignmentPayload,
    TaskResultPayload,
    WorkflowStatusPayload,
    WorkflowStepPayload,
    decode_payload,
    encode_payload,
)
from agentforge.core.workflow import (
    FailureStrategy,
    RetryStrategy,
    StepStatus,
    Workflow,
    WorkflowConfig,
    WorkflowMetadata,
    WorkflowStatus,
    WorkflowStep,
    WorkflowStepResult,
)
from agentforge.state.store import StateStore

from .graph import ready_steps, stranded_steps, validate_acyclic

logger = logging.getLogger(__name__)

DEFAULT_ORCHESTRATOR_ID = "workflow-orchestrator"

# Returned by agent selection when every capable agent is at capacity.
_BUSY = object()


@dataclass(slots=True)
class _Run:
    """Process-local bookkeeping for one active workflow.

    ``pending`` holds every step that owns a slot: ``in_flight`` steps were
    sent to an agent, ``due`` steps wait for an agent or for resume, the
    rest sit in retry backoff.
    """

    workflow_id: str
    pending: Set[str] = field(default_factory=set)
    in_flight: Set[str] = field(default_factory=set)
    due: Set[str] = field(default_factory=set)
    attempts: Dict[str, int] = field(default_factory=dict)
    assigned: Dict[str, str] = field(default_factory=dict)
    timers: Dict[str, "asyncio.Task[None]"] = field(default_factory=dict)
    deadline: Optional["asyncio.Task[None]"] = None
    waiting_for_agents: bool = False
    stalled: bool = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pending": set(self.pending),
            "in_flight": set(self.in_flight),
            "due": set(self.due),
            "attempts": dict(self.attempts),
            "assigned": dict(self.assigned),
            "waiting_for_agents": self.waiting_for_agents,
            "stalled": self.stalled,
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def release(self, step_id: str) -> None:
        self.pending.discard(step_id)
        self.in_flight.discard(step_id)
        self.due.discard(step_id)
        self.assigned.pop(step_id, None)


@dataclass(slots=True)
class _Transition:
    """One locked read-modify-write of a workflow plus its deferred side effects."""

    workflow: Workflow
    run: Optional[_Run]
    outbox: List[Message] = field(default_factory=list)
    actions: List[Callable[[], None]] = field(default_factory=list)
    # Assignment message id -> (step id, attempt).
    assignments: Dict[str, Tuple[str, int]] = field(default_factory=dict)
    persist: bool = True


class WorkflowOrchestrator:
    """Execute workflows over a message broker with the state store as source of truth.

    Every mutation of a workflow happens under ``state_store.lock(workflow_id)``:
    the workflow is loaded, changed, persisted, and only then are timers armed
    and messages published. A state-store failure leaves the persisted
    workflow untouched and is reported as an ``ERROR`` message.
    """

    def __init__(
        self,
        *,
        broker: MessageBroker,
        state_store: StateStore,
        max_retries: int = 1,
        retry_delay_ms: float = 1000,
        orchestrator_id: str = DEFAULT_ORCHESTRATOR_ID,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries counts the first attempt and must be >= 1")
        self.id = orchestrator_id
        self._broker = broker
        self._store = state_store
        self._retry_delay_ms = retry_delay_ms
        self._default_retry = RetryStrategy(max_attempts=max_retries, initial_delay_ms=retry_delay_ms)
        self._runs: Dict[str, _Run] = {}
        self._completions: Dict[str, asyncio.Event] = {}
        self._agents: Dict[str, AgentConfig] = {}
        self._subscription: Optional[Subscription] = None
        self._background: Set["asyncio.Task[None]"] = set()

    @property
    def active_workflows(self) -> List[str]:
        return list(self._runs)

    # Lifecycle

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = Subscription(
            type=MessageType.TASK_RESULT,
            handler=self._on_task_result,
            subscriber_id=self.id,
        )
        await self._broker.subscribe(self._subscription)
        logger.info("Workflow orchestrator %s listening for task results", self.id)

    async def close(self) -> None:
        if self._subscription is not None:
            await self._broker.unsubscribe(MessageType.TASK_RESULT, subscriber_id=self.id)
            self._subscription = None
        for workflow_id in list(self._runs):
            self._retire(workflow_id)

    # Agents

    def register_agent(self, agent: Any) -> None:
        """Track an agent (or its :class:`AgentConfig`) for capacity and capability checks."""
        config: AgentConfig = getattr(agent, "config", agent)
        self._agents[config.id] = config

    def unregister_agent(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)

    def registered_agents(self) -> List[AgentConfig]:
        return list(self._agents.values())

    # Execution

    async def execute(self, workflow: Workflow) -> str:
        """Validate, persist and start ``workflow``; return its id."""
        await self.start()
        config = workflow.config
        if not config.id:
            config.id = new_id()
        workflow_id = config.id
        validate_acyclic(config)
        if workflow_id in self._runs:
            raise WorkflowAlreadyRunningError(workflow_id)

        workflow.metadata = WorkflowMetadata(state=dict(workflow.metadata.state))
        run = self._runs[workflow_id] = _Run(workflow_id)
        self._completions[workflow_id] = asyncio.Event()
        try:
            async with self._store.lock(workflow_id):
                await self._store.update_workflow_state(workflow_id, workflow)
            async with self._transition(workflow_id) as change:
                change.workflow.metadata.status = WorkflowStatus.IN_PROGRESS
                change.outbox.append(self._status_message(change.workflow))
                if config.timeout is not None:
                    change.actions.append(lambda: self._arm_deadline(run, config.timeout))
                self._dispatch_ready(change)
        except BaseException:
            self._runs.pop(workflow_id, None)
            self._completions.pop(workflow_id, None)
            raise
        logger.info("Workflow %s (%s) started with %d step(s)", workflow_id, config.name, len(config.steps))
        return workflow_id

    async def submit_task(
        self,
        task_config: TaskConfig,
        *,
        agent_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """Run a single task as a one-step workflow keyed by the task id."""
        step = WorkflowStep(
            id=task_config.type,
            name=name or task_config.type,
            task=task_config,
            agent_id=agent_id,
            retry_strategy=RetryStrategy(
                max_attempts=max(task_config.retry_attempts, 1),
                initial_delay_ms=self._retry_delay_ms,
            ),
        )
        workflow = Workflow(config=WorkflowConfig(id=task_config.id, name=name or f"task:{task_config.type}", steps=[step]))
        return await self.execute(workflow)

    async def pause(self, workflow_id: str) -> None:
        async with self._transition(workflow_id, require_run=True) as change:
            self._expect_status(change.workflow, WorkflowStatus.IN_PROGRESS, "pause")
            change.workflow.metadata.status = WorkflowStatus.PAUSED
            change.outbox.append(self._status_message(change.workflow))
        logger.info("Workflow %s paused", workflow_id)

    async def resume(self, workflow_id: str) -> None:
        async with self._transition(workflow_id, require_run=True) as change:
            self._expect_status(change.workflow, WorkflowStatus.PAUSED, "resume")
            change.workflow.metadata.status = WorkflowStatus.IN_PROGRESS
            change.outbox.append(self._status_message(change.workflow))
            self._dispatch_ready(change)
        logger.info("Workflow %s resumed", workflow_id)

    async def cancel(self, workflow_id: str) -> None:
        """Mark the workflow CANCELLED. Tasks already running on agents are not interrupted."""
        async with self._transition(workflow_id, require_run=True) as change:
            self._finish(change, WorkflowStatus.CANCELLED, error="Workflow cancelled")
        logger.info("Workflow %s cancelled", workflow_id)

    # Queries

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self._store.get_workflow_state(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def get_status(self, workflow_id: str) -> WorkflowStatus:
        return (await self.get_workflow(workflow_id)).metadata.status

    async def get_current_step(self, workflow_id: str) -> Optional[str]:
        return (await self.get_workflow(workflow_id)).metadata.current_step

    async def get_step_results(self, workflow_id: str) -> Dict[str, WorkflowStepResult]:
        return dict((await self.get_workflow(workflow_id)).metadata.step_results)

    async def list_workflows(self) -> List[str]:
        return await self._store.list_workflows()

    async def wait_for_completion(self, workflow_id: str, timeout: Optional[float] = None) -> Workflow:
        """Block until the workflow reaches a terminal status.

        ``timeout`` is in seconds; ``asyncio.TimeoutError`` is raised when it
        elapses first. A stalled workflow never completes on its own.
        """
        done = self._completions.get(workflow_id)
        if done is None:
            return await self.get_workflow(workflow_id)
        await asyncio.wait_for(done.wait(), timeout)
        return await self.get_workflow(workflow_id)

    # Result handling

    async def _on_task_result(self, message: Message) -> None:
        try:
            payload = decode_payload(message, TaskResultPayload)
        except MessageValidationError as exc:
            logger.error("Discarding malformed task result %s: %s", message.id, exc)
            await self._broker.reject(message.id, str(exc))
            return
        located = self._locate(payload.task_id)
        if located is None:
            logger.debug("Ignoring result for unknown task %s", payload.task_id)
            return
        await self._broker.acknowledge(message.id)
        workflow_id, step_id = located
        try:
            await self._apply_result(workflow_id, step_id, payload.result, payload.attempt)
        except AgentForgeError as exc:
            logger.error("Could not apply result for task %s: %s", payload.task_id, exc)
            await self._report_error(exc)

    def _locate(self, task_id: str) -> Optional[Tuple[str, str]]:
        matches = sorted(
            (
                (workflow_id, task_id[len(workflow_id) + 1 :])
                for workflow_id in self._runs
                if task_id.startswith(f"{workflow_id}:")
            ),
            key=lambda match: len(match[0]),
            reverse=True,
        )
        # Workflow ids may nest ("team" and "team:report"); the run holding the step in flight wins.
        for workflow_id, step_id in matches:
            if step_id in self._runs[workflow_id].in_flight:
                return workflow_id, step_id
        return matches[0] if matches else None

    async def _apply_result(
        self,
        workflow_id: str,
        step_id: str,
        result: TaskResult,
        attempt: Optional[int],
    ) -> None:
        if workflow_id not in self._runs:
            logger.debug("Ignoring result for inactive workflow %s", workflow_id)
            return
        async with self._transition(workflow_id) as change:
            workflow, run = change.workflow, change.run
            current = run.attempts.get(step_id, 0)
            if workflow.metadata.status.is_terminal or step_id not in run.in_flight:
                logger.debug("Ignoring result for step %s of workflow %s: not in flight", step_id, workflow_id)
                change.persist = False
                return
            if attempt is not None and attempt != current:
                logger.info(
                    "Ignoring superseded result for step %s of workflow %s (attempt %s, current %s)",
                    step_id,
                    workflow_id,
                    attempt,
                    current,
                )
                change.persist = False
                return

            step = workflow.config.get_step(step_id)
            change.actions.append(lambda: self._cancel_timer(run, step_id))
            if step_id in run.assigned:
                change.actions.append(self._kick_waiting)
            run.release(step_id)

            if result.success:
                self._record(change, step_id, StepStatus.COMPLETED, result=result, attempts=current)
                hook_error = self._apply_on_success(workflow, step, result)
                if hook_error is not None:
                    self._record(change, step_id, StepStatus.FAILED, result=result, error=hook_error, attempts=current)
                    self._fail_permanently(change, step, hook_error)
                    return
                self._dispatch_ready(change)
            else:
                self._handle_failure(change, step, result.error or "Task failed", result=result)

    def _apply_on_success(self, workflow: Workflow, step: WorkflowStep, result: TaskResult) -> Optional[str]:
        if step.on_success is None:
            return None
        try:
            update = step.on_success(dict(workflow.metadata.state), result.data)
        except Exception as exc:  # noqa: BLE001
            logger.exception("on_success hook of step %s raised", step.id)
            return f"on_success hook failed: {exc}"
        if isinstance(update, Mapping):
            workflow.metadata.state.update(update)
        return None

    def _handle_failure(
        self,
        change: _Transition,
        step: WorkflowStep,
        error: str,
        *,
        result: Optional[TaskResult] = None,
        retryable: bool = True,
    ) -> None:
        workflow, run = change.workflow, change.run
        attempt = run.attempts.get(step.id, 1)
        policy = self._retry_for(workflow, step)
        self._record(change, step.id, StepStatus.FAILED, result=result, error=error, attempts=attempt)

        if retryable and attempt < policy.max_attempts:
            # The next attempt is claimed now so late results of this one are recognised as stale.
            run.attempts[step.id] = attempt + 1
            run.pending.add(step.id)
            delay = policy.delay_for(attempt)
            logger.warning(
                "Step %s of workflow %s failed (attempt %d/%d), retrying in %.3fs: %s",
                step.id,
                workflow.id,
                attempt,
                policy.max_attempts,
                delay,
                error,
            )
            change.actions.append(
                lambda: self._arm_timer(run, step.id, self._retry_later(workflow.id, step.id, attempt + 1, delay))
            )
            return
        self._fail_permanently(change, step, error)

    def _fail_permanently(self, change: _Transition, step: WorkflowStep, error: str) -> None:
        workflow = change.workflow
        if step.on_error is not None:
            try:
                step.on_error(error)
            except Exception:  # noqa: BLE001
                logger.exception("on_error hook of step %s raised", step.id)
        if step.failure_strategy is FailureStrategy.FAIL_WORKFLOW:
            logger.error("Step %s failed; failing workflow %s: %s", step.id, workflow.id, error)
            self._finish(change, WorkflowStatus.FAILED, error=error)
            return
        logger.warning("Step %s of workflow %s failed, continuing: %s", step.id, workflow.id, error)
        self._dispatch_ready(change)

    # Dispatch

    def _dispatch_ready(self, change: _Transition) -> None:
        workflow, run = change.workflow, change.run
        if workflow.metadata.status is not WorkflowStatus.IN_PROGRESS:
            return
        run.waiting_for_agents = False

        for step_id in sorted(run.due):
            if step_id not in run.due:
                continue
            step = workflow.config.get_step(step_id)
            if not self._try_send(change, step):
                return

        limit = workflow.config.concurrency
        progressed = True
        while progressed and workflow.metadata.status is WorkflowStatus.IN_PROGRESS:
            progressed = False
            for step in ready_steps(workflow, run.pending):
                # Hooks below can re-enter _dispatch_ready and consume later steps.
                if step.id in run.pending or step.id in workflow.metadata.step_results:
                    continue
                if limit is not None and len(run.pending) >= limit:
                    break
                if step.condition is not None:
                    try:
                        allowed = bool(step.condition(dict(workflow.metadata.state)))
                    except Exception as exc:  # noqa: BLE001
                        logger.exception("Condition of step %s raised", step.id)
                        run.attempts[step.id] = run.attempts.get(step.id, 0) + 1
                        self._handle_failure(change, step, f"Condition failed: {exc}", retryable=False)
                        progressed = True
                        break
                    if not allowed:
                        self._record(change, step.id, StepStatus.SKIPPED)
                        progressed = True
                        continue
                run.attempts[step.id] = run.attempts.get(step.id, 0) + 1
                run.pending.add(step.id)
                run.due.add(step.id)
                if not self._try_send(change, step):
                    return
            # A failure inside _try_send may have finished the workflow.
            if workflow.metadata.status is not WorkflowStatus.IN_PROGRESS:
                return

        self._check_completion(change)

    def _try_send(self, change: _Transition, step: WorkflowStep) -> bool:
        """Send a due step. Returns False when the workflow left IN_PROGRESS."""
        run = change.run
        try:
            recipient = self._select_agent(step)
        except AgentUnavailableError as exc:
            run.release(step.id)
            self._handle_failure(change, step, str(exc), retryable=False)
            return change.workflow.metadata.status is WorkflowStatus.IN_PROGRESS
        if recipient is _BUSY:
            run.waiting_for_agents = True
            return True
        self._send(change, step, recipient)
        return True

    def _send(self, change: _Transition, step: WorkflowStep, recipient: Optional[str]) -> None:
        workflow, run = change.workflow, change.run
        attempt = run.attempts[step.id]
        run.due.discard(step.id)
        run.in_flight.add(step.id)
        if recipient is not None and recipient in self._agents:
            run.assigned[step.id] = recipient
        workflow.metadata.current_step = step.id
        self._record(change, step.id, StepStatus.IN_PROGRESS, attempts=attempt)

        policy = self._retry_for(workflow, step)
        timeout = step.effective_timeout
        task = Task(
            config=dataclasses.replace(
                step.task,
                id=f"{workflow.id}:{step.id}",
                timeout=timeout,
                retry_attempts=policy.max_attempts,
                dependencies=list(step.dependencies),
            ),
            metadata=TaskMetadata(attempts=attempt),
        )
        assignment = Message(
            type=MessageType.TASK_ASSIGNMENT,
            sender=self.id,
            recipient=recipient,
            reply_to=self.id,
            correlation_id=workflow.id,
            payload=encode_payload(TaskAssignmentPayload(task=task)),
        )
        change.outbox.append(assignment)
        change.assignments[assignment.id] = (step.id, attempt)
        if timeout is not None:
            change.actions.append(
                lambda: self._arm_timer(run, step.id, self._step_timed_out(workflow.id, step.id, attempt, timeout))
            )
        logger.debug("Dispatched step %s of workflow %s (attempt %d) to %s", step.id, workflow.id, attempt, recipient or "*")

    def _select_agent(self, step: WorkflowStep) -> Union[Optional[str], object]:
        if not self._agents:
            return step.agent_id
        required = set(step.task.required_capabilities)
        if step.agent_id is not None:
            config = self._agents.get(step.agent_id)
            if config is None:
                raise AgentUnavailableError(
                    f"Agent {step.agent_id} is not registered",
                    context={"agent_id": step.agent_id, "step_id": step.id},
                )
            missing = required - set(config.capabilities)
            if missing:
                raise AgentUnavailableError(
                    f"Agent {step.agent_id} lacks capabilities {sorted(missing)}",
                    context={"agent_id": step.agent_id, "step_id": step.id},
                )
            return step.agent_id if self._has_capacity(config) else _BUSY
        capable = [config for config in self._agents.values() if required <= set(config.capabilities)]
        if not capable:
            raise AgentUnavailableError(
                f"No registered agent provides {sorted(required)}",
                context={"step_id": step.id},
            )
        free = [config for config in capable if self._has_capacity(config)]
        if not free:
            return _BUSY
        return min(free, key=lambda config: self._load(config.id)).id

    def _load(self, agent_id: str) -> int:
        return sum(1 for run in self._runs.values() for assignee in run.assigned.values() if assignee == agent_id)

    def _has_capacity(self, config: AgentConfig) -> bool:
        return self._load(config.id) < config.max_concurrent_tasks

    def _retry_for(self, workflow: Workflow, step: WorkflowStep) -> RetryStrategy:
        return step.retry_strategy or workflow.config.retry_strategy or self._default_retry

    # Completion

    def _check_completion(self, change: _Transition) -> None:
        workflow, run = change.workflow, change.run
        if run.pending or run.waiting_for_agents:
            return
        if ready_steps(workflow, run.pending):
            return
        results = workflow.metadata.step_results
        if all(
            step.id in results and results[step.id].status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
            for step in workflow.config.steps
        ):
            self._finish(change, WorkflowStatus.COMPLETED)
            return
        if run.stalled:
            return
        blocked = stranded_steps(workflow, run.pending)
        for step_id in blocked:
            self._record(change, step_id, StepStatus.BLOCKED, error="A dependency failed")
        run.stalled = True
        logger.warning(
            "Workflow %s stalled: failed steps left %s unreachable",
            workflow.id,
            blocked or "nothing runnable",
        )
        change.outbox.append(self._status_message(workflow, stalled=True, blocked_steps=blocked))

    def _finish(self, change: _Transition, status: WorkflowStatus, *, error: Optional[str] = None) -> None:
        workflow, run = change.workflow, change.run
        now = utcnow()
        if status is not WorkflowStatus.COMPLETED:
            for step_id in sorted(run.pending):
                self._record(change, step_id, StepStatus.CANCELLED, error=error)
        run.pending.clear()
        run.in_flight.clear()
        run.due.clear()
        run.assigned.clear()
        workflow.metadata.status = status
        workflow.metadata.end_time = now
        if error is not None:
            workflow.metadata.error = error
        change.outbox.append(self._status_message(workflow))
        change.actions.append(lambda: self._retire(workflow.id))
        change.actions.append(self._kick_waiting)
        logger.info("Workflow %s finished with status %s", workflow.id, status.value)

    def _retire(self, workflow_id: str) -> None:
        run = self._runs.pop(workflow_id, None)
        if run is not None:
            current = asyncio.current_task()
            for timer in [*run.timers.values(), run.deadline]:
                if timer is not None and timer is not current:
                    timer.cancel()
            run.timers.clear()
        done = self._completions.get(workflow_id)
        if done is not None:
            done.set()

    # Timers

    def _arm_timer(self, run: _Run, step_id: str, coro: Coroutine[Any, Any, None]) -> None:
        self._cancel_timer(run, step_id)
        run.timers[step_id] = asyncio.create_task(coro, name=f"{run.workflow_id}:{step_id}:timer")

    def _cancel_timer(self, run: _Run, step_id: str) -> None:
        timer = run.timers.pop(step_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _arm_deadline(self, run: _Run, timeout_ms: float) -> None:
        run.deadline = asyncio.create_task(
            self._workflow_timed_out(run.workflow_id, timeout_ms),
            name=f"{run.workflow_id}:deadline",
        )

    async def _step_timed_out(self, workflow_id: str, step_id: str, attempt: int, timeout_ms: float) -> None:
        await asyncio.sleep(timeout_ms / 1000)
        error = TaskTimeoutError(f"{workflow_id}:{step_id}", timeout_ms)
        logger.warning("Step %s of workflow %s timed out on attempt %d", step_id, workflow_id, attempt)
        try:
            await self._apply_result(workflow_id, step_id, TaskResult(success=False, error=str(error)), attempt)
        except AgentForgeError as exc:
            logger.error("Could not record timeout of step %s: %s", step_id, exc)
            await self._report_error(exc)

    async def _retry_later(self, workflow_id: str, step_id: str, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if workflow_id not in self._runs:
            return
        try:
            async with self._transition(workflow_id) as change:
                run = change.run
                run.timers.pop(step_id, None)
                if (
                    change.workflow.metadata.status.is_terminal
                    or step_id not in run.pending
                    or run.attempts.get(step_id) != attempt
                ):
                    change.persist = False
                    return
                run.due.add(step_id)
                self._dispatch_ready(change)
        except AgentForgeError as exc:
            logger.error("Could not retry step %s of workflow %s: %s", step_id, workflow_id, exc)
            await self._report_error(exc)

    async def _workflow_timed_out(self, workflow_id: str, timeout_ms: float) -> None:
        await asyncio.sleep(timeout_ms / 1000)
        if workflow_id not in self._runs:
            return
        try:
            async with self._transition(workflow_id) as change:
                if change.workflow.metadata.status.is_terminal:
                    change.persist = False
                    return
                logger.error("Workflow %s timed out after %sms", workflow_id, timeout_ms)
                self._finish(change, WorkflowStatus.FAILED, error=f"Workflow {workflow_id} timed out after {timeout_ms}ms")
        except AgentForgeError as exc:
            logger.error("Could not time out workflow %s: %s", workflow_id, exc)
            await self._report_error(exc)

    def _kick_waiting(self) -> None:
        for workflow_id, run in list(self._runs.items()):
            if run.waiting_for_agents:
                task = asyncio.create_task(self._advance(workflow_id), name=f"{workflow_id}:advance")
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    async def _advance(self, workflow_id: str) -> None:
        if workflow_id not in self._runs:
            return
        try:
            async with self._transition(workflow_id) as change:
                self._dispatch_ready(change)
        except AgentForgeError as exc:
            logger.error("Could not advance workflow %s: %s", workflow_id, exc)
            await self._report_error(exc)

    # Plumbing

    @asynccontextmanager
    async def _transition(self, workflow_id: str, *, require_run: bool = False) -> AsyncIterator[_Transition]:
        async with self._store.lock(workflow_id):
            workflow = await self._store.get_workflow_state(workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            run = self._runs.get(workflow_id)
            if run is None and require_run:
                raise WorkflowValidationError(
                    f"Workflow {workflow_id} is not active (status {workflow.metadata.status.value})",
                    context={"workflow_id": workflow_id, "status": workflow.metadata.status.value},
                )
            change = _Transition(workflow=workflow, run=run)
            snapshot = run.snapshot() if run is not None else None
            try:
                yield change
                if change.persist:
                    await self._store.update_workflow_state(workflow_id, workflow)
            except BaseException:
                if run is not None and snapshot is not None:
                    run.restore(snapshot)
                raise
            for action in change.actions:
                action()
            undelivered: List[Tuple[str, int, str]] = []
            for message in change.outbox:
                if message.id not in change.assignments:
                    await self._publish(message)
                    continue
                try:
                    await self._broker.publish(message)
                except AgentForgeError as exc:
                    step_id, attempt = change.assignments[message.id]
                    logger.error("Could not deliver step %s of workflow %s: %s", step_id, workflow_id, exc)
                    undelivered.append((step_id, attempt, str(exc)))
        # The lock is released; each undelivered assignment fails its attempt like an agent error would.
        for step_id, attempt, error in undelivered:
            try:
                await self._apply_result(
                    workflow_id,
                    step_id,
                    TaskResult(success=False, error=f"Assignment could not be delivered: {error}"),
                    attempt,
                )
            except AgentForgeError as exc:
                logger.error("Could not record delivery failure of step %s: %s", step_id, exc)
                await self._report_error(exc)

    def _record(
        self,
        change: _Transition,
        step_id: str,
        status: StepStatus,
        *,
        result: Optional[TaskResult] = None,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> None:
        workflow = change.workflow
        previous = workflow.metadata.step_results.get(step_id)
        now = utcnow()
        entry = WorkflowStepResult(
            step_id=step_id,
            status=status,
            start_time=now if status is StepStatus.IN_PROGRESS or previous is None else previous.start_time,
            end_time=None if status is StepStatus.IN_PROGRESS else now,
            result=result,
            error=error,
            attempts=attempts if attempts is not None else (previous.attempts if previous else 0),
        )
        workflow.metadata.step_results[step_id] = entry
        change.outbox.append(
            Message(
                type=MessageType.WORKFLOW_STEP_UPDATE,
                sender=self.id,
                correlation_id=workflow.id,
                payload=encode_payload(
                    WorkflowStepPayload(
                        workflow_id=workflow.id,
                        step_id=step_id,
                        status=status,
                        attempts=entry.attempts,
                        error=error,
                    )
                ),
            )
        )

    def _status_message(
        self,
        workflow: Workflow,
        *,
        stalled: bool = False,
        blocked_steps: Optional[List[str]] = None,
    ) -> Message:
        return Message(
            type=MessageType.WORKFLOW_STATUS_UPDATE,
            sender=self.id,
            correlation_id=workflow.id,
            payload=encode_payload(
                WorkflowStatusPayload(
                    workflow_id=workflow.id,
                    status=workflow.metadata.status,
                    error=workflow.metadata.error,
                    stalled=stalled,
                    blocked_steps=blocked_steps or [],
                )
            ),
        )

    @staticmethod
    def _expect_status(workflow: Workflow, expected: WorkflowStatus, operation: str) -> None:
        if workflow.metadata.status is not expected:
            raise WorkflowValidationError(
                f"Cannot {operation} workflow {workflow.id} in status {workflow.metadata.status.value}",
                context={"workflow_id": workflow.id, "status": workflow.metadata.status.value},
            )

    async def _publish(self, message: Message) -> None:
        try:
            await self._broker.publish(message)
        except CommunicationError as exc:
            logger.error("Failed to publish %s message %s: %s", message.channel, message.id, exc)

    async def _report_error(self, error: AgentForgeError) -> None:
        await self._publish(
            Message(
                type=MessageType.ERROR,
                sender=self.id,
                payload=encode_payload(
                    ErrorPayload(error=error.message, code=error.code, context={k: str(v) for k, v in error.context.items()})
                ),
            )
        )
