"""Workflow data model: a DAG of steps plus its mutable execution metadata."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .models import TaskConfig, TaskResult, new_id, utcnow


class WorkflowStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


class FailureStrategy(str, Enum):
    FAIL_WORKFLOW = "FAIL_WORKFLOW"
    CONTINUE = "CONTINUE"


@dataclass(frozen=True, slots=True)
class RetryStrategy:
    """Retry budget for a step. ``max_attempts`` counts the first attempt."""

    max_attempts: int = 3
    backoff_multiplier: float = 1.5
    initial_delay_ms: float = 1000

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before dispatching ``attempt + 1``."""
        return self.initial_delay_ms * self.backoff_multiplier ** max(attempt - 1, 0) / 1000


@dataclass(slots=True)
class WorkflowStep:
    id: str
    name: str
    task: TaskConfig
    dependencies: List[str] = field(default_factory=list)
    agent_id: Optional[str] = None
    description: Optional[str] = None
    retry_strategy: Optional[RetryStrategy] = None
    timeout: Optional[float] = None
    failure_strategy: FailureStrategy = FailureStrategy.FAIL_WORKFLOW
    # Optional pure functions applied around the step.
    condition: Optional[Callable[[Dict[str, Any]], bool]] = None
    on_success: Optional[Callable[[Dict[str, Any], Any], Optional[Dict[str, Any]]]] = None
    on_error: Optional[Callable[[str], None]] = None

    @property
    def effective_timeout(self) -> Optional[float]:
        return self.timeout if self.timeout is not None else self.task.timeout


@dataclass(slots=True)
class WorkflowConfig:
    name: str
    steps: List[WorkflowStep] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    version: str = "1.0.0"
    description: Optional[str] = None
    concurrency: Optional[int] = None
    timeout: Optional[float] = None
    retry_strategy: Optional[RetryStrategy] = None

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((step for step in self.steps if step.id == step_id), None)


@dataclass(slots=True)
class WorkflowStepResult:
    step_id: str
    status: StepStatus
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    result: Optional[TaskResult] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass(slots=True)
class WorkflowMetadata:
    status: WorkflowStatus = WorkflowStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    current_step: Optional[str] = None
    step_results: Dict[str, WorkflowStepResult] = field(default_factory=dict)
    error: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Workflow:
    config: WorkflowConfig
    metadata: WorkflowMetadata = field(default_factory=WorkflowMetadata)

    @property
    def id(self) -> str:
        return self.config.id

    def completed_step_ids(self) -> Set[str]:
        """Steps whose outcome satisfies dependents."""
        return {
            step_id
            for step_id, result in self.metadata.step_results.items()
            if result.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
        }
