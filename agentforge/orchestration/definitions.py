"""Build :class:`Workflow` objects from plain-data definitions.

Definitions accept either camelCase (``agentId``, ``taskType``) or
snake_case keys, so JSON documents and Python literals both work::

    build_workflow({
        "id": "report",
        "name": "Report",
        "steps": [
            {"id": "fetch", "agentId": "fetcher", "taskType": "FETCH"},
            {"id": "write", "agentId": "writer", "taskType": "WRITE", "dependencies": ["fetch"]},
        ],
    })
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from agentforge.core.errors import WorkflowValidationError
from agentforge.core.models import TaskConfig, TaskPriority, new_id
from agentforge.core.workflow import (
    FailureStrategy,
    RetryStrategy,
    Workflow,
    WorkflowConfig,
    WorkflowMetadata,
    WorkflowStep,
)

from .graph import validate_acyclic


class _Definition(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class RetryDefinition(_Definition):
    max_attempts: int = Field(default=3, ge=1)
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    initial_delay_ms: float = Field(default=1000, ge=0)

    def build(self) -> RetryStrategy:
        return RetryStrategy(
            max_attempts=self.max_attempts,
            backoff_multiplier=self.backoff_multiplier,
            initial_delay_ms=self.initial_delay_ms,
        )


class StepDefinition(_Definition):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    agent_id: Optional[str] = None
    task_type: str = Field(min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    required_capabilities: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    failure_strategy: FailureStrategy = FailureStrategy.FAIL_WORKFLOW
    retry_strategy: Optional[RetryDefinition] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    condition: Optional[Callable[..., Any]] = None
    on_success: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None

    def build(self) -> WorkflowStep:
        return WorkflowStep(
            id=self.id,
            name=self.name or self.id,
            description=self.description,
            agent_id=self.agent_id,
            task=TaskConfig(
                id=self.id,
                type=self.task_type,
                priority=self.priority,
                timeout=self.timeout,
                dependencies=list(self.dependencies),
                required_capabilities=list(self.required_capabilities),
                input=dict(self.input),
            ),
            dependencies=list(self.dependencies),
            failure_strategy=self.failure_strategy,
            retry_strategy=self.retry_strategy.build() if self.retry_strategy else None,
            timeout=self.timeout,
            condition=self.condition,
            on_success=self.on_success,
            on_error=self.on_error,
        )


class WorkflowDefinition(_Definition):
    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(min_length=1)
    version: str = "1.0.0"
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(min_length=1)
    initial_state: Dict[str, Any] = Field(default_factory=dict)
    concurrency: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    retry_strategy: Optional[RetryDefinition] = None


def build_workflow(definition: Union[WorkflowDefinition, Mapping[str, Any]]) -> Workflow:
    """Validate ``definition`` and turn it into a PENDING :class:`Workflow`."""
    if not isinstance(definition, WorkflowDefinition):
        try:
            definition = WorkflowDefinition.model_validate(dict(definition))
        except PydanticValidationError as exc:
            raise WorkflowValidationError(
                f"Invalid workflow definition: {exc.error_count()} error(s)",
                context={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc

    config = WorkflowConfig(
        id=definition.id,
        name=definition.name,
        version=definition.version,
        description=definition.description,
        steps=[step.build() for step in definition.steps],
        concurrency=definition.concurrency,
        timeout=definition.timeout,
        retry_strategy=definition.retry_strategy.build() if definition.retry_strategy else None,
    )
    validate_acyclic(config)
    return Workflow(config=config, metadata=WorkflowMetadata(state=dict(definition.initial_state)))
