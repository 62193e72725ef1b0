"""Typed payload models per message type.

Payloads travel as JSON-safe dicts. Handlers narrow them back into one of
the models below with :func:`decode_payload` instead of trusting raw data.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import MessageValidationError
from .models import AgentStatus, Message, MessageType, Task, TaskResult, TaskStatus, channel_name
from .workflow import StepStatus, WorkflowStatus

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class TaskAssignmentPayload(BaseModel):
    task: Task


class TaskResultPayload(BaseModel):
    task_id: str
    result: TaskResult
    attempt: Optional[int] = None
    agent_id: Optional[str] = None


class TaskStatusPayload(BaseModel):
    task_id: str
    status: TaskStatus
    progress: float = Field(default=0.0, ge=0.0, le=1.0)


class AgentStatusPayload(BaseModel):
    agent_id: str
    status: AgentStatus
    current_tasks: List[str] = Field(default_factory=list)
    completed_tasks: int = 0
    failed_tasks: int = 0
    last_heartbeat: Optional[datetime] = None


class WorkflowStatusPayload(BaseModel):
    workflow_id: str
    status: WorkflowStatus
    error: Optional[str] = None
    stalled: bool = False
    blocked_steps: List[str] = Field(default_factory=list)


class WorkflowStepPayload(BaseModel):
    workflow_id: str
    step_id: str
    status: StepStatus
    attempts: int = 0
    error: Optional[str] = None


class ErrorPayload(BaseModel):
    error: str
    code: str = "AGENT_FORGE_ERROR"
    context: Dict[str, Any] = Field(default_factory=dict)


class CommandPayload(BaseModel):
    command: str
    args: Dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    MessageType.TASK_ASSIGNMENT.value: TaskAssignmentPayload,
    MessageType.TASK_RESULT.value: TaskResultPayload,
    MessageType.TASK_STATUS_UPDATE.value: TaskStatusPayload,
    MessageType.AGENT_STATUS_UPDATE.value: AgentStatusPayload,
    MessageType.AGENT_HEARTBEAT.value: AgentStatusPayload,
    MessageType.WORKFLOW_STATUS_UPDATE.value: WorkflowStatusPayload,
    MessageType.WORKFLOW_STEP_UPDATE.value: WorkflowStepPayload,
    MessageType.ERROR.value: ErrorPayload,
    MessageType.COMMAND.value: CommandPayload,
}


def encode_payload(payload: BaseModel) -> Dict[str, Any]:
    return payload.model_dump(mode="json")


def decode_payload(message: Message, model: Optional[Type[PayloadT]] = None) -> PayloadT:
    """Validate ``message.payload`` against the model registered for its type."""
    model = model or PAYLOAD_MODELS.get(channel_name(message.type))  # type: ignore[assignment]
    if model is None:
        raise MessageValidationError(
            f"No payload model registered for message type {message.channel}",
            context={"message_id": message.id},
        )
    try:
        return model.model_validate(message.payload)
    except PydanticValidationError as exc:
        raise MessageValidationError(
            f"Invalid {message.channel} payload: {exc.error_count()} error(s)",
            context={"message_id": message.id, "errors": exc.errors(include_url=False)},
        ) from exc
