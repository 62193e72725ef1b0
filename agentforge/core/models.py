"""Core data models shared across agents, the broker and the state store."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AgentStatus(str, Enum):
    """Lifecycle states of an agent."""

    INITIALIZING = "INITIALIZING"
    IDLE = "IDLE"
    BUSY = "BUSY"
    PAUSED = "PAUSED"
    ERROR = "ERROR"
    TERMINATED = "TERMINATED"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class MessageType(str, Enum):
    """Message types understood by the core. Agents may add plain-string types."""

    TASK_ASSIGNMENT = "TASK_ASSIGNMENT"
    TASK_STATUS_UPDATE = "TASK_STATUS_UPDATE"
    TASK_RESULT = "TASK_RESULT"
    AGENT_STATUS_UPDATE = "AGENT_STATUS_UPDATE"
    AGENT_HEARTBEAT = "AGENT_HEARTBEAT"
    WORKFLOW_STATUS_UPDATE = "WORKFLOW_STATUS_UPDATE"
    WORKFLOW_STEP_UPDATE = "WORKFLOW_STEP_UPDATE"
    ERROR = "ERROR"
    COMMAND = "COMMAND"


def coerce_message_type(value: Union[MessageType, str]) -> Union[MessageType, str]:
    """Map a raw string onto the closed set when it names a known type."""
    if isinstance(value, MessageType):
        return value
    try:
        return MessageType(value)
    except ValueError:
        return value


def channel_name(message_type: Union[MessageType, str]) -> str:
    return message_type.value if isinstance(message_type, MessageType) else str(message_type)


class EntityType(str, Enum):
    AGENT = "AGENT"
    TASK = "TASK"
    WORKFLOW = "WORKFLOW"


class StateEventType(str, Enum):
    AGENT_STATE_CHANGED = "AGENT_STATE_CHANGED"
    TASK_STATE_CHANGED = "TASK_STATE_CHANGED"
    WORKFLOW_STATE_CHANGED = "WORKFLOW_STATE_CHANGED"
    STATE_SYNC_REQUESTED = "STATE_SYNC_REQUESTED"
    STATE_SYNC_COMPLETED = "STATE_SYNC_COMPLETED"


@dataclass(slots=True)
class AgentConfig:
    """Identity and limits of an agent."""

    name: str = ""
    id: str = field(default_factory=new_id)
    type: str = "base"
    capabilities: List[str] = field(default_factory=list)
    max_concurrent_tasks: int = 1
    retry_attempts: int = 3

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"agent-{self.id}"


@dataclass(slots=True)
class AgentMetadata:
    """Runtime bookkeeping for an agent."""

    status: AgentStatus = AgentStatus.INITIALIZING
    start_time: datetime = field(default_factory=utcnow)
    last_heartbeat: datetime = field(default_factory=utcnow)
    current_tasks: List[str] = field(default_factory=list)
    completed_tasks: int = 0
    failed_tasks: int = 0


@dataclass(slots=True)
class AgentState:
    config: AgentConfig
    metadata: AgentMetadata


@dataclass(frozen=True, slots=True)
class TaskConfig:
    """Immutable description of a unit of work. Timeouts are in milliseconds."""

    id: str
    type: str
    priority: TaskPriority = TaskPriority.MEDIUM
    retry_attempts: int = 3
    timeout: Optional[float] = None
    dependencies: List[str] = field(default_factory=list)
    required_capabilities: List[str] = field(default_factory=list)
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskMetadata:
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    error: Optional[str] = None
    progress: float = 0.0


@dataclass(slots=True)
class TaskResult:
    success: bool
    data: Any = None
    error: Optional[str] = None


@dataclass(slots=True)
class Task:
    config: TaskConfig
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    result: Optional[TaskResult] = None

    @property
    def id(self) -> str:
        return self.config.id

    @classmethod
    def create(cls, task_type: str, *, task_id: Optional[str] = None, **config: Any) -> "Task":
        """Build a PENDING task, generating an id when none is given."""
        return cls(config=TaskConfig(id=task_id or new_id(), type=task_type, **config))


@dataclass(frozen=True, slots=True)
class Message:
    """Envelope exchanged over the broker. Never mutated after publish."""

    type: Union[MessageType, str]
    sender: str
    payload: Dict[str, Any] = field(default_factory=dict)
    recipient: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    priority: int = 0
    ttl: Optional[float] = None
    signature: Optional[str] = None

    @property
    def channel(self) -> str:
        return channel_name(self.type)

    @property
    def is_broadcast(self) -> bool:
        return self.recipient is None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.ttl is None:
            return False
        age_ms = ((now or utcnow()) - self.timestamp).total_seconds() * 1000
        return age_ms > self.ttl


@dataclass(slots=True)
class StateEvent:
    """Change notification emitted by the state store on every mutation."""

    type: StateEventType
    entity_id: str
    entity_type: EntityType
    current_state: Any
    previous_state: Any = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Optional[Dict[str, Any]] = None
