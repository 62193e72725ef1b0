"""Exception hierarchy shared by agents, the broker, the state store and the orchestrator."""
from __future__ import annotations

from typing import Any, Dict, Optional


class AgentForgeError(Exception):
    """Base error carrying a stable code and optional structured context."""

    code = "AGENT_FORGE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "context": self.context}


class ValidationError(AgentForgeError):
    """Malformed input rejected before any state was touched."""

    code = "VALIDATION_ERROR"


class MessageValidationError(ValidationError):
    pass


class WorkflowValidationError(ValidationError):
    pass


class ConfigurationError(AgentForgeError):
    code = "CONFIGURATION_ERROR"


class AgentLifecycleError(AgentForgeError):
    """Raised when a lifecycle call is illegal in the agent's current state."""

    code = "INVALID_LIFECYCLE_TRANSITION"


class AgentNotFoundError(AgentForgeError):
    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Agent not found: {agent_id}", context=context)
        self.agent_id = agent_id


class AgentUnavailableError(AgentForgeError):
    """No registered agent can take a task (unknown agent or missing capability)."""

    code = "AGENT_UNAVAILABLE"


class TaskExecutionError(AgentForgeError):
    code = "TASK_EXECUTION_ERROR"


class TaskTimeoutError(AgentForgeError):
    code = "TASK_TIMEOUT"

    def __init__(self, task_id: str, timeout_ms: float, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Task {task_id} timed out after {timeout_ms:g}ms", context=context)
        self.task_id = task_id
        self.timeout_ms = timeout_ms


class CommunicationError(AgentForgeError):
    code = "COMMUNICATION_ERROR"


class MessageRoutingError(CommunicationError):
    """One or more local handlers failed while a message was being routed."""


class StateStoreError(AgentForgeError):
    code = "STATE_STORE_ERROR"


class TransactionError(StateStoreError):
    pass


class WorkflowNotFoundError(AgentForgeError):
    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}", context={"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class WorkflowAlreadyRunningError(AgentForgeError):
    code = "WORKFLOW_ALREADY_RUNNING"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} is already running", context={"workflow_id": workflow_id})
        self.workflow_id = workflow_id
