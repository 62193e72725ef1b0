"""HTTP API exposing agent provisioning."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from agentforge.core.errors import (
    AgentForgeError,
    AgentLifecycleError,
    AgentNotFoundError,
    ConfigurationError,
    ValidationError,
    WorkflowAlreadyRunningError,
    WorkflowNotFoundError,
)
from agentforge.core.models import AgentConfig, AgentState
from agentforge.runtime import Runtime

router = APIRouter(prefix="/agents", tags=["agents"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def http_error(exc: AgentForgeError) -> HTTPException:
    if isinstance(exc, (WorkflowNotFoundError, AgentNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (WorkflowAlreadyRunningError, AgentLifecycleError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (ValidationError, ConfigurationError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=exc.to_dict())


class AgentCreateRequest(BaseModel):
    name: str = Field(..., description="Logical agent name")
    role: str = Field("echo", description="Catalog role to instantiate")
    id: Optional[str] = Field(None, description="Explicit agent id; generated when omitted")
    capabilities: List[str] = Field(default_factory=list)
    max_concurrent_tasks: int = Field(1, ge=1)


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    type: str
    status: str
    capabilities: List[str]
    current_tasks: List[str]
    completed_tasks: int
    failed_tasks: int
    last_heartbeat: datetime

    @classmethod
    def from_state(cls, state: AgentState) -> "AgentResponse":
        return cls(
            agent_id=state.config.id,
            name=state.config.name,
            type=state.config.type,
            status=state.metadata.status.value,
            capabilities=list(state.config.capabilities),
            current_tasks=list(state.metadata.current_tasks),
            completed_tasks=state.metadata.completed_tasks,
            failed_tasks=state.metadata.failed_tasks,
            last_heartbeat=state.metadata.last_heartbeat,
        )


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(request: AgentCreateRequest, runtime: Runtime = Depends(get_runtime)) -> AgentResponse:
    config = AgentConfig(
        name=request.name,
        type=request.role,
        capabilities=request.capabilities,
        max_concurrent_tasks=request.max_concurrent_tasks,
    )
    if request.id:
        config.id = request.id
    try:
        state = await runtime.supervisor.spawn_agent(config, request.role)
    except AgentForgeError as exc:
        raise http_error(exc) from exc
    return AgentResponse.from_state(state)


@router.get("", response_model=List[AgentResponse])
async def list_agents(runtime: Runtime = Depends(get_runtime)) -> List[AgentResponse]:
    return [AgentResponse.from_state(state) for state in runtime.supervisor.list_agents()]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, runtime: Runtime = Depends(get_runtime)) -> AgentResponse:
    agent = runtime.supervisor.get_agent(agent_id)
    if agent is None:
        raise http_error(AgentNotFoundError(agent_id))
    return AgentResponse.from_state(agent.get_state())


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(agent_id: str, runtime: Runtime = Depends(get_runtime)) -> None:
    try:
        await runtime.supervisor.terminate_agent(agent_id)
    except AgentForgeError as exc:
        raise http_error(exc) from exc
