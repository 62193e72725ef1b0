"""Workflow API routes: submit a definition, inspect it, steer it."""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel

from agentforge.api.routes import get_runtime, http_error
from agentforge.core.errors import AgentForgeError
from agentforge.core.workflow import Workflow, WorkflowStepResult
from agentforge.orchestration.definitions import build_workflow
from agentforge.runtime import Runtime

router = APIRouter(prefix="/workflows", tags=["workflows"])


class StepResultResponse(BaseModel):
    step_id: str
    status: str
    attempts: int
    start_time: datetime
    end_time: Optional[datetime] = None
    success: Optional[bool] = None
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: WorkflowStepResult) -> "StepResultResponse":
        return cls(
            step_id=result.step_id,
            status=result.status.value,
            attempts=result.attempts,
            start_time=result.start_time,
            end_time=result.end_time,
            success=result.result.success if result.result else None,
            data=result.result.data if result.result else None,
            error=result.error,
        )


class WorkflowResponse(BaseModel):
    workflow_id: str
    name: str
    status: str
    current_step: Optional[str] = None
    error: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    state: Dict[str, Any]
    steps: Dict[str, StepResultResponse]

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowResponse":
        metadata = workflow.metadata
        return cls(
            workflow_id=workflow.id,
            name=workflow.config.name,
            status=metadata.status.value,
            current_step=metadata.current_step,
            error=metadata.error,
            start_time=metadata.start_time,
            end_time=metadata.end_time,
            state=dict(metadata.state),
            steps={step_id: StepResultResponse.from_result(result) for step_id, result in metadata.step_results.items()},
        )


@router.post("", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def submit_workflow(
    definition: Dict[str, Any] = Body(...),
    wait: bool = Query(False, description="Block until the workflow reaches a terminal status"),
    timeout: Optional[float] = Query(None, gt=0, description="Seconds to wait when wait=true"),
    runtime: Runtime = Depends(get_runtime),
) -> WorkflowResponse:
    orchestrator = runtime.orchestrator
    try:
        workflow_id = await orchestrator.execute(build_workflow(definition))
        if wait:
            try:
                workflow = await orchestrator.wait_for_completion(workflow_id, timeout=timeout)
            except asyncio.TimeoutError:
                workflow = await orchestrator.get_workflow(workflow_id)
        else:
            workflow = await orchestrator.get_workflow(workflow_id)
    except AgentForgeError as exc:
        raise http_error(exc) from exc
    return WorkflowResponse.from_workflow(workflow)


@router.get("", response_model=List[WorkflowResponse])
async def list_workflows(runtime: Runtime = Depends(get_runtime)) -> List[WorkflowResponse]:
    orchestrator = runtime.orchestrator
    return [
        WorkflowResponse.from_workflow(await orchestrator.get_workflow(workflow_id))
        for workflow_id in await orchestrator.list_workflows()
    ]


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowResponse:
    try:
        workflow = await runtime.orchestrator.get_workflow(workflow_id)
    except AgentForgeError as exc:
        raise http_error(exc) from exc
    return WorkflowResponse.from_workflow(workflow)


@router.get("/{workflow_id}/steps", response_model=Dict[str, StepResultResponse])
async def get_step_results(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, StepResultResponse]:
    try:
        results = await runtime.orchestrator.get_step_results(workflow_id)
    except AgentForgeError as exc:
        raise http_error(exc) from exc
    return {step_id: StepResultResponse.from_result(result) for step_id, result in results.items()}


async def _steer(runtime: Runtime, workflow_id: str, action: str) -> WorkflowResponse:
    orchestrator = runtime.orchestrator
    try:
        await getattr(orchestrator, action)(workflow_id)
        workflow = await orchestrator.get_workflow(workflow_id)
    except AgentForgeError as exc:
        raise http_error(exc) from exc
    return WorkflowResponse.from_workflow(workflow)


@router.post("/{workflow_id}/pause", response_model=WorkflowResponse)
async def pause_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowResponse:
    return await _steer(runtime, workflow_id, "pause")


@router.post("/{workflow_id}/resume", response_model=WorkflowResponse)
async def resume_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowResponse:
    return await _steer(runtime, workflow_id, "resume")


@router.post("/{workflow_id}/cancel", response_model=WorkflowResponse)
async def cancel_workflow(workflow_id: str, runtime: Runtime = Depends(get_runtime)) -> WorkflowResponse:
    return await _steer(runtime, workflow_id, "cancel")
