"""Dependency graph helpers for workflow steps."""
from __future__ import annotations

from typing import Dict, Iterable, List, Set

from agentforge.core.errors import WorkflowValidationError
from agentforge.core.workflow import Workflow, WorkflowConfig, WorkflowStep


def validate_acyclic(config: WorkflowConfig) -> None:
    """Reject duplicate ids, unknown dependencies and cycles."""
    steps: Dict[str, WorkflowStep] = {}
    for step in config.steps:
        if step.id in steps:
            raise WorkflowValidationError(
                f"Duplicate step id '{step.id}'",
                context={"workflow_id": config.id, "step_id": step.id},
            )
        steps[step.id] = step

    for step in config.steps:
        unknown = [dep for dep in step.dependencies if dep not in steps]
        if unknown:
            raise WorkflowValidationError(
                f"Step '{step.id}' depends on unknown step(s) {unknown}",
                context={"workflow_id": config.id, "step_id": step.id, "unknown": unknown},
            )

    # Kahn's algorithm: whatever never reaches in-degree zero sits on a cycle.
    in_degree = {step_id: len(set(step.dependencies)) for step_id, step in steps.items()}
    dependents: Dict[str, List[str]] = {step_id: [] for step_id in steps}
    for step in steps.values():
        for dep in set(step.dependencies):
            dependents[dep].append(step.id)
    queue = [step_id for step_id, degree in in_degree.items() if degree == 0]
    visited = 0
    while queue:
        current = queue.pop()
        visited += 1
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
    if visited != len(steps):
        cyclic = sorted(step_id for step_id, degree in in_degree.items() if degree > 0)
        raise WorkflowValidationError(
            f"Workflow '{config.id}' contains a dependency cycle through {cyclic}",
            context={"workflow_id": config.id, "steps": cyclic},
        )


def ready_steps(workflow: Workflow, pending: Iterable[str]) -> List[WorkflowStep]:
    """Steps with no outcome yet whose dependencies are all satisfied, in declaration order."""
    in_flight: Set[str] = set(pending)
    satisfied = workflow.completed_step_ids()
    recorded = workflow.metadata.step_results
    return [
        step
        for step in workflow.config.steps
        if step.id not in in_flight
        and step.id not in recorded
        and all(dep in satisfied for dep in step.dependencies)
    ]


def stranded_steps(workflow: Workflow, pending: Iterable[str]) -> List[str]:
    """Steps that can never become ready because a dependency ended without satisfying it."""
    in_flight: Set[str] = set(pending)
    recorded = workflow.metadata.step_results
    return [
        step.id
        for step in workflow.config.steps
        if step.id not in in_flight and step.id not in recorded
    ]
