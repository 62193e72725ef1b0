"""Per-agent registry of in-flight tasks."""
from __future__ import annotations

from typing import Dict, List, Optional

from .models import Task, TaskResult, TaskStatus


class TaskManager:
    """Plain bookkeeping map. One instance per agent, so no locking is needed."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}

    def add_task(self, task: Task) -> None:
        self._tasks[task.config.id] = task

    def remove_task(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_all_tasks(self) -> Dict[str, Task]:
        return dict(self._tasks)

    def get_current_tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            task.metadata.status = status

    def set_task_result(self, task_id: str, result: TaskResult) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            task.result = result

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks
