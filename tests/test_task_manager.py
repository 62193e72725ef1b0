"""Tests for the per-agent task registry."""
from __future__ import annotations

from agentforge.core.models import Task, TaskPriority, TaskResult, TaskStatus
from agentforge.core.task_manager import TaskManager


def test_add_get_remove() -> None:
    manager = TaskManager()
    task = Task.create("summarize", task_id="t-1")

    manager.add_task(task)
    assert "t-1" in manager
    assert len(manager) == 1
    assert manager.get_task("t-1") is task

    manager.remove_task("t-1")
    assert manager.get_task("t-1") is None
    assert len(manager) == 0
    # Removing twice is harmless
    manager.remove_task("t-1")


def test_snapshots_are_copies() -> None:
    manager = TaskManager()
    manager.add_task(Task.create("a", task_id="a"))

    all_tasks = manager.get_all_tasks()
    current = manager.get_current_tasks()
    all_tasks.clear()
    current.clear()

    assert len(manager) == 1


def test_status_and_result_updates_ignore_unknown_ids() -> None:
    manager = TaskManager()
    task = Task.create("a", task_id="a")
    manager.add_task(task)

    manager.update_task_status("a", TaskStatus.IN_PROGRESS)
    manager.set_task_result("a", TaskResult(success=True, data=1))
    manager.update_task_status("missing", TaskStatus.FAILED)
    manager.set_task_result("missing", TaskResult(success=False))

    assert task.metadata.status is TaskStatus.IN_PROGRESS
    assert task.result == TaskResult(success=True, data=1)


def test_task_create_defaults() -> None:
    task = Task.create("fetch", priority=TaskPriority.HIGH, timeout=500)

    assert task.id
    assert task.config.type == "fetch"
    assert task.metadata.status is TaskStatus.PENDING
    assert task.metadata.attempts == 0
    assert task.config.priority is TaskPriority.HIGH
    assert task.config.timeout == 500
