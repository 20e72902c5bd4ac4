# src/cairn/tasks/task_api.py

"""
High-level helpers used by the CLI, agent tools and the editing UI.

Each helper is a single TaskStore.update_all() call, so every rule (cycle checks,
the close gate, id uniqueness) is evaluated against the freshly reloaded list.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ..core.ports import TaskRepo
from ..errors import TaskNotClosableError, TaskNotFoundError, TaskValidationError
from ..graph.engine import add_dependency, can_close_task, remove_dependency, remove_task
from .task_models import (
    AcceptanceCriterion,
    DependencyType,
    Priority,
    Task,
    TaskStatus,
    TaskType,
    generate_id,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {"title", "description", "type", "priority", "assignee", "labels", "design", "notes"}
)


async def _update_one(
    store: TaskRepo, task_id: str, change: Callable[[Task, list[Task]], Task]
) -> Task:
    """Apply change() to one task inside update_all and return the persisted copy."""

    def _apply(tasks: list[Task]) -> list[Task]:
        for i, task in enumerate(tasks):
            if task.id == task_id:
                tasks[i] = change(task, tasks)
                return tasks
        raise TaskNotFoundError(task_id)

    persisted = await store.update_all(_apply)
    return next(t for t in persisted if t.id == task_id)


async def create_task(
    store: TaskRepo,
    title: str,
    *,
    description: str | None = None,
    type: TaskType | str | None = None,
    priority: Priority | str | None = None,
    parent_id: str | None = None,
    acceptance_criteria: list[str] | None = None,
) -> Task:
    """Create an open task (optionally as a subtask of parent_id) and return it."""
    try:
        task_type = None if type is None else TaskType(type)
        task_priority = None if priority is None else Priority(priority)
    except ValueError as exc:
        raise TaskValidationError(str(exc)) from None
    created: list[Task] = []

    def _apply(tasks: list[Task]) -> list[Task]:
        now = utc_now_iso()
        task = Task(
            id=generate_id(t.id for t in tasks),
            title=title,
            created_at=now,
            updated_at=now,
            status=TaskStatus.OPEN,
            description=description,
            type=task_type,
            priority=task_priority,
            acceptance_criteria=[AcceptanceCriterion(text=t) for t in acceptance_criteria or []],
        )
        created.append(task)
        tasks = [*tasks, task]
        if parent_id is not None:
            tasks = add_dependency(task.id, parent_id, DependencyType.PARENT_CHILD, tasks)
        return tasks

    persisted = await store.update_all(_apply)
    task = next(t for t in persisted if t.id == created[0].id)
    logger.info("Created task %s: %s", task.id, title)
    return task


async def upsert_task(store: TaskRepo, task: Task) -> Task:
    """Replace the task with the same id, or append it (whole-task edits from the UI)."""

    def _apply(tasks: list[Task]) -> list[Task]:
        for i, existing in enumerate(tasks):
            if existing.id == task.id:
                tasks[i] = task
                return tasks
        return [*tasks, task]

    persisted = await store.update_all(_apply)
    return next(t for t in persisted if t.id == task.id)


async def update_task(store: TaskRepo, task_id: str, **fields: Any) -> Task:
    """Edit metadata fields. Status changes go through set_status()."""
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise TaskValidationError(f"fields not editable here: {', '.join(sorted(unknown))}")

    def _change(task: Task, _tasks: list[Task]) -> Task:
        return replace(task, **fields, updated_at=utc_now_iso())

    return await _update_one(store, task_id, _change)


async def set_status(store: TaskRepo, task_id: str, status: TaskStatus | str) -> Task:
    """
    Move a task to status.

    Closing requires 100% completion (TaskNotClosableError otherwise) and sets
    closed_at; any other status clears it.
    """
    try:
        status = TaskStatus(status)
    except ValueError as exc:
        raise TaskValidationError(str(exc)) from None

    def _change(task: Task, tasks: list[Task]) -> Task:
        now = utc_now_iso()
        if status != TaskStatus.CLOSED:
            return replace(task, status=status, closed_at=None, updated_at=now)
        if task.status == TaskStatus.CLOSED:
            return task
        check = can_close_task(task.id, tasks)
        if not check.can_close:
            raise TaskNotClosableError(task.id, check)
        return replace(task, status=status, closed_at=now, updated_at=now)

    task = await _update_one(store, task_id, _change)
    logger.info("Task %s status -> %s", task_id, status)
    return task


async def link_tasks(
    store: TaskRepo, from_id: str, to_id: str, dep_type: DependencyType | str
) -> list[Task]:
    return await store.update_all(lambda tasks: add_dependency(from_id, to_id, dep_type, tasks))


async def unlink_tasks(
    store: TaskRepo, from_id: str, to_id: str, dep_type: DependencyType | str | None = None
) -> list[Task]:
    return await store.update_all(lambda tasks: remove_dependency(from_id, to_id, tasks, dep_type))


async def delete_task(store: TaskRepo, task_id: str) -> list[Task]:
    tasks = await store.update_all(lambda current: remove_task(task_id, current))
    logger.info("Deleted task %s", task_id)
    return tasks


# ---- acceptance criteria ----


def _at(criteria: list[AcceptanceCriterion], index: int) -> AcceptanceCriterion:
    if not 0 <= index < len(criteria):
        raise IndexError(f"acceptance criterion index {index} out of range (0..{len(criteria) - 1})")
    return criteria[index]


def _criteria_change(
    edit: Callable[[list[AcceptanceCriterion]], None],
) -> Callable[[Task, list[Task]], Task]:
    def _change(task: Task, _tasks: list[Task]) -> Task:
        criteria = [replace(c) for c in task.acceptance_criteria]
        edit(criteria)
        return replace(task, acceptance_criteria=criteria, updated_at=utc_now_iso())

    return _change


async def add_criterion(store: TaskRepo, task_id: str, text: str) -> Task:
    return await _update_one(
        store, task_id, _criteria_change(lambda cs: cs.append(AcceptanceCriterion(text=text)))
    )


async def update_criterion(store: TaskRepo, task_id: str, index: int, text: str) -> Task:
    def _edit(criteria: list[AcceptanceCriterion]) -> None:
        _at(criteria, index).text = text

    return await _update_one(store, task_id, _criteria_change(_edit))


async def remove_criterion(store: TaskRepo, task_id: str, index: int) -> Task:
    def _edit(criteria: list[AcceptanceCriterion]) -> None:
        _at(criteria, index)
        del criteria[index]

    return await _update_one(store, task_id, _criteria_change(_edit))


async def toggle_criterion(store: TaskRepo, task_id: str, index: int) -> Task:
    def _edit(criteria: list[AcceptanceCriterion]) -> None:
        crit = _at(criteria, index)
        crit.completed = not crit.completed

    return await _update_one(store, task_id, _criteria_change(_edit))
