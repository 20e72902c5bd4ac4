# src/cairn/errors.py

"""Exceptions raised by the task store and the dependency graph."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .graph.engine import CloseCheck


class CairnError(Exception):
    """Base exception for cairn errors."""

    pass


class TaskParseError(CairnError):
    """
    A single line of the tasks file could not be turned into a Task.

    Never raised out of TaskStore.load(); collected as a diagnostic instead.
    """

    def __init__(self, line_number: int, raw: str, message: str) -> None:
        super().__init__(f"line {line_number}: {message}")
        self.line_number = line_number
        self.raw = raw
        self.message = message


class TaskValidationError(CairnError, ValueError):
    """A task or dependency does not satisfy the record schema."""

    pass


class LockTimeoutError(CairnError, TimeoutError):
    """The tasks lock file could not be acquired within the retry budget."""

    pass


class CycleError(CairnError, ValueError):
    """Adding a dependency would close a cycle."""

    def __init__(self, from_id: str, to_id: str, dep_type: Any) -> None:
        super().__init__(
            f"Adding {dep_type} dependency {from_id} -> {to_id} would create a cycle"
        )
        self.from_id = from_id
        self.to_id = to_id
        self.dep_type = dep_type


class MigrationError(CairnError):
    """Migrated records could not be written back to disk."""

    pass


class TaskNotFoundError(CairnError, KeyError):
    """An operation referenced a task id that is not in the record set."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class TaskNotClosableError(CairnError):
    """Closing a task was refused because it is not complete."""

    def __init__(self, task_id: str, check: CloseCheck) -> None:
        super().__init__(check.reason or f"Task {task_id} cannot be closed")
        self.task_id = task_id
        self.check = check
