# src/cairn/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) at the edge of the core.

Helpers depend on these Protocols instead of TaskStore directly, which keeps the
store swappable and lets tests drive the helpers with an in-memory fake.
"""

from typing import TYPE_CHECKING, Any, Callable, Protocol

if TYPE_CHECKING:
    from ..tasks.task_models import Comment, Task
    from ..tasks.task_store import LoadResult


class TaskRepo(Protocol):
    async def load(self) -> list[Task]: ...
    async def load_with_diagnostics(self) -> LoadResult: ...
    async def save(self, task: Task) -> None: ...
    async def update_all(self, updater: Callable[[list[Task]], list[Task]]) -> list[Task]: ...
    async def add_comment(self, task_id: str, author: str, content: str) -> Comment: ...


class TaskCompactor(Protocol):
    """
    External compaction policy: may strip heavy fields from old closed tasks.

    Its output is handed to TaskRepo.update_all() and validated like any other list.
    """

    def compact(self, tasks: list[Task]) -> list[Task]: ...


def compact_with(compactor: TaskCompactor) -> Callable[[list[Task]], list[Task]]:
    """Adapt a compactor into an update_all() updater."""

    def _apply(tasks: list[Any]) -> list[Any]:
        return compactor.compact(tasks)

    return _apply
