"""cairn: a task store + dependency graph for human/agent collaborative work."""

from .errors import (
    CairnError,
    CycleError,
    LockTimeoutError,
    MigrationError,
    TaskNotClosableError,
    TaskNotFoundError,
    TaskParseError,
    TaskValidationError,
)
from .tasks.task_models import (
    AcceptanceCriterion,
    Comment,
    Dependency,
    DependencyType,
    Priority,
    Task,
    TaskStatus,
    TaskType,
)
from .tasks.task_store import LoadResult, TaskStore

__all__ = [
    "AcceptanceCriterion",
    "CairnError",
    "Comment",
    "CycleError",
    "Dependency",
    "DependencyType",
    "LoadResult",
    "LockTimeoutError",
    "MigrationError",
    "Priority",
    "Task",
    "TaskNotClosableError",
    "TaskNotFoundError",
    "TaskParseError",
    "TaskStatus",
    "TaskStore",
    "TaskType",
    "TaskValidationError",
]
