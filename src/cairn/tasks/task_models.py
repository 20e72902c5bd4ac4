# src/cairn/tasks/task_models.py

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from ..errors import TaskValidationError


class TaskStatus(StrEnum):
    """
    Stored task status.

    Notes:
    - "blocked" is a display state derived from blocked_by edges; it is never stored.
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TaskType(StrEnum):
    EPIC = "epic"
    FEATURE = "feature"
    TASK = "task"
    BUG = "bug"
    CHORE = "chore"
    DOCS = "docs"
    REFACTOR = "refactor"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DependencyType(StrEnum):
    BLOCKED_BY = "blocked_by"
    PARENT_CHILD = "parent-child"
    RELATED = "related"
    DISCOVERED_FROM = "discovered-from"


PRIORITY_WEIGHTS: dict[str, int] = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

# Keys handled explicitly by Task.from_dict / Task.to_dict. Anything else is kept in Task.extra.
_KNOWN_KEYS = frozenset(
    {
        "id",
        "title",
        "description",
        "type",
        "status",
        "priority",
        "assignee",
        "labels",
        "design",
        "notes",
        "created_at",
        "updated_at",
        "closed_at",
        "dependencies",
        "acceptance_criteria",
        "comments",
        "completion_percentage",
    }
)


def priority_weight(priority: str | None) -> int:
    """Sort weight of a priority: urgent=4 ... low=1, unset or unknown=0."""
    if not priority:
        return 0
    return PRIORITY_WEIGHTS.get(priority, 0)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with milliseconds and a trailing Z."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_id(existing_ids: Iterable[str], prefix: str = "s-") -> str:
    """Return a new id that does not collide with any of existing_ids."""
    taken = set(existing_ids)
    while True:
        candidate = prefix + uuid.uuid4().hex[:8]
        if candidate not in taken:
            return candidate


@dataclass(frozen=True, slots=True)
class Dependency:
    """Directed edge stored on its origin task; `id` is the target task id."""

    id: str
    type: DependencyType

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "type": str(self.type)}

    @classmethod
    def from_dict(cls, data: Any) -> Dependency:
        if not isinstance(data, Mapping):
            raise TaskValidationError(f"dependency must be an object, got {type(data).__name__}")
        dep_id = data.get("id")
        if not isinstance(dep_id, str) or not dep_id:
            raise TaskValidationError("dependency id must be a non-empty string")
        return cls(id=dep_id, type=_enum(DependencyType, data.get("type"), "dependency type"))


@dataclass(slots=True)
class AcceptanceCriterion:
    text: str
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "completed": self.completed}

    @classmethod
    def from_dict(cls, data: Any) -> AcceptanceCriterion:
        if not isinstance(data, Mapping):
            raise TaskValidationError("acceptance criterion must be an object")
        text = data.get("text")
        if not isinstance(text, str):
            raise TaskValidationError("acceptance criterion text must be a string")
        completed = data.get("completed", False)
        if not isinstance(completed, bool):
            raise TaskValidationError("acceptance criterion completed must be a boolean")
        return cls(text=text, completed=completed)


@dataclass(slots=True)
class Comment:
    id: str
    author: str
    content: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "author": self.author,
            "content": self.content,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Comment:
        if not isinstance(data, Mapping):
            raise TaskValidationError("comment must be an object")
        values = {}
        for key in ("id", "author", "content", "created_at"):
            val = data.get(key)
            if not isinstance(val, str):
                raise TaskValidationError(f"comment {key} must be a string")
            values[key] = val
        return cls(**values)


@dataclass(slots=True)
class Task:
    id: str
    title: str
    created_at: str
    updated_at: str
    status: TaskStatus = TaskStatus.OPEN

    description: str | None = None
    type: TaskType | None = None
    priority: Priority | None = None
    closed_at: str | None = None

    assignee: str | None = None
    labels: list[str] = field(default_factory=list)
    design: str | None = None
    notes: str | None = None

    dependencies: list[Dependency] = field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)

    # Derived; recomputed by the store on every load and write.
    completion_percentage: int = 0

    # Unknown keys found on disk, written back unchanged.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "title": self.title,
                "status": str(self.status),
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        optional = {
            "description": self.description,
            "type": None if self.type is None else str(self.type),
            "priority": None if self.priority is None else str(self.priority),
            "closed_at": self.closed_at,
            "assignee": self.assignee,
            "design": self.design,
            "notes": self.notes,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        if self.labels:
            out["labels"] = list(self.labels)
        out["dependencies"] = [d.to_dict() for d in self.dependencies]
        out["acceptance_criteria"] = [c.to_dict() for c in self.acceptance_criteria]
        out["comments"] = [c.to_dict() for c in self.comments]
        out["completion_percentage"] = self.completion_percentage
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        """Build a Task from a decoded record. Raises TaskValidationError on schema violations."""
        if not isinstance(data, Mapping):
            raise TaskValidationError(f"record must be a JSON object, got {type(data).__name__}")

        for key in ("id", "title", "created_at", "updated_at"):
            if not isinstance(data.get(key), str):
                raise TaskValidationError(f"field {key!r} is required and must be a string")

        def _list(key: str) -> list[Any]:
            raw = data.get(key)
            if raw is None:
                return []
            if not isinstance(raw, list):
                raise TaskValidationError(f"field {key!r} must be a list")
            return raw

        raw_type = data.get("type")
        raw_priority = data.get("priority")
        pct = data.get("completion_percentage", 0)

        task = cls(
            id=data["id"],
            title=data["title"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            status=_enum(TaskStatus, data.get("status"), "status"),
            description=data.get("description"),
            type=None if raw_type is None else _enum(TaskType, raw_type, "type"),
            priority=None if raw_priority is None else _enum(Priority, raw_priority, "priority"),
            closed_at=data.get("closed_at"),
            assignee=data.get("assignee"),
            labels=list(_list("labels")),
            design=data.get("design"),
            notes=data.get("notes"),
            dependencies=[Dependency.from_dict(d) for d in _list("dependencies")],
            acceptance_criteria=[
                AcceptanceCriterion.from_dict(c) for c in _list("acceptance_criteria")
            ],
            comments=[Comment.from_dict(c) for c in _list("comments")],
            completion_percentage=pct if isinstance(pct, int) and not isinstance(pct, bool) else 0,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )
        validate_task(task)
        return task


def _enum(enum_cls: type[StrEnum], raw: Any, what: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise TaskValidationError(f"invalid {what} {raw!r} (expected one of: {allowed})") from None


def _check_timestamp(value: Any, what: str, *, optional: bool = False) -> None:
    if value is None and optional:
        return
    if not isinstance(value, str) or not value:
        raise TaskValidationError(f"{what} must be a non-empty ISO-8601 string")
    try:
        datetime.fromisoformat(value)
    except ValueError:
        raise TaskValidationError(f"{what} is not an ISO-8601 timestamp: {value!r}") from None


def validate_task(task: Any) -> None:
    """
    Check a Task against the record schema.

    Callers (update_all updaters, the editing UI) may hand us tasks built by hand,
    so enum fields are checked by value rather than trusted by type.
    """
    if not isinstance(task, Task):
        raise TaskValidationError(f"expected a Task, got {type(task).__name__}")
    if not isinstance(task.id, str) or not task.id.strip():
        raise TaskValidationError("task id must be a non-empty string")

    where = f"task {task.id}"
    if not isinstance(task.title, str) or not task.title.strip():
        raise TaskValidationError(f"{where}: title must be a non-empty string")
    _enum(TaskStatus, task.status, f"{where} status")
    if task.type is not None:
        _enum(TaskType, task.type, f"{where} type")
    if task.priority is not None:
        _enum(Priority, task.priority, f"{where} priority")

    _check_timestamp(task.created_at, f"{where}: created_at")
    _check_timestamp(task.updated_at, f"{where}: updated_at")
    _check_timestamp(task.closed_at, f"{where}: closed_at", optional=True)

    for name in ("description", "assignee", "design", "notes"):
        val = getattr(task, name)
        if val is not None and not isinstance(val, str):
            raise TaskValidationError(f"{where}: {name} must be a string")
    if not isinstance(task.labels, list) or not all(isinstance(x, str) for x in task.labels):
        raise TaskValidationError(f"{where}: labels must be a list of strings")

    for dep in task.dependencies:
        if not isinstance(dep, Dependency):
            raise TaskValidationError(f"{where}: dependencies must be Dependency objects")
        if not isinstance(dep.id, str) or not dep.id:
            raise TaskValidationError(f"{where}: dependency id must be a non-empty string")
        if dep.id == task.id:
            raise TaskValidationError(f"{where}: a task cannot depend on itself")
        _enum(DependencyType, dep.type, f"{where} dependency type")

    for crit in task.acceptance_criteria:
        if not isinstance(crit, AcceptanceCriterion):
            raise TaskValidationError(f"{where}: acceptance criteria must be AcceptanceCriterion objects")
        if not isinstance(crit.text, str) or not isinstance(crit.completed, bool):
            raise TaskValidationError(f"{where}: malformed acceptance criterion")

    for comment in task.comments:
        if not isinstance(comment, Comment):
            raise TaskValidationError(f"{where}: comments must be Comment objects")
        if not all(
            isinstance(v, str)
            for v in (comment.id, comment.author, comment.content, comment.created_at)
        ):
            raise TaskValidationError(f"{where}: malformed comment")

    if not isinstance(task.extra, dict):
        raise TaskValidationError(f"{where}: extra must be a dict")
