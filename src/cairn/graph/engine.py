# src/cairn/graph/engine.py

"""
Dependency graph engine.

Pure functions over a flat task list. Nothing here performs I/O or mutates its
input: list transformations return new lists, and a task whose edges change is
replaced by a copy. Adjacency is rebuilt from ids on every call.

Edge direction:
- blocked_by:   A -> B means A cannot be ready/closed until B is closed
- parent-child: child -> parent
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace

from ..errors import CycleError, TaskNotFoundError
from ..tasks.task_models import Dependency, DependencyType, Task, TaskStatus, utc_now_iso

logger = logging.getLogger(__name__)

# Edge classes that must stay acyclic.
ACYCLIC_TYPES = frozenset({DependencyType.BLOCKED_BY, DependencyType.PARENT_CHILD})


@dataclass(slots=True)
class CloseCheck:
    can_close: bool
    completion_percentage: int
    reason: str | None = None
    open_subtasks: list[Task] = field(default_factory=list)


def build_index(tasks: Iterable[Task]) -> dict[str, Task]:
    return {t.id: t for t in tasks}


def _is_closed(task: Task | None) -> bool:
    return task is not None and task.status == TaskStatus.CLOSED


def _targets(task: Task, dep_type: DependencyType) -> list[str]:
    return [d.id for d in task.dependencies if d.type == dep_type]


def get_dependents(
    task_id: str, tasks: list[Task], dep_type: DependencyType | None = None
) -> list[Task]:
    """Tasks holding an edge that points at task_id (the computed inverse relation)."""
    return [
        t
        for t in tasks
        if any(d.id == task_id and (dep_type is None or d.type == dep_type) for d in t.dependencies)
    ]


def get_children(task_id: str, tasks: list[Task]) -> list[Task]:
    return get_dependents(task_id, tasks, DependencyType.PARENT_CHILD)


# ---- cycles ----


def _reaches(start_id: str, goal_id: str, dep_type: DependencyType, index: dict[str, Task]) -> bool:
    stack = [start_id]
    seen: set[str] = set()
    while stack:
        node = stack.pop()
        if node == goal_id:
            return True
        if node in seen:
            continue
        seen.add(node)
        task = index.get(node)
        if task is not None:
            stack.extend(_targets(task, dep_type))
    return False


def would_create_cycle(
    from_id: str, to_id: str, dep_type: DependencyType | str, tasks: list[Task]
) -> bool:
    """
    True if adding from_id -> to_id of dep_type would close a cycle.

    Only blocked_by and parent-child edges are checked; each is walked within its
    own class. Other types never create a cycle.
    """
    dep_type = DependencyType(dep_type)
    if dep_type not in ACYCLIC_TYPES:
        return False
    if from_id == to_id:
        return True
    return _reaches(to_id, from_id, dep_type, build_index(tasks))


# ---- edge edits ----


def add_dependency(
    from_id: str, to_id: str, dep_type: DependencyType | str, tasks: list[Task]
) -> list[Task]:
    """
    Return a new list with the edge from_id -> to_id appended to from_id's dependencies.

    Raises TaskNotFoundError if either end is unknown and CycleError if the edge
    would close a blocked_by or parent-child cycle. Adding an edge that already
    exists returns an equal list.
    """
    dep_type = DependencyType(dep_type)
    index = build_index(tasks)
    for tid in (from_id, to_id):
        if tid not in index:
            raise TaskNotFoundError(tid)

    if would_create_cycle(from_id, to_id, dep_type, tasks):
        raise CycleError(from_id, to_id, dep_type)

    source = index[from_id]
    if any(d.id == to_id and d.type == dep_type for d in source.dependencies):
        return list(tasks)

    updated = replace(
        source,
        dependencies=[*source.dependencies, Dependency(id=to_id, type=dep_type)],
        updated_at=utc_now_iso(),
    )
    logger.debug("Added %s dependency %s -> %s", dep_type, from_id, to_id)
    return [updated if t.id == from_id else t for t in tasks]


def remove_dependency(
    from_id: str,
    to_id: str,
    tasks: list[Task],
    dep_type: DependencyType | str | None = None,
) -> list[Task]:
    """Remove edges from_id -> to_id (only of dep_type, if given). No-op if absent."""
    wanted = None if dep_type is None else DependencyType(dep_type)

    def _matches(dep: Dependency) -> bool:
        return dep.id == to_id and (wanted is None or dep.type == wanted)

    out: list[Task] = []
    for task in tasks:
        if task.id == from_id and any(_matches(d) for d in task.dependencies):
            task = replace(
                task,
                dependencies=[d for d in task.dependencies if not _matches(d)],
                updated_at=utc_now_iso(),
            )
        out.append(task)
    return out


# ---- readiness ----


def is_blocked(task: Task, tasks: list[Task]) -> bool:
    """Not closed and at least one known blocked_by target is still open."""
    if task.status == TaskStatus.CLOSED:
        return False
    index = build_index(tasks)
    return any(
        dep_id in index and not _is_closed(index[dep_id])
        for dep_id in _targets(task, DependencyType.BLOCKED_BY)
    )


def get_ready_work(tasks: list[Task]) -> list[Task]:
    """Open tasks whose blocked_by targets are all closed. Unknown targets are ignored."""
    index = build_index(tasks)

    def _ready(task: Task) -> bool:
        return all(
            dep_id not in index or _is_closed(index[dep_id])
            for dep_id in _targets(task, DependencyType.BLOCKED_BY)
        )

    return [t for t in tasks if t.status == TaskStatus.OPEN and _ready(t)]


def get_blocked_tasks(tasks: list[Task]) -> list[Task]:
    index = build_index(tasks)
    return [
        t
        for t in tasks
        if t.status != TaskStatus.CLOSED
        and any(
            dep_id in index and not _is_closed(index[dep_id])
            for dep_id in _targets(t, DependencyType.BLOCKED_BY)
        )
    ]


# ---- completion ----


def _children_index(tasks: list[Task]) -> dict[str, list[Task]]:
    children: dict[str, list[Task]] = {}
    for t in tasks:
        for parent_id in _targets(t, DependencyType.PARENT_CHILD):
            children.setdefault(parent_id, []).append(t)
    return children


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _own_completion(task: Task) -> float:
    criteria = task.acceptance_criteria
    return 100.0 * sum(1 for c in criteria if c.completed) / len(criteria) if criteria else 0.0


def _completion(task: Task, children: dict[str, list[Task]], visited: frozenset[str]) -> int:
    if task.status == TaskStatus.CLOSED:
        return 100

    # Explicit stack of (task, remaining subtasks, child scores); on_path mirrors it.
    on_path = set(visited) | {task.id}
    stack: list[tuple[Task, Iterator[Task], list[int]]] = [
        (task, iter(children.get(task.id, [])), [])
    ]
    result = 0
    while stack:
        current, pending, scores = stack[-1]
        child = next(pending, None)
        if child is not None:
            if child.id in on_path:
                scores.append(0)
            elif child.status == TaskStatus.CLOSED:
                scores.append(100)
            elif child.id in children:
                on_path.add(child.id)
                stack.append((child, iter(children[child.id]), []))
            else:
                scores.append(_round_half_up(_own_completion(child)))
            continue

        stack.pop()
        own = _own_completion(current)
        if scores:
            pct = _round_half_up((own + sum(scores) / len(scores)) / 2)
        else:
            pct = _round_half_up(own)
        if stack:
            on_path.discard(current.id)
            stack[-1][2].append(pct)
        else:
            result = pct
    return result


def calculate_completion_percentage(
    task: Task, all_tasks: list[Task], visited: Iterable[str] | None = None
) -> int:
    """
    Completion of a task in 0..100.

    Closed -> 100. Otherwise own = share of completed acceptance criteria (0 if none).
    With subtasks: round((own + mean(child completion)) / 2); without: round(own).
    A child already on the current traversal path contributes 0.
    """
    return _completion(task, _children_index(all_tasks), frozenset(visited or ()))


def recompute_completion(tasks: list[Task]) -> list[Task]:
    """Copies of tasks with completion_percentage freshly derived."""
    children = _children_index(tasks)
    out: list[Task] = []
    for t in tasks:
        pct = _completion(t, children, frozenset())
        out.append(t if t.completion_percentage == pct else replace(t, completion_percentage=pct))
    return out


def can_close_task(task_id: str, tasks: list[Task]) -> CloseCheck:
    """Closing is allowed only at 100% completion."""
    index = build_index(tasks)
    task = index.get(task_id)
    if task is None:
        return CloseCheck(can_close=False, completion_percentage=0, reason=f"Task {task_id} not found")

    pct = calculate_completion_percentage(task, tasks)
    if pct == 100:
        return CloseCheck(can_close=True, completion_percentage=pct)

    open_subtasks = [c for c in get_children(task_id, tasks) if c.status != TaskStatus.CLOSED]
    reason = f"Task {task_id} is {pct}% complete; it must reach 100% before closing"
    if open_subtasks:
        reason += f" ({len(open_subtasks)} subtask(s) still open)"
    return CloseCheck(
        can_close=False,
        completion_percentage=pct,
        reason=reason,
        open_subtasks=open_subtasks,
    )


def remove_task(task_id: str, tasks: list[Task]) -> list[Task]:
    """
    Return a new list without task_id.

    Its subtasks move up to its own (first known) parent, or lose their
    parent-child edge if it had none. Every other edge pointing at task_id is dropped.
    """
    index = build_index(tasks)
    target = index.get(task_id)
    if target is None:
        raise TaskNotFoundError(task_id)

    new_parent = next(
        (pid for pid in _targets(target, DependencyType.PARENT_CHILD) if pid in index),
        None,
    )
    now = utc_now_iso()
    out: list[Task] = []
    for task in tasks:
        if task.id == task_id:
            continue
        if any(d.id == task_id for d in task.dependencies):
            deps: list[Dependency] = []
            for dep in task.dependencies:
                if dep.id != task_id:
                    deps.append(dep)
                    continue
                if dep.type != DependencyType.PARENT_CHILD or new_parent in (None, task.id):
                    continue
                moved = Dependency(id=new_parent, type=DependencyType.PARENT_CHILD)
                if moved not in deps and moved not in task.dependencies:
                    deps.append(moved)
            task = replace(task, dependencies=deps, updated_at=now)
        out.append(task)
    logger.debug("Removed task %s (subtasks re-parented to %s)", task_id, new_parent)
    return out
