# src/cairn/graph/analysis.py

"""
Epic/subtask queries and implementation-order analysis.

Built only on graph.engine; used for human-facing reports ("what do I do first?").
All traversals run on explicit stacks with visited sets, so cyclic data
yields a bounded answer and long chains stay within the recursion limit.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from ..tasks.task_models import DependencyType, Task, TaskStatus, priority_weight
from .engine import build_index, get_children


@dataclass(frozen=True, slots=True)
class EpicProgress:
    completed: int
    total: int
    percentage: int


@dataclass(slots=True)
class DependencyAnalysis:
    """Everything needed to render a dependency report for one task."""

    task_id: str
    cycles: list[list[str]] = field(default_factory=list)
    blocking_dependencies: list[str] = field(default_factory=list)
    blocking_dependents: list[str] = field(default_factory=list)
    parents: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    implementation_order: list[str] = field(default_factory=list)
    subtask_order: list[str] = field(default_factory=list)
    independent_subtasks: list[str] = field(default_factory=list)


# ---- epics ----


def get_epic_subtasks(epic_id: str, tasks: list[Task]) -> list[Task]:
    return get_children(epic_id, tasks)


def get_subtask_epic(subtask_id: str, tasks: list[Task]) -> Task | None:
    """The first parent of a subtask, or None if it has no (known) parent."""
    index = build_index(tasks)
    subtask = index.get(subtask_id)
    if subtask is None:
        return None
    for dep in subtask.dependencies:
        if dep.type == DependencyType.PARENT_CHILD:
            return index.get(dep.id)
    return None


def get_non_parented_tasks(tasks: list[Task]) -> list[Task]:
    """Tasks without any parent-child edge of their own (the top level of the tree)."""
    return [
        t for t in tasks if not any(d.type == DependencyType.PARENT_CHILD for d in t.dependencies)
    ]


def calculate_epic_progress(epic_id: str, tasks: list[Task]) -> EpicProgress:
    subtasks = get_epic_subtasks(epic_id, tasks)
    total = len(subtasks)
    completed = sum(1 for s in subtasks if s.status == TaskStatus.CLOSED)
    percentage = int(completed * 100 / total + 0.5) if total else 0
    return EpicProgress(completed=completed, total=total, percentage=percentage)


def should_close_epic(epic_id: str, tasks: list[Task]) -> bool:
    """True when the epic has subtasks and every one of them is closed."""
    subtasks = get_epic_subtasks(epic_id, tasks)
    return bool(subtasks) and all(s.status == TaskStatus.CLOSED for s in subtasks)


# ---- blocking graph ----


def blocking_graph(tasks: list[Task], subset: Iterable[str] | None = None) -> dict[str, list[str]]:
    """
    id -> ids it is blocked by.

    Only known ids appear; with subset, both ends of every edge must be in it.
    """
    index = build_index(tasks)
    allowed = set(index) if subset is None else set(subset) & set(index)
    graph: dict[str, list[str]] = {tid: [] for tid in index if tid in allowed}
    for tid in graph:
        for dep in index[tid].dependencies:
            if dep.type == DependencyType.BLOCKED_BY and dep.id in allowed:
                if dep.id not in graph[tid]:
                    graph[tid].append(dep.id)
    return graph


def _reverse(graph: dict[str, list[str]]) -> dict[str, list[str]]:
    rev: dict[str, list[str]] = {tid: [] for tid in graph}
    for tid, targets in graph.items():
        for target in targets:
            rev.setdefault(target, []).append(tid)
    return rev


def detect_cycles(tasks: list[Task]) -> list[list[str]]:
    """
    Every distinct cycle found by DFS over blocked_by edges.

    A cycle is reported as its id path with the first id repeated at the end,
    e.g. ["a", "b", "c", "a"]. Rotations of the same cycle are reported once.
    """
    graph = blocking_graph(tasks)
    cycles: list[list[str]] = []
    seen_keys: set[tuple[str, ...]] = set()
    visited: set[str] = set()

    for task in tasks:
        if task.id in visited or task.id not in graph:
            continue
        visited.add(task.id)
        path = [task.id]
        on_stack = {task.id}
        stack = [iter(graph[task.id])]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                on_stack.discard(path.pop())
            elif nxt in on_stack:
                cycle = path[path.index(nxt) :]
                pivot = cycle.index(min(cycle))
                key = tuple(cycle[pivot:] + cycle[:pivot])
                if key not in seen_keys:
                    seen_keys.add(key)
                    cycles.append([*cycle, nxt])
            elif nxt not in visited:
                visited.add(nxt)
                path.append(nxt)
                on_stack.add(nxt)
                stack.append(iter(graph.get(nxt, [])))
    return cycles


def topological_sort(subset_ids: Iterable[str], tasks: list[Task]) -> list[str]:
    """
    Order subset_ids so that every task comes after the tasks it is blocked by.

    Only edges with both ends in the subset count. Back edges (cycles) are skipped,
    so the result always contains each known id exactly once.
    """
    ids = list(dict.fromkeys(subset_ids))
    graph = blocking_graph(tasks, ids)
    order: list[str] = []
    done: set[str] = set()
    visiting: set[str] = set()

    for tid in ids:
        if tid not in graph or tid in done:
            continue
        visiting.add(tid)
        stack = [(tid, iter(graph[tid]))]
        while stack:
            node, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                stack.pop()
                visiting.discard(node)
                done.add(node)
                order.append(node)
            elif dep not in done and dep not in visiting:
                visiting.add(dep)
                stack.append((dep, iter(graph.get(dep, []))))
    return order


def priority_levels(subset_ids: Iterable[str], tasks: list[Task]) -> dict[str, int]:
    """
    Dependency level of each id: 0 with no blocking dependency in the subset,
    otherwise 1 + the highest level among its blockers. Memoized DFS; a blocker
    that is already on the traversal stack is ignored.
    """
    graph = blocking_graph(tasks, subset_ids)
    levels: dict[str, int] = {}
    on_stack: set[str] = set()

    for tid in graph:
        if tid in levels:
            continue
        on_stack.add(tid)
        # node, remaining blockers, highest blocker level seen so far
        stack: list[tuple[str, Iterator[str], list[int]]] = [(tid, iter(graph[tid]), [-1])]
        while stack:
            node, deps, best = stack[-1]
            dep = next(deps, None)
            if dep is None:
                stack.pop()
                on_stack.discard(node)
                levels[node] = best[0] + 1
                if stack:
                    parent_best = stack[-1][2]
                    parent_best[0] = max(parent_best[0], levels[node])
            elif dep in levels:
                best[0] = max(best[0], levels[dep])
            elif dep not in on_stack:
                on_stack.add(dep)
                stack.append((dep, iter(graph.get(dep, [])), [-1]))
    return levels


def implementation_order(subset_ids: Iterable[str], tasks: list[Task]) -> list[str]:
    """
    Group ids by dependency level (lowest first); inside a level, higher priority
    first (urgent=4, high=3, medium=2, low=1, unset=0). Ties keep topological order.
    """
    topo = topological_sort(subset_ids, tasks)
    levels = priority_levels(topo, tasks)
    index = build_index(tasks)
    position = {tid: i for i, tid in enumerate(topo)}
    return sorted(
        topo,
        key=lambda tid: (levels[tid], -priority_weight(index[tid].priority), position[tid]),
    )


def _transitive(start: str, graph: dict[str, list[str]]) -> list[str]:
    out: list[str] = []
    seen = {start}
    stack = list(reversed(graph.get(start, [])))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        out.append(node)
        stack.extend(reversed(graph.get(node, [])))
    return out


def analyze_dependencies(task_id: str, tasks: list[Task]) -> DependencyAnalysis | None:
    """Dependency report data for task_id, or None if the id is unknown."""
    index = build_index(tasks)
    target = index.get(task_id)
    if target is None:
        return None

    graph = blocking_graph(tasks)
    deps = _transitive(task_id, graph)
    dependents = _transitive(task_id, _reverse(graph))

    children = [c.id for c in get_children(task_id, tasks)]
    sibling_graph = blocking_graph(tasks, children)

    analysis = DependencyAnalysis(
        task_id=task_id,
        cycles=detect_cycles(tasks),
        blocking_dependencies=topological_sort(deps, tasks),
        blocking_dependents=topological_sort(dependents, tasks),
        parents=[
            d.id
            for d in target.dependencies
            if d.type == DependencyType.PARENT_CHILD and d.id in index
        ],
        children=children,
    )
    if deps or dependents:
        analysis.implementation_order = topological_sort([*deps, task_id, *dependents], tasks)
    if children:
        analysis.subtask_order = implementation_order(children, tasks)
        analysis.independent_subtasks = [c for c in children if not sibling_graph.get(c)]
    return analysis
