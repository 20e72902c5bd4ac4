# src/cairn/tasks/task_migration.py

"""
Forward migration of stored task records.

Two passes, both safe to run on already-canonical data (they report "unchanged"):
- migrate_record(): per-record fixes applied to the decoded JSON object before
  it is turned into a Task (legacy status, legacy dependency types, legacy
  string acceptance criteria).
- dedupe_mutual_blocks(): set-level fix that needs every task at once.

Any record touched by a migration gets a fresh updated_at.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from .task_models import DependencyType, Task, TaskStatus, utc_now_iso

logger = logging.getLogger(__name__)

LEGACY_STATUS_MAP: dict[str, str] = {
    "blocked": TaskStatus.OPEN,
}

LEGACY_DEPENDENCY_TYPE_MAP: dict[str, str] = {
    "blocks": DependencyType.BLOCKED_BY,
}

_CANONICAL_DEPENDENCY_TYPES = frozenset(t.value for t in DependencyType)


def migrate_record(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """
    Return (record, changed). The input dict is never modified.

    Malformed structures (non-list dependencies, non-object dependency entries)
    are left alone so that schema validation reports them.
    """
    rec = dict(raw)
    changed = False

    status = rec.get("status")
    if isinstance(status, str) and status in LEGACY_STATUS_MAP:
        rec["status"] = str(LEGACY_STATUS_MAP[status])
        changed = True

    criteria = rec.get("acceptance_criteria")
    if isinstance(criteria, list) and any(isinstance(c, str) for c in criteria):
        rec["acceptance_criteria"] = [
            {"text": c, "completed": False} if isinstance(c, str) else c for c in criteria
        ]
        changed = True

    deps = rec.get("dependencies")
    if isinstance(deps, list):
        new_deps: list[Any] = []
        for dep in deps:
            if not isinstance(dep, dict):
                new_deps.append(dep)
                continue
            dep_type = dep.get("type")
            if dep_type in _CANONICAL_DEPENDENCY_TYPES:
                new_deps.append(dep)
            elif isinstance(dep_type, str) and dep_type in LEGACY_DEPENDENCY_TYPE_MAP:
                new_deps.append({**dep, "type": str(LEGACY_DEPENDENCY_TYPE_MAP[dep_type])})
                changed = True
            else:
                logger.info(
                    "Dropping dependency %s -> %s with unknown type %r",
                    rec.get("id"),
                    dep.get("id"),
                    dep_type,
                )
                changed = True
        rec["dependencies"] = new_deps

    if changed:
        rec["updated_at"] = utc_now_iso()
    return rec, changed


def dedupe_mutual_blocks(tasks: list[Task]) -> tuple[list[Task], bool]:
    """
    Keep exactly one direction of every mutual blocked_by pair.

    The edge declared by the task with the lexicographically smaller id is kept;
    the one declared by the larger id is removed. Edges to unknown ids are kept.
    """
    blocked_by: dict[str, set[str]] = {
        t.id: {d.id for d in t.dependencies if d.type == DependencyType.BLOCKED_BY}
        for t in tasks
    }

    out: list[Task] = []
    changed = False
    for task in tasks:
        kept = [
            dep
            for dep in task.dependencies
            if not (
                dep.type == DependencyType.BLOCKED_BY
                and task.id in blocked_by.get(dep.id, ())
                and task.id > dep.id
            )
        ]
        if len(kept) != len(task.dependencies):
            logger.info(
                "Removed %d mutual blocked_by edge(s) from task %s",
                len(task.dependencies) - len(kept),
                task.id,
            )
            task = replace(task, dependencies=kept, updated_at=utc_now_iso())
            changed = True
        out.append(task)
    return out, changed
