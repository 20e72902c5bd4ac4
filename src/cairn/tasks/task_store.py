# src/cairn/tasks/task_store.py

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import shutil
import tempfile
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from ..errors import MigrationError, TaskNotFoundError, TaskParseError, TaskValidationError
from ..graph.engine import recompute_completion
from .task_lock import TaskFileLock
from .task_migration import dedupe_mutual_blocks, migrate_record
from .task_models import Comment, Task, generate_id, utc_now_iso, validate_task

logger = logging.getLogger(__name__)

TaskUpdater = Callable[[list[Task]], list[Task]]

DEFAULT_TASKS_FILE = "tasks.jsonl"
DEFAULT_LEGACY_FILE = "issues.jsonl"


@dataclass(slots=True)
class LoadResult:
    tasks: list[Task]
    errors: list[TaskParseError] = field(default_factory=list)
    # True if migration changed anything (the file is not in canonical form yet).
    migrated: bool = False


class TaskStore:
    """
    Newline-delimited JSON task store.

    File format:
    - UTF-8, one JSON object per line, trailing newline
    - lines that fail to parse or validate are skipped on load and reported;
      rewrites keep them verbatim at the end of the file so nothing is lost

    Concurrency:
    - writes from this process are serialized by an asyncio.Lock (FIFO)
    - writes across processes are serialized by a sibling lock file (TaskFileLock)
    - full rewrites go to a temp file that is renamed into place, so unlocked
      readers never observe a half-written file
    """

    def __init__(
        self,
        cairn_dir: str | Path,
        *,
        file_name: str = DEFAULT_TASKS_FILE,
        legacy_file_name: str | None = DEFAULT_LEGACY_FILE,
        remove_legacy_file: bool = False,
        lock_max_retries: int = 50,
        lock_retry_delay_ms: int = 100,
        lock_timeout_ms: int = 30_000,
    ) -> None:
        self._dir = Path(cairn_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._path = self._dir / file_name
        self._legacy_path = self._dir / legacy_file_name if legacy_file_name else None
        self._lock_path = self._path.with_suffix(".lock")
        self._remove_legacy_file = remove_legacy_file
        self._lock_options = {
            "max_retries": lock_max_retries,
            "retry_delay_ms": lock_retry_delay_ms,
            "stale_timeout_ms": lock_timeout_ms,
        }
        # In-process write queue: one reload -> mutate -> persist at a time.
        self._write_lock = asyncio.Lock()
        logger.info("TaskStore ready file=%s lock=%s", self._path, self._lock_path)

    @classmethod
    def from_settings(cls, settings: Any, cairn_dir: str | Path | None = None) -> TaskStore:
        return cls(
            cairn_dir if cairn_dir is not None else settings.data_dir,
            file_name=getattr(settings, "tasks_file_name", DEFAULT_TASKS_FILE),
            legacy_file_name=getattr(settings, "legacy_file_name", DEFAULT_LEGACY_FILE),
            remove_legacy_file=bool(getattr(settings, "remove_legacy_file", False)),
            lock_max_retries=int(getattr(settings, "lock_max_retries", 50)),
            lock_retry_delay_ms=int(getattr(settings, "lock_retry_delay_ms", 100)),
            lock_timeout_ms=int(getattr(settings, "lock_timeout_ms", 30_000)),
        )

    @property
    def file_path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    # ---- low-level helpers ----

    def _new_lock(self) -> TaskFileLock:
        return TaskFileLock(self._lock_path, **self._lock_options)

    @contextlib.asynccontextmanager
    async def _critical_section(self) -> AsyncIterator[None]:
        async with self._write_lock:
            async with self._new_lock():
                yield

    def _needs_legacy_adoption(self) -> bool:
        return (
            self._legacy_path is not None
            and not self._path.exists()
            and self._legacy_path.exists()
        )

    def _adopt_legacy_file(self) -> None:
        """Copy the legacy file to the canonical name (caller holds the lock)."""
        if not self._needs_legacy_adoption():
            return
        assert self._legacy_path is not None
        try:
            tmp = self._path.with_name(self._path.name + ".legacy.tmp")
            shutil.copyfile(self._legacy_path, tmp)
            os.replace(tmp, self._path)
            if self._remove_legacy_file:
                self._legacy_path.unlink()
        except OSError as exc:
            raise MigrationError(
                f"Could not adopt legacy tasks file {self._legacy_path}: {exc}"
            ) from exc
        logger.info("Adopted legacy tasks file %s -> %s", self._legacy_path, self._path)

    def _read_records(self) -> LoadResult:
        """Parse, validate and migrate the current file. Never writes."""
        if not self._path.exists():
            return LoadResult(tasks=[])

        data = self._path.read_bytes()
        if data.startswith(codecs.BOM_UTF8):
            data = data[len(codecs.BOM_UTF8) :]
        tasks: list[Task] = []
        errors: list[TaskParseError] = []
        seen: set[str] = set()
        migrated = False

        # Records are split on "\n" only: U+2028 and friends may appear inside strings.
        for lineno, chunk in enumerate(data.split(b"\n"), start=1):
            if not chunk.strip():
                continue
            try:
                line = chunk.decode("utf-8")
            except UnicodeDecodeError as exc:
                raw_line = chunk.decode("utf-8", "surrogateescape")
                errors.append(TaskParseError(lineno, raw_line, f"invalid UTF-8: {exc}"))
                continue
            try:
                raw = json.loads(line)
            except ValueError as exc:
                errors.append(TaskParseError(lineno, line, f"invalid JSON: {exc}"))
                continue
            if not isinstance(raw, dict):
                errors.append(TaskParseError(lineno, line, "record is not a JSON object"))
                continue

            rec, changed = migrate_record(raw)
            try:
                task = Task.from_dict(rec)
            except TaskValidationError as exc:
                errors.append(TaskParseError(lineno, line, str(exc)))
                continue
            if task.id in seen:
                errors.append(TaskParseError(lineno, line, f"duplicate task id {task.id}"))
                continue
            seen.add(task.id)
            tasks.append(task)
            migrated = migrated or changed

        tasks, deduped = dedupe_mutual_blocks(tasks)
        return LoadResult(
            tasks=recompute_completion(tasks),
            errors=errors,
            migrated=migrated or deduped,
        )

    def _rewrite(self, tasks: list[Task], keep_lines: list[str]) -> None:
        lines = [json.dumps(t.to_dict(), ensure_ascii=False) for t in tasks]
        if keep_lines:
            logger.warning(
                "Keeping %d unparseable line(s) verbatim in %s", len(keep_lines), self._path
            )
            lines.extend(keep_lines)
        content = "".join(line + "\n" for line in lines)

        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            # surrogateescape writes undecodable kept lines back byte for byte
            with os.fdopen(
                fd, "w", encoding="utf-8", errors="surrogateescape", newline="\n"
            ) as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def _append(self, task: Task) -> None:
        line = json.dumps(task.to_dict(), ensure_ascii=False) + "\n"
        if self._path.exists() and self._path.stat().st_size > 0:
            with self._path.open("rb") as fh:
                fh.seek(-1, os.SEEK_END)
                if fh.read(1) != b"\n":
                    line = "\n" + line
        with self._path.open("a", encoding="utf-8", newline="\n") as fh:
            fh.write(line)

    async def _run_write(self, fn: Callable[..., None], *args: Any) -> None:
        """
        Run a file write in a worker thread.

        The thread cannot be interrupted, so a cancelled caller still waits for it
        here; the locks are released only once the write has finished.
        """
        write = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        cancelled = False
        while not write.done():
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                if write.done():
                    raise
                cancelled = True
        if cancelled:
            raise asyncio.CancelledError

    @staticmethod
    def _report(result: LoadResult) -> None:
        for err in result.errors:
            logger.warning("Skipped task record at line %s: %s", err.line_number, err.message)

    # ---- public API ----

    async def load_with_diagnostics(self) -> LoadResult:
        """
        Load every valid task plus the per-line errors of the ones that were skipped.

        If migration changed anything, the canonical form is written back (under the
        lock, from a fresh read) before returning.
        """
        if self._needs_legacy_adoption():
            async with self._critical_section():
                await self._run_write(self._adopt_legacy_file)

        result = await asyncio.to_thread(self._read_records)
        if result.migrated:
            async with self._critical_section():
                result = await asyncio.to_thread(self._read_records)
                if result.migrated:
                    try:
                        await self._run_write(
                            self._rewrite, result.tasks, [e.raw for e in result.errors]
                        )
                    except OSError as exc:
                        raise MigrationError(
                            f"Could not persist migrated tasks to {self._path}: {exc}"
                        ) from exc
                    logger.info("Migrated tasks file %s to canonical form", self._path)
                    result.migrated = False

        self._report(result)
        return result

    async def load(self) -> list[Task]:
        return (await self.load_with_diagnostics()).tasks

    async def save(self, task: Task) -> None:
        """
        Append a new task. Idempotent: if the id already exists nothing is written.

        Raises TaskValidationError for an invalid task, LockTimeoutError if the lock
        cannot be taken.
        """
        validate_task(task)
        async with self._critical_section():
            await self._run_write(self._adopt_legacy_file)
            current = await asyncio.to_thread(self._read_records)
            if any(t.id == task.id for t in current.tasks):
                logger.debug("Task %s already exists; save is a no-op", task.id)
                return

            tasks = recompute_completion([*current.tasks, task])
            if current.migrated:
                await self._run_write(self._rewrite, tasks, [e.raw for e in current.errors])
            else:
                await self._run_write(self._append, tasks[-1])
        logger.debug("Task saved id=%s", task.id)

    async def update_all(self, updater: TaskUpdater) -> list[Task]:
        """
        Reload under lock, apply updater, validate everything, rewrite atomically.

        All-or-nothing: if the updater raises or any resulting task is invalid,
        the file is left untouched. Returns the persisted list.
        """
        async with self._critical_section():
            await self._run_write(self._adopt_legacy_file)
            current = await asyncio.to_thread(self._read_records)

            updated = updater(list(current.tasks))
            try:
                if not isinstance(updated, list):
                    raise TaskValidationError(
                        f"updater must return a list of tasks, got {type(updated).__name__}"
                    )
                ids: set[str] = set()
                for task in updated:
                    validate_task(task)
                    if task.id in ids:
                        raise TaskValidationError(f"duplicate task id {task.id}")
                    ids.add(task.id)
            except TaskValidationError as exc:
                logger.warning("Rejected task update batch: %s", exc)
                raise

            updated = recompute_completion(updated)
            await self._run_write(self._rewrite, updated, [e.raw for e in current.errors])

        logger.debug("Tasks rewritten count=%s", len(updated))
        return updated

    async def add_comment(self, task_id: str, author: str, content: str) -> Comment:
        now = utc_now_iso()
        created: list[Comment] = []

        def _apply(tasks: list[Task]) -> list[Task]:
            out: list[Task] = []
            found = False
            for t in tasks:
                if t.id == task_id:
                    found = True
                    comment = Comment(
                        id=generate_id((c.id for c in t.comments), prefix="c-"),
                        author=author,
                        content=content,
                        created_at=now,
                    )
                    created.append(comment)
                    t = replace(t, comments=[*t.comments, comment], updated_at=now)
                out.append(t)
            if not found:
                raise TaskNotFoundError(task_id)
            return out

        await self.update_all(_apply)
        return created[0]
