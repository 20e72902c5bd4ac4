# tests/test_task_store.py

from __future__ import annotations

import asyncio
import threading
import json
import time
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace

import pytest

from cairn.errors import LockTimeoutError, MigrationError, TaskNotFoundError, TaskValidationError
from cairn.tasks.task_models import DependencyType, TaskStatus
from cairn.tasks.task_store import TaskStore

from .fakes import make_task

TS = "2023-01-01T00:00:00.000Z"


def _line(task_id: str, **fields) -> str:
    rec = {
        "id": task_id,
        "title": f"Task {task_id}",
        "status": "open",
        "created_at": TS,
        "updated_at": TS,
    }
    rec.update(fields)
    return json.dumps(rec)


def _write_lines(store: TaskStore, *lines: str) -> None:
    store.file_path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")


def _file_lines(store: TaskStore) -> list[dict]:
    return [json.loads(x) for x in store.file_path.read_text(encoding="utf-8").split("\n") if x]


@pytest.mark.asyncio
async def test_load_missing_file_returns_empty(store: TaskStore) -> None:
    assert await store.load() == []
    assert not store.file_path.exists()


@pytest.mark.asyncio
async def test_save_appends_and_reloads(store: TaskStore) -> None:
    await store.save(make_task("a"))
    await store.save(make_task("b", deps=[("a", "blocked_by")]))

    tasks = await store.load()
    assert [t.id for t in tasks] == ["a", "b"]
    assert tasks[1].dependencies[0].type == DependencyType.BLOCKED_BY

    text = store.file_path.read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert len(text.splitlines()) == 2
    assert not store.lock_path.exists()


@pytest.mark.asyncio
async def test_save_is_idempotent_for_existing_id(store: TaskStore) -> None:
    await store.save(make_task("a", title="first"))
    await store.save(make_task("a", title="second"))

    tasks = await store.load()
    assert len(tasks) == 1
    assert tasks[0].title == "first"


@pytest.mark.asyncio
async def test_load_save_load_round_trip(store: TaskStore) -> None:
    await store.save(make_task("a", criteria=[True, False]))
    before = await store.load()

    new = make_task("b", priority="high")
    await store.save(new)
    after = await store.load()

    assert after[:-1] == before
    assert [t.id for t in after].count("b") == 1
    assert after[-1].priority == "high"


@pytest.mark.asyncio
async def test_save_rejects_invalid_task(store: TaskStore) -> None:
    with pytest.raises(TaskValidationError):
        await store.save(replace(make_task("a"), status="blocked"))
    assert not store.file_path.exists()


@pytest.mark.asyncio
async def test_concurrent_saves_persist_each_task_once(store: TaskStore) -> None:
    ids = [f"t-{i}" for i in range(25)]
    # include a duplicate to exercise the idempotent path under contention
    await asyncio.gather(*(store.save(make_task(i)) for i in [*ids, ids[0]]))

    lines = _file_lines(store)
    assert sorted(rec["id"] for rec in lines) == sorted(ids)


@pytest.mark.asyncio
async def test_concurrent_update_all_calls_do_not_lose_writes(store: TaskStore) -> None:
    await store.save(make_task("a"))

    def _add_label(n: int):
        def _apply(tasks):
            return [replace(t, labels=[*t.labels, f"l{n}"]) for t in tasks]

        return _apply

    await asyncio.gather(*(store.update_all(_add_label(n)) for n in range(10)))
    (task,) = await store.load()
    assert sorted(task.labels) == sorted(f"l{n}" for n in range(10))


@pytest.mark.asyncio
async def test_update_all_invalid_status_leaves_file_byte_identical(store: TaskStore) -> None:
    await store.save(make_task("a"))
    await store.save(make_task("b"))
    before = store.file_path.read_bytes()

    def _bad(tasks):
        return [replace(tasks[0], status="blocked"), *tasks[1:]]

    with pytest.raises(TaskValidationError):
        await store.update_all(_bad)

    assert store.file_path.read_bytes() == before
    assert not store.lock_path.exists()


@pytest.mark.asyncio
async def test_update_all_updater_error_leaves_file_untouched(store: TaskStore) -> None:
    await store.save(make_task("a"))
    before = store.file_path.read_bytes()

    def _boom(tasks):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await store.update_all(_boom)
    assert store.file_path.read_bytes() == before


@pytest.mark.asyncio
async def test_update_all_rejects_duplicate_ids(store: TaskStore) -> None:
    await store.save(make_task("a"))
    with pytest.raises(TaskValidationError):
        await store.update_all(lambda tasks: [*tasks, make_task("a")])


@pytest.mark.asyncio
async def test_update_all_recomputes_completion(store: TaskStore) -> None:
    await store.save(make_task("a", criteria=[True, False]))

    def _forge(tasks):
        return [replace(t, completion_percentage=99) for t in tasks]

    (task,) = await store.update_all(_forge)
    assert task.completion_percentage == 50
    assert _file_lines(store)[0]["completion_percentage"] == 50


@pytest.mark.asyncio
async def test_update_all_leaves_no_temp_files(store: TaskStore) -> None:
    await store.save(make_task("a"))
    await store.update_all(lambda tasks: tasks)
    leftovers = [p.name for p in store.file_path.parent.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


@pytest.mark.asyncio
async def test_malformed_lines_are_skipped_and_reported(store: TaskStore) -> None:
    _write_lines(
        store,
        _line("a"),
        "{not json",
        _line("b", status="done"),
        "[1, 2]",
        _line("a", title="duplicate"),
        _line("c"),
    )

    result = await store.load_with_diagnostics()
    assert [t.id for t in result.tasks] == ["a", "c"]
    assert [e.line_number for e in result.errors] == [2, 3, 4, 5]
    assert result.tasks[0].title == "Task a"


@pytest.mark.asyncio
async def test_rewrite_keeps_unparseable_lines(store: TaskStore) -> None:
    _write_lines(store, _line("a"), "{not json")

    await store.update_all(lambda tasks: [replace(t, title="renamed") for t in tasks])

    raw = store.file_path.read_text(encoding="utf-8").splitlines()
    assert json.loads(raw[0])["title"] == "renamed"
    assert raw[1] == "{not json"


@pytest.mark.asyncio
async def test_load_migrates_and_persists_canonical_form(store: TaskStore) -> None:
    _write_lines(
        store,
        _line("a", status="blocked", dependencies=[{"id": "b", "type": "blocks"}]),
        _line("b", dependencies=[{"id": "a", "type": "blocks"}, {"id": "x", "type": "weird"}]),
    )

    tasks = await store.load()
    assert tasks[0].status == TaskStatus.OPEN
    assert [(d.id, d.type) for d in tasks[0].dependencies] == [("b", "blocked_by")]
    assert tasks[1].dependencies == []

    on_disk = _file_lines(store)
    assert on_disk[0]["status"] == "open"
    assert on_disk[0]["dependencies"] == [{"id": "b", "type": "blocked_by"}]
    assert on_disk[1]["dependencies"] == []

    # already canonical: a second load does not rewrite
    before = store.file_path.read_bytes()
    await store.load()
    assert store.file_path.read_bytes() == before


@pytest.mark.asyncio
async def test_load_recomputes_stored_completion(store: TaskStore) -> None:
    _write_lines(
        store,
        _line(
            "a",
            completion_percentage=42,
            acceptance_criteria=[{"text": "x", "completed": True}],
        ),
    )
    (task,) = await store.load()
    assert task.completion_percentage == 100


@pytest.mark.asyncio
async def test_migration_write_failure_raises_and_keeps_data(
    store: TaskStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_lines(store, _line("a", status="blocked"))
    before = store.file_path.read_bytes()

    def _fail(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_rewrite", _fail)
    with pytest.raises(MigrationError):
        await store.load()
    assert store.file_path.read_bytes() == before


@pytest.mark.asyncio
async def test_legacy_file_is_adopted(settings: SimpleNamespace) -> None:
    settings.data_dir.mkdir(parents=True)
    legacy = settings.data_dir / "issues.jsonl"
    legacy.write_text(_line("old") + "\n", encoding="utf-8")

    store = TaskStore.from_settings(settings)
    tasks = await store.load()

    assert [t.id for t in tasks] == ["old"]
    assert store.file_path.read_bytes() == legacy.read_bytes()


@pytest.mark.asyncio
async def test_legacy_file_removed_when_configured(settings: SimpleNamespace) -> None:
    settings.data_dir.mkdir(parents=True)
    legacy = settings.data_dir / "issues.jsonl"
    legacy.write_text(_line("old") + "\n", encoding="utf-8")
    settings.remove_legacy_file = True

    store = TaskStore.from_settings(settings)
    await store.save(make_task("new"))

    assert not legacy.exists()
    assert [t.id for t in await store.load()] == ["old", "new"]


@pytest.mark.asyncio
async def test_append_after_file_without_trailing_newline(store: TaskStore) -> None:
    store.file_path.write_text(_line("a"), encoding="utf-8")
    await store.save(make_task("b"))
    assert [rec["id"] for rec in _file_lines(store)] == ["a", "b"]


@pytest.mark.asyncio
async def test_stale_lock_does_not_block_writes(store: TaskStore) -> None:
    old = int(time.time() * 1000) - 10_000
    store.lock_path.write_text(json.dumps({"owner_pid": 1, "timestamp": old}), encoding="utf-8")

    await store.save(make_task("a"))

    assert [t.id for t in await store.load()] == ["a"]
    assert not store.lock_path.exists()


@pytest.mark.asyncio
async def test_held_lock_times_out_without_writing(tmp_path: Path) -> None:
    store = TaskStore(tmp_path, lock_max_retries=3, lock_retry_delay_ms=1, lock_timeout_ms=60_000)
    now = int(time.time() * 1000)
    store.lock_path.write_text(json.dumps({"owner_pid": 1, "timestamp": now}), encoding="utf-8")

    with pytest.raises(LockTimeoutError):
        await store.save(make_task("a"))
    assert not store.file_path.exists()


@pytest.mark.asyncio
async def test_add_comment(store: TaskStore) -> None:
    await store.save(make_task("a"))

    first = await store.add_comment("a", "agent", "Found the root cause")
    second = await store.add_comment("a", "user", "Thanks")

    (task,) = await store.load()
    assert [c.content for c in task.comments] == ["Found the root cause", "Thanks"]
    assert task.comments[0] == first
    assert first.id.startswith("c-") and first.id != second.id
    assert task.updated_at == second.created_at


@pytest.mark.asyncio
async def test_add_comment_unknown_task(store: TaskStore) -> None:
    await store.save(make_task("a"))
    before = store.file_path.read_bytes()

    with pytest.raises(TaskNotFoundError):
        await store.add_comment("missing", "agent", "hello")
    assert store.file_path.read_bytes() == before


@pytest.mark.asyncio
async def test_unicode_line_separators_inside_strings_round_trip(store: TaskStore) -> None:
    await store.save(make_task("a", title="first\u2028second"))
    await store.save(make_task("b", title="nel\x85here\u2029end"))

    result = await store.load_with_diagnostics()
    assert result.errors == []
    assert [t.title for t in result.tasks] == ["first\u2028second", "nel\x85here\u2029end"]

    await store.update_all(lambda tasks: tasks)
    assert [t.title for t in await store.load()] == ["first\u2028second", "nel\x85here\u2029end"]
    assert len(store.file_path.read_bytes().split(b"\n")) == 3


@pytest.mark.asyncio
async def test_invalid_utf8_line_is_skipped_and_kept(store: TaskStore) -> None:
    await store.save(make_task("a"))
    bad = b'{"id": "bad\xff"}'
    with store.file_path.open("ab") as fh:
        fh.write(bad + b"\n")
    await store.save(make_task("b"))

    result = await store.load_with_diagnostics()
    assert [t.id for t in result.tasks] == ["a", "b"]
    assert [e.line_number for e in result.errors] == [2]
    assert "UTF-8" in result.errors[0].message

    await store.update_all(lambda tasks: [replace(t, title="renamed") for t in tasks])
    raw_lines = store.file_path.read_bytes().split(b"\n")
    assert bad in raw_lines
    assert [t.title for t in await store.load()] == ["renamed", "renamed"]


@pytest.mark.asyncio
async def test_leading_bom_is_ignored(store: TaskStore) -> None:
    store.file_path.write_bytes(b"\xef\xbb\xbf" + (_line("a") + "\n").encode("utf-8"))

    result = await store.load_with_diagnostics()
    assert [t.id for t in result.tasks] == ["a"]
    assert result.errors == []


@pytest.mark.asyncio
async def test_cancelled_update_keeps_lock_until_write_finishes(
    store: TaskStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    await store.save(make_task("a"))
    entered = threading.Event()
    proceed = threading.Event()
    real_rewrite = store._rewrite

    def _slow_rewrite(tasks, keep_lines):
        entered.set()
        proceed.wait(timeout=5)
        real_rewrite(tasks, keep_lines)

    monkeypatch.setattr(store, "_rewrite", _slow_rewrite)
    update = asyncio.create_task(
        store.update_all(lambda tasks: [replace(t, title="renamed") for t in tasks])
    )
    while not entered.is_set():
        await asyncio.sleep(0.01)

    update.cancel()
    await asyncio.sleep(0.05)
    assert not update.done()
    assert store.lock_path.exists()

    proceed.set()
    with pytest.raises(asyncio.CancelledError):
        await update
    assert not store.lock_path.exists()
    assert [t.title for t in await store.load()] == ["renamed"]
