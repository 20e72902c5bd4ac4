# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from cairn.tasks.task_store import TaskStore


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with TaskStore.from_settings().

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic. Lock timings are shortened.
    """
    return SimpleNamespace(
        log_level="DEBUG",
        log_file=False,
        data_dir=tmp_path / ".cairn",
        tasks_file_name="tasks.jsonl",
        legacy_file_name="issues.jsonl",
        remove_legacy_file=False,
        lock_max_retries=20,
        lock_retry_delay_ms=10,
        lock_timeout_ms=1000,
    )


@pytest.fixture()
def store(settings: SimpleNamespace) -> TaskStore:
    """
    A real TaskStore in a temp directory.

    NOTE: file I/O and locking are part of what we want to test, so no fakes here.
    """
    return TaskStore.from_settings(settings)
