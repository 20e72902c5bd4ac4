# src/cairn/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole process (normal "settings layer").
- Everything has a default; no environment is required.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "CAIRN"
CAIRN_DIR_NAME = ".cairn"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- Logging ----
    log_level: str
    log_file: bool

    # ---- Storage ----
    data_dir: Path
    tasks_file_name: str
    legacy_file_name: str
    remove_legacy_file: bool

    # ---- Cross-process lock ----
    lock_max_retries: int
    lock_retry_delay_ms: int
    lock_timeout_ms: int

    @property
    def tasks_path(self) -> Path:
        return self.data_dir / self.tasks_file_name

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            log_level=_env(_k("LOG_LEVEL"), "INFO"),
            log_file=_env_bool(_k("LOG_FILE"), False),
            data_dir=_env_path(_k("DATA_DIR"), Path(CAIRN_DIR_NAME)),
            tasks_file_name=_env(_k("TASKS_FILE"), "tasks.jsonl") or "tasks.jsonl",
            legacy_file_name=_env(_k("LEGACY_TASKS_FILE"), "issues.jsonl") or "issues.jsonl",
            remove_legacy_file=_env_bool(_k("REMOVE_LEGACY_FILE"), False),
            lock_max_retries=_env_int(_k("LOCK_MAX_RETRIES"), 50),
            lock_retry_delay_ms=_env_int(_k("LOCK_RETRY_DELAY_MS"), 100),
            lock_timeout_ms=_env_int(_k("LOCK_TIMEOUT_MS"), 30_000),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS


def find_cairn_dir(start_dir: str | Path, settings: Settings | None = None) -> tuple[Path, Path]:
    """
    Walk up from start_dir to the nearest .cairn directory holding a tasks file.

    Returns (cairn_dir, repo_root). Falls back to <start_dir>/.cairn when nothing is found.
    """
    s = settings or get_settings()
    start = Path(start_dir).resolve()
    for candidate in (start, *start.parents):
        cairn_dir = candidate / CAIRN_DIR_NAME
        if (cairn_dir / s.tasks_file_name).exists() or (cairn_dir / s.legacy_file_name).exists():
            return cairn_dir, candidate
    return start / CAIRN_DIR_NAME, start
