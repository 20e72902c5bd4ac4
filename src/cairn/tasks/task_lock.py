# src/cairn/tasks/task_lock.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from pathlib import Path
from types import TracebackType

from ..errors import LockTimeoutError

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class TaskFileLock:
    """
    Cross-process mutual exclusion through a sibling lock file.

    Protocol:
    - the lock file holds {"owner_pid": int, "timestamp": epoch-millis}
    - it is created with O_CREAT | O_EXCL, so creation fails if it already exists
    - a lock older than stale_timeout_ms is considered abandoned and removed
    - otherwise wait retry_delay_ms and retry, at most max_retries attempts

    Usage:
        async with TaskFileLock(path):
            ...  # reload -> mutate -> rewrite
    """

    def __init__(
        self,
        path: str | Path,
        *,
        max_retries: int = 50,
        retry_delay_ms: int = 100,
        stale_timeout_ms: int = 30_000,
    ) -> None:
        self.path = Path(path)
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_ms = max(0, int(retry_delay_ms))
        self.stale_timeout_ms = int(stale_timeout_ms)
        self._owned: dict[str, int] | None = None

    @property
    def held(self) -> bool:
        return self._owned is not None

    async def acquire(self) -> None:
        for attempt in range(1, self.max_retries + 1):
            if self._try_create():
                logger.debug("Lock acquired path=%s attempt=%s", self.path, attempt)
                return
            if self._remove_if_stale():
                # Retry at once; a removal does not use up an attempt.
                if self._try_create():
                    logger.debug("Lock acquired path=%s attempt=%s", self.path, attempt)
                    return
                continue
            if attempt < self.max_retries:
                logger.debug("Lock busy path=%s attempt=%s, retrying", self.path, attempt)
                await asyncio.sleep(self.retry_delay_ms / 1000.0)

        logger.error("Failed to acquire lock %s after %s attempts", self.path, self.max_retries)
        raise LockTimeoutError(
            f"Failed to acquire lock {self.path} after {self.max_retries} attempts"
        )

    def release(self) -> None:
        """Remove the lock file if it is still the one this instance created."""
        owned, self._owned = self._owned, None
        if owned is None:
            return
        if self._read_lock() != owned:
            logger.warning("Lock %s was taken over by another owner; not removing it", self.path)
            return
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        logger.debug("Lock released path=%s", self.path)

    async def __aenter__(self) -> TaskFileLock:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    # ---- internals ----

    def _try_create(self) -> bool:
        data = {"owner_pid": os.getpid(), "timestamp": _now_ms()}
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        self._owned = data
        return True

    def _read_lock(self) -> dict[str, int] | None:
        try:
            val = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return val if isinstance(val, dict) else None

    def _lock_age_ms(self) -> int | None:
        data = self._read_lock()
        ts = data.get("timestamp") if data else None
        if isinstance(ts, (int, float)) and not isinstance(ts, bool):
            return _now_ms() - int(ts)
        # Unreadable content (e.g. another process is mid-write): fall back to mtime.
        try:
            return _now_ms() - int(self.path.stat().st_mtime * 1000)
        except FileNotFoundError:
            return None

    def _remove_if_stale(self) -> bool:
        age = self._lock_age_ms()
        if age is None:
            # Vanished between our create attempt and now; retry right away.
            return True
        if age <= self.stale_timeout_ms:
            return False
        logger.warning("Removing stale lock %s (age=%sms)", self.path, age)
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        return True
