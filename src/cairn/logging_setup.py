# src/cairn/logging_setup.py

"""
Logging for processes that embed cairn.

cairn usually runs inside a CLI command or an agent tool whose stderr is read by a
person or another program. The console therefore shows cairn's own records
(store and lock activity, skipped lines, migrations) and stays silent about
library chatter below ERROR. The optional log file under the data directory gets
everything.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "cairn.log"


class _ConsoleNoiseFilter(logging.Filter):
    """Pass every record from the `package` logger tree; others only at ERROR+."""

    def __init__(self, package: str = "cairn") -> None:
        super().__init__()
        self._package = package

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == self._package or record.name.startswith(self._package + "."):
            return True
        # Third-party loggers and captured warnings ('py.warnings') alike.
        return record.levelno >= logging.ERROR


def _clear_handlers(root: logging.Logger) -> None:
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def setup_logging(
    *,
    log_dir: str | Path | None = None,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """
    Install a filtered stderr handler, plus <log_dir>/cairn.log when log_dir is set.

    Replaces whatever handlers the root logger had, so repeated calls (tests,
    re-configuration after reading settings) never duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    _clear_handlers(root)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(formatter)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(path / LOG_FILE_NAME), encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logging.captureWarnings(True)


def setup_logging_from_settings(settings) -> None:
    """Apply Settings.log_level / Settings.log_file (the file goes under data_dir)."""
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    log_dir = settings.data_dir if getattr(settings, "log_file", False) else None
    setup_logging(log_dir=log_dir, console_level=console_level)
