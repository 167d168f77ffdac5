"""Logging setup for repobridge.

Library modules log through ``logging.getLogger(__name__)`` and never
install handlers themselves. Applications (and the ``repobridge`` CLI) call
``setup_logging()`` once to route the package logger to a rotating file
under ``~/.config/repobridge/logs`` and, optionally, to the console.

Channel and query traffic is logged at DEBUG, so ``debug_modules`` is the
usual way to watch the wire without drowning in everything else:

    setup_logging(level="INFO", debug_modules=["channel", "query"])
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, TextIO

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
DEFAULT_BACKUP_COUNT = 3

PACKAGE_LOGGER = "repobridge"

LOG_DIR = Path.home() / ".config" / "repobridge" / "logs"


def get_log_file_path() -> Path:
    """Get the path to the log file, creating directory if needed."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_DIR / "repobridge.log"


def get_logger(name: str) -> logging.Logger:
    """Return the package logger for ``name``, adding the ``repobridge.`` prefix if missing."""
    if name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else DEFAULT_LOG_LEVEL


def setup_logging(
    *,
    level: int | str = DEFAULT_LOG_LEVEL,
    log_to_file: bool = True,
    log_to_console: bool = False,
    console_stream: TextIO = sys.stderr,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    debug_modules: Iterable[str] | None = None,
) -> None:
    """Configure the ``repobridge`` logger.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        level: Level name or number for the package logger and its handlers.
        log_to_file: Write to the rotating log file.
        log_to_console: Write to ``console_stream``.
        console_stream: Stream for console output (stderr by default, so
            ``--json`` output on stdout stays parseable).
        max_bytes: Rotate the log file at this size.
        backup_count: Rotated files to keep.
        debug_modules: Submodules to lower to DEBUG, e.g. ``"channel"``.
    """
    numeric_level = _resolve_level(level)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT)

    handlers: list[logging.Handler] = []
    if log_to_file:
        handlers.append(
            RotatingFileHandler(
                get_log_file_path(),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    if log_to_console:
        handlers.append(logging.StreamHandler(console_stream))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for old in package_logger.handlers:
        old.close()
    package_logger.handlers.clear()
    package_logger.setLevel(numeric_level)

    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    # Handlers stay at NOTSET so records from DEBUG submodules pass through
    for module_name in debug_modules or ():
        get_logger(module_name).setLevel(logging.DEBUG)
