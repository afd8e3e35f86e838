"""Logging setup for tangle.

The CLI logs to stderr (warnings by default, debug with ``--verbose``). The
daemon writes JSON lines to ``.tangle/tangle.log`` with rotation (5MB, 3
backups).
"""

from __future__ import annotations

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import orjson

from tangle.constants import LOG_FILENAME

_setup_lock = threading.Lock()
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3


class JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in ("op", "duration_ms", "ids"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return orjson.dumps(entry, default=str).decode()


class _StderrHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Stream handler bound to whatever ``sys.stderr`` is at emit time."""

    @property  # type: ignore[override]
    def stream(self) -> Any:
        return sys.stderr

    @stream.setter
    def stream(self, value: Any) -> None:
        pass


def setup_cli_logging(verbose: bool = False) -> None:
    """Send tangle's log records to stderr."""
    logger = logging.getLogger("tangle")
    with _setup_lock:
        for h in logger.handlers[:]:
            if isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler):
                logger.removeHandler(h)
        handler = _StderrHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def setup_logging(tangle_dir: Path, level: int = logging.INFO) -> logging.Logger:
    """Write structured JSON logs to .tangle/tangle.log.

    Calling this twice with the same directory is a no-op; a handler for a
    different directory is replaced.
    """
    logger = logging.getLogger("tangle")
    log_path = Path(tangle_dir) / LOG_FILENAME
    target = str(log_path.resolve())

    with _setup_lock:
        for h in logger.handlers[:]:
            if not isinstance(h, RotatingFileHandler):
                continue
            if h.baseFilename == target:
                return logger
            logger.removeHandler(h)
            h.close()

        handler = RotatingFileHandler(
            target,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
