"""Logging setup for the CLI: stderr diagnostics plus a rotating JSON-lines file.

The library modules only call `logging.getLogger(__name__)`; handlers are
installed here and nowhere else.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

_LOG_FILENAME = "packwright.log"
_setup_lock = threading.Lock()
_MAX_BYTES = 1024 * 1024
_BACKUP_COUNT = 3
_STDERR_FORMAT = "[packwright] %(levelname)s %(name)s: %(message)s"


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["error"] = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return json.dumps(entry, default=str, sort_keys=True)


def setup_logging(engine_dir: Path | None = None, *, verbose: bool = False) -> logging.Logger:
    """Install handlers on the `packwright` logger. Safe to call more than once."""

    logger = logging.getLogger("packwright")
    level = logging.DEBUG if verbose else logging.INFO

    with _setup_lock:
        stream = next(
            (h for h in logger.handlers if type(h) is logging.StreamHandler and getattr(h, "stream", None) is sys.stderr),
            None,
        )
        if stream is None:
            stream = logging.StreamHandler(sys.stderr)
            stream.setFormatter(logging.Formatter(_STDERR_FORMAT))
            logger.addHandler(stream)
        stream.setLevel(level if verbose else logging.WARNING)

        if engine_dir is not None:
            log_path = Path(engine_dir) / _LOG_FILENAME
            target_filename = os.path.abspath(str(log_path))
            present = False
            for h in logger.handlers[:]:
                if not isinstance(h, RotatingFileHandler):
                    continue
                if h.baseFilename == target_filename:
                    present = True
                    continue
                logger.removeHandler(h)
                h.close()
            if not present:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                handler = RotatingFileHandler(str(log_path), maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
                handler.setFormatter(_JsonFormatter())
                logger.addHandler(handler)

        logger.setLevel(level)
        logger.propagate = False
    return logger
