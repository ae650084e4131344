"""Per-target advisory lock at `<target>/<engine-dir>/.lock`.

The lock file is created atomically with O_CREAT | O_EXCL and holds JSON
metadata about the holder. A lock older than the stale threshold is broken
with a warning; otherwise acquisition fails immediately with LockError and
the caller retries.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path
from typing import Any

from packwright.core.time import format_utc_z, utc_now
from packwright.pack.errors import LockError


logger = logging.getLogger(__name__)


LOCK_FILENAME = ".lock"


class TargetLock:
    def __init__(self, engine_root: Path, *, stale_after_seconds: float = 3600.0, operation: str = "apply") -> None:
        self.engine_root = Path(engine_root)
        self.lock_file = self.engine_root / LOCK_FILENAME
        self.stale_after_seconds = stale_after_seconds
        self.operation = operation
        self.token: str | None = None
        self.broke_stale = False

    def _try_create(self) -> bool:
        token = uuid.uuid4().hex
        meta = {
            "token": token,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "operation": self.operation,
            "acquiredAt": format_utc_z(utc_now()),
        }
        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(meta, f, sort_keys=True)
        self.token = token
        return True

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return None

    def read_holder(self) -> dict[str, Any]:
        try:
            obj = json.loads(self.lock_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return obj if isinstance(obj, dict) else {}

    def acquire(self) -> None:
        self.engine_root.mkdir(parents=True, exist_ok=True)
        if self._try_create():
            logger.debug("lock acquired: %s", self.lock_file)
            return

        age = self._age_seconds()
        if age is not None and age > self.stale_after_seconds:
            holder = self.read_holder()
            logger.warning(
                "breaking stale lock %s (age %ds, holder pid=%s op=%s)",
                self.lock_file,
                int(age),
                holder.get("pid"),
                holder.get("operation"),
            )
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass
            self.broke_stale = True
            if self._try_create():
                return
        elif age is None and self._try_create():
            return

        holder = self.read_holder()
        raise LockError(
            f"Target is locked by another operation: {self.lock_file}",
            reason="held",
            lock=str(self.lock_file),
            holder=holder,
        )

    def release(self) -> None:
        if self.token is None:
            return
        holder = self.read_holder()
        if holder.get("token") not in (None, self.token):
            logger.warning("lock %s was taken over by another holder; not removing", self.lock_file)
            self.token = None
            return
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        self.token = None
        logger.debug("lock released: %s", self.lock_file)

    def __enter__(self) -> "TargetLock":
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()
