from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path

from packwright.core.hash import sha256_bytes


def atomic_write_bytes(path: Path, data: bytes, *, executable: bool = False) -> str:
    """Write via a temp file in the same directory and rename over `path`.

    Existing permission bits are preserved. Returns the SHA-256 of `data`.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    mode: int | None = None
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = None

    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".packwright-tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is None:
            umask = os.umask(0)
            os.umask(umask)
            mode = 0o666 & ~umask
        if executable:
            mode |= (mode & 0o444) >> 2
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    return sha256_bytes(data)


def store_backup(backup_dir: Path, data: bytes) -> str:
    """Content-addressed pre-image backup; returns the hash key."""

    digest = sha256_bytes(data)
    dest = Path(backup_dir) / digest
    if not dest.exists():
        atomic_write_bytes(dest, data)
    return digest


def load_backup(backup_dir: Path, digest: str) -> bytes | None:
    p = Path(backup_dir) / digest
    if not p.is_file():
        return None
    data = p.read_bytes()
    if sha256_bytes(data) != digest:
        return None
    return data


def prune_empty_dirs(start: Path, *, stop_at: Path) -> None:
    """Remove now-empty parent directories of a deleted file, up to (not including) stop_at."""

    stop = stop_at.resolve()
    cur = Path(start).resolve()
    while cur != stop and stop in cur.parents:
        try:
            cur.rmdir()
        except OSError:
            return
        cur = cur.parent
