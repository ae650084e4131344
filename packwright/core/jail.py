"""Target-relative paths.

Every path a pack names (sources inside the pack, targets inside the target
tree) is a POSIX relative path. These helpers normalize such paths and keep
the resolved result inside its root.
"""

from __future__ import annotations

import re
from pathlib import Path


_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def normalize_rel(rel: str, *, allow_backslashes: bool) -> str:
    """Canonical `a/b/c` form of a relative path; ValueError on anything that could escape."""

    if not isinstance(rel, str) or not rel:
        raise ValueError("path missing/empty")
    if "\x00" in rel:
        raise ValueError("path contains NUL")
    if "\\" in rel and not allow_backslashes:
        raise ValueError("path must use '/' separators")

    s = rel.replace("\\", "/")
    if s.startswith("/"):
        raise ValueError("absolute paths are not allowed")
    if _DRIVE_RE.match(s):
        raise ValueError("drive-qualified paths are not allowed")
    if "://" in s:
        raise ValueError("path must not contain a scheme")

    segments: list[str] = []
    for seg in s.split("/"):
        # empty segments collapse; leading "./" is dropped
        if seg == "" or (seg == "." and not segments):
            continue
        if seg in (".", ".."):
            raise ValueError("path must not contain '.' or '..' segments")
        segments.append(seg)
    if not segments:
        raise ValueError("empty path not allowed")
    return "/".join(segments)


def safe_relpath(root: Path, p: Path) -> str:
    """`p` relative to `root` for display; falls back to `p` itself."""

    try:
        return p.resolve().relative_to(root.resolve()).as_posix()
    except (OSError, ValueError):
        return p.as_posix()


def ensure_within_root(root: Path, target: Path) -> None:
    r = root.resolve()
    t = target.resolve()
    if t != r and r not in t.parents:
        raise ValueError(f"path escapes target: {target}")


def _symlink_on_path(root: Path, rel_posix: str) -> str | None:
    """First segment (as a relative path) below `root` that is a symlink."""

    cur = root
    walked: list[str] = []
    for seg in rel_posix.split("/"):
        cur = cur / seg
        walked.append(seg)
        try:
            if cur.is_symlink():
                return "/".join(walked)
        except OSError:
            return "/".join(walked)
    return None


def resolve_rel_path(
    root: Path,
    rel: str,
    *,
    must_exist: bool,
    allow_backslashes: bool = False,
    forbid_symlinks: bool = True,
) -> Path:
    """Absolute path of `rel` under `root`, guaranteed to stay inside it."""

    rel_posix = normalize_rel(rel, allow_backslashes=allow_backslashes)

    if forbid_symlinks:
        link = _symlink_on_path(root, rel_posix)
        if link is not None:
            raise ValueError(f"symlink not allowed: {link}")

    resolved = (root / rel_posix).resolve()
    try:
        resolved.relative_to(root.resolve())
    except ValueError as e:
        raise ValueError(f"path escapes root: {rel_posix}") from e

    if must_exist and not resolved.exists():
        raise ValueError(f"missing path under root: {rel_posix}")
    return resolved
