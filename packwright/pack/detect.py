"""Mode detection: classify a target as an existing tree or a fresh one."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from packwright.pack.manifest import Manifest


logger = logging.getLogger(__name__)


EXISTING_TREE = "existing-tree"
FRESH_TREE = "fresh-tree"
VCS_MARKERS = (".git",)


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a POSIX glob (with `**`) into an anchored regex over relative paths."""

    i = 0
    out: list[str] = []
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern[i : i + 3] == "**/":
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern[i : i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1 : j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def glob_matches(root: Path, pattern: str) -> bool:
    """True iff at least one non-directory under root matches; symlinked dirs are not entered."""

    rx = glob_to_regex(pattern.lstrip("/"))
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if d not in VCS_MARKERS)
        base = Path(dirpath)
        for name in sorted(filenames):
            rel = (base / name).relative_to(root).as_posix()
            if rx.match(rel):
                return True
        # os.walk lists symlinks to directories under dirnames; they are files for matching.
        for d in dirnames:
            p = base / d
            if p.is_symlink():
                rel = p.relative_to(root).as_posix()
                if rx.match(rel):
                    return True
    return False


def read_descriptor(target: Path, descriptor: str) -> dict[str, Any] | None:
    path = target / descriptor
    if not path.is_file():
        return None
    try:
        obj = json.loads(path.read_text(encoding="utf-8", errors="strict"))
    except (OSError, ValueError) as e:
        logger.warning("unreadable project descriptor %s: %s", path, e)
        return None
    return obj if isinstance(obj, dict) else None


def _probe(target: Path, probe: dict[str, Any], *, descriptor: str) -> bool:
    kind = probe["kind"]
    pattern = probe["pattern"]
    if kind == "file":
        hit = (target / pattern).exists()
    elif kind == "glob":
        hit = glob_matches(target, pattern)
    elif kind == "project-dep":
        desc = read_descriptor(target, descriptor) or {}
        hit = any(
            isinstance(desc.get(section), dict) and pattern in desc[section]
            for section in ("dependencies", "devDependencies")
        )
    else:
        hit = False
    return (not hit) if probe.get("negate") else hit


class ModeDetector:
    def __init__(self, *, descriptor: str = "package.json") -> None:
        self.descriptor = descriptor

    def detect(self, target: Path, manifest: Manifest | None = None) -> str:
        target = Path(target)
        if any((target / m).exists() for m in VCS_MARKERS):
            return EXISTING_TREE
        if not target.is_dir():
            return FRESH_TREE
        for probe in manifest.detects if manifest is not None else []:
            if _probe(target, probe, descriptor=self.descriptor):
                logger.debug("probe %s:%s matched in %s", probe["kind"], probe["pattern"], target)
                return EXISTING_TREE
        return FRESH_TREE
