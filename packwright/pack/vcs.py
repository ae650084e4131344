"""Vcs capability and its git implementation.

Only commit lookup and note storage are needed by the engine. All git
invocations go through `_run_git` with a fixed locale so output parsing is
stable.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol


logger = logging.getLogger(__name__)


class Vcs(Protocol):
    def is_repository(self) -> bool: ...

    def head(self) -> str | None: ...

    def commit_exists(self, commit: str) -> bool: ...

    def read_note(self, ref: str, commit: str) -> str | None: ...

    def write_note(self, ref: str, commit: str, body: str) -> None: ...

    def list_notes(self, ref: str) -> list[tuple[str, str]]: ...

    def read_object(self, oid: str) -> str | None: ...


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    # Deterministic parsing: avoid localized output.
    env.setdefault("LANG", "C")
    env.setdefault("LC_ALL", "C")
    return env


class GitVcs:
    """Git CLI implementation of the Vcs capability rooted at `repo_root`."""

    def __init__(self, repo_root: Path, *, git: str = "git") -> None:
        self.repo_root = Path(repo_root)
        self._git = git

    def _run_git(self, args: list[str]) -> subprocess.CompletedProcess[bytes] | None:
        try:
            return subprocess.run(
                [self._git, *args],
                cwd=str(self.repo_root),
                env=_git_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
            )
        except OSError as e:
            logger.debug("git unavailable: %s", e)
            return None

    def is_repository(self) -> bool:
        if not self.repo_root.is_dir():
            return False
        cp = self._run_git(["rev-parse", "--is-inside-work-tree"])
        return cp is not None and cp.returncode == 0 and cp.stdout.strip() == b"true"

    def head(self) -> str | None:
        cp = self._run_git(["rev-parse", "--verify", "HEAD^{commit}"])
        if cp is None or cp.returncode != 0:
            return None
        sha = cp.stdout.decode("utf-8", errors="strict").strip()
        return sha or None

    def commit_exists(self, commit: str) -> bool:
        if not isinstance(commit, str) or not commit.strip():
            return False
        cp = self._run_git(["cat-file", "-e", f"{commit.strip()}^{{commit}}"])
        return cp is not None and cp.returncode == 0

    def read_note(self, ref: str, commit: str) -> str | None:
        cp = self._run_git(["notes", "--ref", ref, "show", commit])
        if cp is None or cp.returncode != 0:
            return None
        return cp.stdout.decode("utf-8", errors="replace")

    def write_note(self, ref: str, commit: str, body: str) -> None:
        # The body goes through a temp file so it never needs shell escaping.
        fd, tmp = tempfile.mkstemp(prefix="packwright-note-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            cp = self._run_git(["notes", "--ref", ref, "add", "-f", "-F", tmp, commit])
        finally:
            try:
                os.unlink(tmp)
            except OSError:
                pass
        if cp is None:
            raise OSError("git executable not available")
        if cp.returncode != 0:
            msg = cp.stderr.decode("utf-8", errors="replace").strip()
            raise OSError(f"git notes add failed for {commit}: {msg}")

    def list_notes(self, ref: str) -> list[tuple[str, str]]:
        cp = self._run_git(["notes", "--ref", ref, "list"])
        if cp is None or cp.returncode != 0:
            return []
        out: list[tuple[str, str]] = []
        for line in cp.stdout.decode("utf-8", errors="replace").splitlines():
            parts = line.split()
            if len(parts) == 2:
                out.append((parts[0], parts[1]))
        return out

    def read_object(self, oid: str) -> str | None:
        cp = self._run_git(["cat-file", "-p", oid])
        if cp is None or cp.returncode != 0:
            return None
        return cp.stdout.decode("utf-8", errors="replace")


class NullVcs:
    """Vcs stand-in for targets outside any repository."""

    def is_repository(self) -> bool:
        return False

    def head(self) -> str | None:
        return None

    def commit_exists(self, commit: str) -> bool:
        return False

    def read_note(self, ref: str, commit: str) -> str | None:
        return None

    def write_note(self, ref: str, commit: str, body: str) -> None:
        raise OSError("no repository available for notes")

    def list_notes(self, ref: str) -> list[tuple[str, str]]:
        return []

    def read_object(self, oid: str) -> str | None:
        return None
