"""Narrow capability interfaces consumed by the engine, plus default implementations.

Capabilities are passed in through `EngineContext`; nothing here is a module
global. Tests substitute fakes for any of them.
"""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from packwright.core.time import utc_now
from packwright.pack.errors import ApplyError, StepTimeoutError


logger = logging.getLogger(__name__)


class _Unanswered:
    def __repr__(self) -> str:
        return "UNANSWERED"


UNANSWERED: Any = _Unanswered()


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utc_now()


@dataclass(frozen=True)
class FixedClock:
    at: datetime

    def now(self) -> datetime:
        return self.at


class CancelToken:
    """Cooperative cancellation flag checked by the Applier between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class PromptCapability(Protocol):
    def ask(self, spec: Any) -> Any:
        """Return a value for the input described by `spec`, or UNANSWERED."""
        ...


class NonInteractivePrompt:
    """Answers from a pre-baked map; falls back to the declared default."""

    def __init__(self, answers: Mapping[str, Any] | None = None) -> None:
        self._answers = dict(answers or {})
        self.asked: list[str] = []

    def ask(self, spec: Any) -> Any:
        self.asked.append(spec.key)
        if spec.key in self._answers:
            return self._answers[spec.key]
        if spec.has_default:
            return spec.default
        return UNANSWERED


class CallbackPrompt:
    """Delegates to a caller function (e.g. an interactive UI)."""

    def __init__(self, fn: Callable[[Any], Any]) -> None:
        self._fn = fn

    def ask(self, spec: Any) -> Any:
        return self._fn(spec)


class TemplateRenderer(Protocol):
    def render(self, template: str, variables: Mapping[str, Any]) -> bytes: ...


_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: Any) -> str:
    s = str(value).strip().lower()
    return _SLUG_STRIP_RE.sub("-", s).strip("-")


class Jinja2Renderer:
    """Default renderer backed by Jinja2 (sandboxed, undefined names render empty)."""

    def __init__(self) -> None:
        from jinja2.sandbox import SandboxedEnvironment

        self._env = SandboxedEnvironment(keep_trailing_newline=True, autoescape=False)
        self._env.filters["slug"] = slugify

    def render(self, template: str, variables: Mapping[str, Any]) -> bytes:
        from jinja2 import TemplateError

        try:
            out = self._env.from_string(template).render(**dict(variables))
        except TemplateError as e:
            raise ValueError(f"template render failed: {e}") from e
        return out.encode("utf-8")


@dataclass(frozen=True)
class ExecOutcome:
    returncode: int
    stdout: str
    stderr: str


class ExecCapability(Protocol):
    def run(self, argv: list[str], *, cwd: Path, timeout: float) -> ExecOutcome: ...


class SubprocessExec:
    """Runs argv lists without a shell."""

    def __init__(self, *, env: Mapping[str, str] | None = None) -> None:
        self._env = dict(env) if env is not None else None

    def run(self, argv: list[str], *, cwd: Path, timeout: float) -> ExecOutcome:
        if not argv or not all(isinstance(a, str) and a for a in argv):
            raise ApplyError("command argv missing/invalid", reason="invalid-command", argv=list(argv))
        logger.debug("exec %s (cwd=%s, timeout=%ss)", argv, cwd, timeout)
        try:
            cp = subprocess.run(
                argv,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                env=self._env,
            )
        except subprocess.TimeoutExpired:
            raise StepTimeoutError(
                f"command timed out after {timeout}s: {' '.join(argv)}", reason="timeout", timeout=timeout
            ) from None
        except OSError as e:
            raise ApplyError(f"command failed to start: {e}", reason="exec", argv=list(argv)) from e
        return ExecOutcome(returncode=cp.returncode, stdout=cp.stdout or "", stderr=cp.stderr or "")


class Registry(Protocol):
    def latest_version(self, pack_id: str) -> str | None: ...


class StaticRegistry:
    """In-memory registry mapping pack id to latest version."""

    def __init__(self, versions: Mapping[str, str] | None = None, *, auth: str | None = None) -> None:
        self._versions = dict(versions or {})
        self.auth = auth

    def latest_version(self, pack_id: str) -> str | None:
        return self._versions.get(pack_id)
