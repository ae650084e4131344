"""Input resolution: caller values, prompted values and defaults, coerced and validated."""

from __future__ import annotations

import logging
import math
import re
from pathlib import Path
from typing import Any, Mapping

from packwright.pack.capabilities import UNANSWERED, NonInteractivePrompt, PromptCapability
from packwright.pack.errors import InputError
from packwright.pack.manifest import InputSpec, Manifest


logger = logging.getLogger(__name__)


_TRUE = frozenset({"true", "yes", "1"})
_FALSE = frozenset({"false", "no", "0"})


def _coerce_fail(spec: InputSpec, value: Any, expected: str) -> InputError:
    return InputError(
        f"Input '{spec.key}' expects {expected}, got {value!r}",
        reason="coerce",
        key=spec.key,
        value=value if isinstance(value, (str, int, float, bool)) or value is None else repr(value),
    )


def coerce_value(spec: InputSpec, value: Any, *, base_dir: Path) -> Any:
    """Coerce a raw value to the declared input type."""

    if value is None:
        return None
    t = spec.type

    if t == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            s = value.strip().lower()
            if s in _TRUE:
                return True
            if s in _FALSE:
                return False
        raise _coerce_fail(spec, value, "a boolean")

    if t == "number":
        if isinstance(value, bool):
            raise _coerce_fail(spec, value, "a number")
        if isinstance(value, (int, float)):
            n = float(value) if isinstance(value, float) else value
        elif isinstance(value, str):
            try:
                n = float(value.strip())
            except ValueError:
                raise _coerce_fail(spec, value, "a number") from None
        else:
            raise _coerce_fail(spec, value, "a number")
        if isinstance(n, float):
            if not math.isfinite(n):
                raise _coerce_fail(spec, value, "a finite number")
            if n.is_integer():
                return int(n)
        return n

    if t == "path":
        if not isinstance(value, str) or not value.strip():
            raise _coerce_fail(spec, value, "a path")
        p = Path(value.strip()).expanduser()
        if not p.is_absolute():
            p = base_dir / p
        return str(p.resolve())

    if t == "multiselect":
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        raise _coerce_fail(spec, value, "a list or comma-separated string")

    # string, text, select
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise _coerce_fail(spec, value, "a string")


def _validate_fail(spec: InputSpec, message: str) -> InputError:
    return InputError(f"Input '{spec.key}' {message}", reason="validate", key=spec.key)


def validate_value(spec: InputSpec, value: Any) -> None:
    if value is None or value == "" or value == []:
        if spec.is_required:
            raise InputError(f"Required input '{spec.key}' is missing", reason="missing-required", key=spec.key)
        return

    if spec.type == "number":
        if spec.min is not None and value < spec.min:
            raise _validate_fail(spec, f"must be >= {spec.min}")
        if spec.max is not None and value > spec.max:
            raise _validate_fail(spec, f"must be <= {spec.max}")

    if isinstance(value, str):
        if spec.min_length is not None and len(value) < spec.min_length:
            raise _validate_fail(spec, f"must be at least {spec.min_length} characters")
        if spec.max_length is not None and len(value) > spec.max_length:
            raise _validate_fail(spec, f"must be at most {spec.max_length} characters")
        if spec.pattern is not None and re.search(spec.pattern, value) is None:
            raise _validate_fail(spec, f"does not match pattern {spec.pattern}")

    if spec.enum is not None:
        allowed = list(spec.enum)
        values = value if isinstance(value, list) else [value]
        for v in values:
            if v not in allowed:
                raise _validate_fail(spec, f"must be one of {allowed}, got {v!r}")


class InputResolver:
    """Three passes: caller values, prompting for the rest, final validation."""

    def __init__(self, prompt: PromptCapability | None = None, *, base_dir: Path | None = None) -> None:
        self.prompt = prompt if prompt is not None else NonInteractivePrompt()
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    def resolve(self, manifest: Manifest, provided: Mapping[str, Any] | None = None) -> dict[str, Any]:
        provided = dict(provided or {})
        resolved: dict[str, Any] = {}

        for spec in manifest.inputs:
            if spec.key in provided and provided[spec.key] is not None:
                value = coerce_value(spec, provided[spec.key], base_dir=self.base_dir)
                validate_value(spec, value)
                resolved[spec.key] = value

        for spec in manifest.inputs:
            if spec.key in resolved:
                continue
            answer = self.prompt.ask(spec)
            if (answer is UNANSWERED or answer is None) and spec.has_default:
                answer = spec.default
            if answer is UNANSWERED or answer is None:
                if spec.is_required:
                    raise InputError(
                        f"Required input '{spec.key}' is missing",
                        reason="missing-required",
                        key=spec.key,
                    )
                resolved[spec.key] = None
                continue
            logger.debug("input %s resolved via prompt capability", spec.key)
            resolved[spec.key] = coerce_value(spec, answer, base_dir=self.base_dir)

        for spec in manifest.inputs:
            validate_value(spec, resolved[spec.key])

        return resolved
