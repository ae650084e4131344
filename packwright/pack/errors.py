"""Error taxonomy for pack operations.

Every error carries a taxonomy `kind`, a `reason` (sub-kind), a structured
`payload` and the CLI exit code it maps to. Components raise these; the
Engine converts them into typed results at its boundary.
"""

from __future__ import annotations

from typing import Any


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_POLICY = 2
EXIT_CONFLICT = 3
EXIT_INPUT = 4
EXIT_ABI = 5


class PackError(Exception):
    kind = "PackError"
    exit_code = EXIT_ERROR

    def __init__(self, message: str, *, reason: str | None = None, **payload: Any) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.reason is not None:
            out["reason"] = self.reason
        for k in sorted(self.payload.keys()):
            out[k] = self.payload[k]
        return out


class ManifestError(PackError):
    kind = "ManifestError"


class AbiError(PackError):
    kind = "AbiError"
    exit_code = EXIT_ABI


class ConstraintError(PackError):
    kind = "ConstraintError"


class InputError(PackError):
    kind = "InputError"
    exit_code = EXIT_INPUT


class ModeError(PackError):
    kind = "ModeError"


class PlanError(PackError):
    kind = "PlanError"


class ConflictError(PackError):
    kind = "ConflictError"
    exit_code = EXIT_CONFLICT


class PolicyViolation(PackError):
    kind = "PolicyViolation"
    exit_code = EXIT_POLICY


class ApplyError(PackError):
    kind = "ApplyError"


class StepTimeoutError(ApplyError):
    """A post-action exceeded its timeout."""

    kind = "TimeoutError"


class SignError(PackError):
    kind = "SignError"


class VerifyError(PackError):
    kind = "VerifyError"


class LockError(PackError):
    kind = "LockError"
