"""Pre-flight policy: a configurable allow/deny guard over manifest + plan.

`Policy.evaluate()` never raises for a disallowed pack; it returns a
PolicyDecision whose `allowed=False` the Engine treats as a veto.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Mapping

from packwright.core.json_canon import canonical_json_bytes
from packwright.core.time import format_utc_z, utc_now
from packwright.pack.manifest import MODES, SIGNATURE_FILENAME, Manifest
from packwright.pack.signature import verify_pack_signature
from packwright.pack.steps import EventStep, FileStep, JobStep, Plan, PostActionStep, TemplateStep


logger = logging.getLogger(__name__)


MB = 1024 * 1024

NETWORK_TOKENS = (
    "fetch",
    "http",
    "https",
    "curl",
    "wget",
    "axios",
    "websocket",
    "socket.io",
    "download",
    "upload",
    "graphql",
)
_NETWORK_RE = re.compile(
    r"(?<![A-Za-z0-9_])(" + "|".join(re.escape(t) for t in NETWORK_TOKENS) + r"|wss?(?=://))(?![A-Za-z0-9_])",
    re.IGNORECASE,
)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


@dataclass(frozen=True)
class PolicyConfig:
    name: str = "default"
    require_signature: bool = False
    trusted_keys: tuple[str, ...] = ()
    allowed_capabilities: tuple[str, ...] = ()
    blocked_capabilities: tuple[str, ...] = ()
    allowed_modes: tuple[str, ...] = MODES
    max_file_size: int = 100 * MB
    max_template_size: int = 10 * MB
    max_job_count: int = 50
    max_hook_count: int = 20
    allowed_file_types: tuple[str, ...] = ()
    blocked_file_types: tuple[str, ...] = (".exe", ".bat", ".sh", ".ps1")
    allow_system_commands: bool = False
    allowed_commands: tuple[str, ...] = ()
    blocked_commands: tuple[str, ...] = ("rm -rf", "sudo", "su", "chmod 777")
    allowed_actions: tuple[str, ...] = ("run",)
    allow_network_access: bool = True
    allow_environment_variables: bool = True
    restricted_environment_variables: tuple[str, ...] = ("PATH", "HOME", "USER")
    require_approval: bool = False
    allowed_registries: tuple[str, ...] = ()
    blocked_operations: tuple[str, ...] = ()

    @classmethod
    def restrictive(cls) -> "PolicyConfig":
        return cls(
            name="restrictive",
            require_signature=True,
            allowed_capabilities=("read-only",),
            blocked_capabilities=("write", "execute", "network"),
            allowed_modes=("existing-tree",),
            max_file_size=10 * MB,
            max_template_size=1 * MB,
            max_job_count=5,
            max_hook_count=3,
            allowed_file_types=(".md", ".txt", ".json"),
            blocked_file_types=(".exe", ".bat", ".sh", ".ps1", ".py", ".js"),
            allow_system_commands=False,
            allowed_commands=("echo", "cat", "ls"),
            blocked_commands=("rm", "mv", "cp", "chmod", "chown", "sudo", "su"),
            allow_network_access=False,
            allow_environment_variables=False,
            require_approval=True,
        )

    @classmethod
    def permissive(cls) -> "PolicyConfig":
        return cls(
            name="permissive",
            require_signature=False,
            max_file_size=500 * MB,
            max_template_size=50 * MB,
            max_job_count=200,
            max_hook_count=100,
            blocked_file_types=(".exe",),
            allow_system_commands=True,
            blocked_commands=("rm -rf /", "sudo rm", "format"),
            allow_network_access=True,
        )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PolicyConfig":
        """Build from camelCase (or snake_case) keys, optionally on top of a named profile."""

        profile = d.get("profile", "default")
        if profile == "restrictive":
            base = cls.restrictive()
        elif profile == "permissive":
            base = cls.permissive()
        elif profile == "default":
            base = cls()
        else:
            raise ValueError(f"unknown policy profile: {profile}")

        by_key = {}
        for f in fields(cls):
            by_key[f.name] = f
            by_key[_camel(f.name)] = f
        updates: dict[str, Any] = {}
        for k, v in d.items():
            if k == "profile":
                continue
            f = by_key.get(k)
            if f is None:
                raise ValueError(f"unknown policy option: {k}")
            if isinstance(getattr(base, f.name), tuple):
                if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
                    raise ValueError(f"policy option {k} must be a list of strings")
                v = tuple(v)
            updates[f.name] = v
        return replace(base, **updates)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            out[_camel(f.name)] = list(v) if isinstance(v, tuple) else v
        return out


def load_policy_file(path: Path) -> PolicyConfig:
    obj = json.loads(Path(path).read_text(encoding="utf-8", errors="strict"))
    if not isinstance(obj, dict):
        raise ValueError(f"policy file must hold a JSON object: {path}")
    return PolicyConfig.from_dict(obj)


def validate_policy_configuration(config: PolicyConfig) -> dict[str, Any]:
    errors: list[str] = []
    warnings: list[str] = []

    for name in ("max_file_size", "max_template_size", "max_job_count", "max_hook_count"):
        v = getattr(config, name)
        if isinstance(v, bool) or not isinstance(v, int) or v < 0:
            errors.append(f"{_camel(name)} must be a non-negative integer")

    for cap in sorted(set(config.allowed_capabilities) & set(config.blocked_capabilities)):
        errors.append(f"Capability both allowed and blocked: {cap}")
    for cmd in sorted(set(config.allowed_commands) & set(config.blocked_commands)):
        errors.append(f"Command both allowed and blocked: {cmd}")
    for ext in sorted(set(config.allowed_file_types) & set(config.blocked_file_types)):
        errors.append(f"File type both allowed and blocked: {ext}")
    for ext in (*config.allowed_file_types, *config.blocked_file_types):
        if not ext.startswith("."):
            errors.append(f"File type must start with '.': {ext}")
    for mode in config.allowed_modes:
        if mode not in MODES:
            errors.append(f"Unknown mode in allowedModes: {mode}")
    if not config.allowed_modes:
        errors.append("allowedModes must not be empty")

    if not config.require_signature and config.allow_network_access:
        warnings.append("Unsigned packs with network access allowed")
    if config.allow_system_commands and not config.blocked_commands:
        warnings.append("System commands allowed with an empty blockedCommands list")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    violations: list[str]
    operation: str
    pack: dict[str, Any]
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "violations": list(self.violations),
            "operation": self.operation,
            "pack": dict(self.pack),
            "warnings": list(self.warnings),
        }


def _tokens(cmd: str) -> list[str]:
    return cmd.split()


def _contains_run(haystack: list[str], needle: list[str]) -> bool:
    n = len(needle)
    if n == 0:
        return False
    return any(haystack[i : i + n] == needle for i in range(len(haystack) - n + 1))


class Policy:
    def __init__(self, config: PolicyConfig | None = None) -> None:
        self.config = config if config is not None else PolicyConfig()

    # individual checks

    def command_violation(self, argv: list[str]) -> str | None:
        cmd = " ".join(argv)
        toks = _tokens(cmd)
        if toks:
            toks = [PurePosixPath(toks[0]).name, *toks[1:]]
        for blocked in self.config.blocked_commands:
            if _contains_run(toks, _tokens(blocked)):
                return f"Command blocked by policy: {cmd} (matches {blocked!r})"
        if not self.config.allow_system_commands and self.config.allowed_commands:
            if not any(toks[: len(_tokens(a))] == _tokens(a) for a in self.config.allowed_commands):
                return f"Command not in allowed list: {cmd}"
        return None

    def _check_signature(self, manifest: Manifest) -> list[str]:
        if not self.config.require_signature:
            return []
        if not (manifest.root / SIGNATURE_FILENAME).is_file():
            return ["Pack signature required but not found"]
        if not self.config.trusted_keys:
            return []
        failures: list[str] = []
        for key_path in self.config.trusted_keys:
            try:
                blob = Path(key_path).read_bytes()
            except OSError as e:
                failures.append(f"{key_path}: {e}")
                continue
            check = verify_pack_signature(manifest.root, blob)
            if check.valid:
                return []
            failures.extend(check.errors)
        return [f"Pack signature verification failed: {'; '.join(sorted(set(failures)))}"]

    def _network_hits(self, texts: Iterable[str]) -> list[str]:
        hits: set[str] = set()
        for text in texts:
            for m in _NETWORK_RE.finditer(text):
                hits.add(m.group(1).lower())
        return sorted(hits)

    def evaluate(
        self,
        manifest: Manifest,
        plan: Plan | None,
        *,
        operation: str,
        approved: bool = False,
    ) -> PolicyDecision:
        c = self.config
        violations: list[str] = []
        warnings: list[str] = []

        if operation in c.blocked_operations:
            violations.append(f"Operation blocked by policy: {operation}")

        violations.extend(self._check_signature(manifest))

        for cap in manifest.capabilities:
            if cap in c.blocked_capabilities:
                violations.append(f"Capability blocked: {cap}")
            elif c.allowed_capabilities and cap not in c.allowed_capabilities:
                violations.append(f"Capability not allowed: {cap}")

        if not set(manifest.modes) & set(c.allowed_modes):
            violations.append(f"Pack modes not allowed: {', '.join(manifest.modes)}")

        hooks = manifest.extra.get("hooks")
        if isinstance(hooks, (list, dict)) and len(hooks) > c.max_hook_count:
            violations.append(f"Too many hooks: {len(hooks)} > {c.max_hook_count}")

        env = manifest.extra.get("environment")
        env_names = list(env.keys()) if isinstance(env, dict) else [str(x) for x in env] if isinstance(env, list) else []
        if env_names and not c.allow_environment_variables:
            violations.append("Environment variables not allowed")
        for name in env_names:
            if name in c.restricted_environment_variables:
                violations.append(f"Restricted environment variable: {name}")

        registry = manifest.extra.get("registry")
        if isinstance(registry, str) and c.allowed_registries and registry not in c.allowed_registries:
            violations.append(f"Registry not allowed: {registry}")

        if c.require_approval and operation in ("install", "update") and not approved:
            violations.append(f"Operation {operation} requires approval")

        for post in manifest.post_install:
            if post["action"] not in c.allowed_actions:
                violations.append(f"Post-install action not allowed: {post['action']}")
            elif post["action"] == "run":
                v = self.command_violation(list(post.get("args", [])))
                if v is not None:
                    violations.append(v)

        texts = [canonical_json_bytes(manifest.raw).decode("utf-8")]
        if plan is not None:
            job_count = 0
            for step in plan.steps:
                if isinstance(step, TemplateStep):
                    if step.src_size > c.max_template_size:
                        violations.append(f"Template too large: {step.target} ({step.src_size} > {c.max_template_size})")
                    if not c.allow_network_access:
                        try:
                            texts.append(Path(step.src).read_text(encoding="utf-8", errors="replace"))
                        except OSError as e:
                            warnings.append(f"Cannot scan template {step.target}: {e}")
                elif isinstance(step, (FileStep, JobStep, EventStep)):
                    if step.src_size > c.max_file_size:
                        violations.append(f"File too large: {step.target} ({step.src_size} > {c.max_file_size})")
                    if isinstance(step, JobStep):
                        job_count += 1
                elif isinstance(step, PostActionStep) and step.action == "run" and not step.args:
                    violations.append("Post-install run action without a command")
            if job_count > c.max_job_count:
                violations.append(f"Too many jobs: {job_count} > {c.max_job_count}")

            for create in plan.impacts.creates:
                ext = PurePosixPath(create["path"]).suffix.lower()
                if ext and ext in c.blocked_file_types:
                    violations.append(f"File type blocked: {create['path']}")
                elif c.allowed_file_types and ext not in c.allowed_file_types:
                    violations.append(f"File type not allowed: {create['path']}")

        if not c.allow_network_access:
            for token in self._network_hits(texts):
                violations.append(f"Network access detected: {token}")

        decision = PolicyDecision(
            allowed=not violations,
            violations=violations,
            operation=operation,
            pack={"id": manifest.id, "version": manifest.version},
            warnings=warnings,
        )
        if not decision.allowed:
            logger.info("policy %s vetoed %s of %s: %s", c.name, operation, manifest.id, violations)
        return decision

    def evaluate_remove(self, pack_id: str, version: str | None) -> PolicyDecision:
        violations: list[str] = []
        if "remove" in self.config.blocked_operations:
            violations.append("Operation blocked by policy: remove")
        return PolicyDecision(
            allowed=not violations,
            violations=violations,
            operation="remove",
            pack={"id": pack_id, "version": version},
        )

    def audit(self, pack: Mapping[str, Any], operation: str, result: Mapping[str, Any]) -> dict[str, Any]:
        """Structured audit record; persisting it is the caller's concern."""

        return {
            "timestamp": format_utc_z(utc_now()),
            "policy": self.config.name,
            "operation": operation,
            "pack": {"id": pack.get("id"), "version": pack.get("version")},
            "allowed": bool(result.get("allowed", True)),
            "violations": list(result.get("violations", [])),
            "status": result.get("status"),
        }
