"""Pack manifest (`pack.json`) loading, normalization and fingerprinting.

A pack is a directory holding `pack.json` plus asset subdirectories
(`assets/`, `templates/`, `jobs/`, `events/`). Loading is fail-closed:
structural problems raise ManifestError, an unknown `abi` raises AbiError.
Unknown top-level fields are preserved in `Manifest.extra` and otherwise
ignored.
"""

from __future__ import annotations

import json
import logging
import platform
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from packwright.core.jail import normalize_rel
from packwright.core.json_canon import canonical_hash
from packwright.core.schema import validate_schema
from packwright.pack.errors import AbiError, ConstraintError, ManifestError


logger = logging.getLogger(__name__)


MANIFEST_FILENAME = "pack.json"
SIGNATURE_FILENAME = "SIGNATURE"
SUPPORTED_ABI = "1.0"

MODES = ("existing-tree", "fresh-tree")
MODE_ALIASES = {"existing-repo": "existing-tree", "new-repo": "fresh-tree"}
FILE_MODES = ("write", "skip", "merge")
TRANSFORM_KINDS = ("json-merge", "text-insert", "line-replace")
INPUT_TYPES = ("string", "text", "number", "boolean", "path", "select", "multiselect")
CONFLICT_POLICIES = ("skip", "overwrite", "merge", "error")
PROBE_KINDS = ("file", "glob", "project-dep")
FINGERPRINT_FIELDS = ("version", "provides", "dependencies")

ASSETS_DIR = "assets"
TEMPLATES_DIR = "templates"
JOBS_DIR = "jobs"
EVENTS_DIR = "events"

_ID_RE = re.compile(r"^(@[a-z0-9][a-z0-9._-]*/)?[A-Za-z0-9][A-Za-z0-9._-]*$")
_VERSION_RE = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")
_INPUT_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

_KNOWN_FIELDS = frozenset(
    {
        "id",
        "name",
        "version",
        "abi",
        "description",
        "license",
        "tags",
        "requires",
        "detects",
        "modes",
        "inputs",
        "capabilities",
        "dependencies",
        "provides",
        "postInstall",
        "idempotency",
    }
)

_STR_LIST = {"type": "array", "items": {"type": "string"}}
_WHEN = {"type": ["string", "boolean"]}

MANIFEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "version"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "version": {"type": "string", "minLength": 1},
        "abi": {"type": "string"},
        "description": {"type": "string"},
        "license": {"type": "string"},
        "tags": _STR_LIST,
        "requires": {"type": "object"},
        "detects": {"type": "array", "items": {"$ref": "#/definitions/probe"}},
        "modes": _STR_LIST,
        "inputs": {"type": "array", "items": {"$ref": "#/definitions/input"}},
        "capabilities": _STR_LIST,
        "dependencies": {"type": "object"},
        "provides": {"$ref": "#/definitions/provides"},
        "postInstall": {"type": "array", "items": {"$ref": "#/definitions/postAction"}},
        "idempotency": {
            "type": "object",
            "properties": {
                "fingerprint": _STR_LIST,
                "conflict": {"type": "string", "enum": list(CONFLICT_POLICIES)},
            },
        },
    },
    "definitions": {
        "probe": {
            "type": "object",
            "required": ["kind", "pattern"],
            "properties": {
                "kind": {"type": "string", "enum": list(PROBE_KINDS)},
                "pattern": {"type": "string", "minLength": 1},
                "negate": {"type": "boolean"},
            },
        },
        "input": {
            "type": "object",
            "required": ["key", "type"],
            "properties": {
                "key": {"type": "string", "minLength": 1},
                "type": {"type": "string", "enum": list(INPUT_TYPES)},
                "enum": {"type": "array"},
                "required": {"type": "boolean"},
                "min": {"type": "number"},
                "max": {"type": "number"},
                "minLength": {"type": "integer", "minimum": 0},
                "maxLength": {"type": "integer", "minimum": 0},
                "pattern": {"type": "string"},
                "description": {"type": "string"},
            },
        },
        "fileItem": {
            "type": "object",
            "required": ["src"],
            "properties": {
                "src": {"type": "string", "minLength": 1},
                "target": {"type": "string", "minLength": 1},
                "mode": {"type": "string", "enum": list(FILE_MODES)},
                "anchor": {"type": "string"},
                "executable": {"type": "boolean"},
                "when": _WHEN,
            },
        },
        "copyItem": {
            "type": "object",
            "required": ["src"],
            "properties": {
                "src": {"type": "string", "minLength": 1},
                "id": {"type": "string", "minLength": 1},
                "targetDir": {"type": "string", "minLength": 1},
                "when": _WHEN,
            },
        },
        "transform": {
            "type": "object",
            "required": ["target", "kind", "spec"],
            "properties": {
                "target": {"type": "string", "minLength": 1},
                "kind": {"type": "string", "enum": list(TRANSFORM_KINDS)},
                "anchor": {"type": "string"},
                "position": {"type": "string", "enum": ["before", "after"]},
                "when": _WHEN,
            },
        },
        "schedule": {
            "type": "object",
            "required": ["job", "cron"],
            "properties": {
                "job": {"type": "string", "minLength": 1},
                "cron": {"type": "string", "minLength": 1},
                "when": _WHEN,
            },
        },
        "postAction": {
            "type": "object",
            "required": ["action"],
            "properties": {
                "action": {"type": "string", "minLength": 1},
                "args": {"type": "array", "items": {"type": "string"}},
                "timeout": {"type": "number", "minimum": 0},
                "when": _WHEN,
            },
        },
        "provides": {
            "type": "object",
            "properties": {
                "files": {"type": "array", "items": {"$ref": "#/definitions/fileItem"}},
                "templates": {"type": "array", "items": {"$ref": "#/definitions/fileItem"}},
                "jobs": {"type": "array", "items": {"$ref": "#/definitions/copyItem"}},
                "events": {"type": "array", "items": {"$ref": "#/definitions/copyItem"}},
                "transforms": {"type": "array", "items": {"$ref": "#/definitions/transform"}},
                "schedules": {"type": "array", "items": {"$ref": "#/definitions/schedule"}},
            },
        },
    },
}


@dataclass(frozen=True)
class InputSpec:
    key: str
    type: str
    description: str = ""
    default: Any = None
    has_default: bool = False
    required: bool = False
    enum: tuple[Any, ...] | None = None
    min: float | None = None
    max: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None

    @property
    def is_required(self) -> bool:
        return self.required and not self.has_default

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "InputSpec":
        enum = d.get("enum")
        return cls(
            key=d["key"],
            type=d["type"],
            description=str(d.get("description", "")),
            default=d.get("default"),
            has_default="default" in d,
            required=bool(d.get("required", False)),
            enum=tuple(enum) if isinstance(enum, list) else None,
            min=d.get("min"),
            max=d.get("max"),
            min_length=d.get("minLength"),
            max_length=d.get("maxLength"),
            pattern=d.get("pattern"),
        )


@dataclass(frozen=True)
class Manifest:
    root: Path
    path: Path
    raw: dict[str, Any]
    data: dict[str, Any]
    inputs: tuple[InputSpec, ...] = field(default_factory=tuple)

    @property
    def id(self) -> str:
        return self.data["id"]

    @property
    def version(self) -> str:
        return self.data["version"]

    @property
    def abi(self) -> str | None:
        return self.data.get("abi")

    @property
    def modes(self) -> list[str]:
        return self.data["modes"]

    @property
    def provides(self) -> dict[str, list[dict[str, Any]]]:
        return self.data["provides"]

    @property
    def dependencies(self) -> dict[str, dict[str, str]]:
        return self.data["dependencies"]

    @property
    def detects(self) -> list[dict[str, Any]]:
        return self.data["detects"]

    @property
    def requires(self) -> dict[str, Any]:
        return self.data["requires"]

    @property
    def capabilities(self) -> list[str]:
        return self.data["capabilities"]

    @property
    def post_install(self) -> list[dict[str, Any]]:
        return self.data["postInstall"]

    @property
    def conflict_policy(self) -> str:
        return self.data["idempotency"]["conflict"]

    @property
    def extra(self) -> dict[str, Any]:
        return {k: v for k, v in self.raw.items() if k not in _KNOWN_FIELDS}

    def fingerprint(self) -> str:
        """Hex SHA-256 of the canonical {version, provides, dependencies} core."""

        fields = self.data["idempotency"]["fingerprint"]
        return canonical_hash({k: self.data[k] for k in FINGERPRINT_FIELDS if k in fields})

    def manifest_hash(self) -> str:
        """Hex SHA-256 of the canonical manifest as stored on disk."""

        return canonical_hash(self.raw)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


def pack_dir_name(pack_id: str) -> str:
    return pack_id.replace("/", "__")


def parse_version(v: str) -> tuple[int, int, int]:
    m = _VERSION_RE.match(v or "")
    if m is None:
        raise ValueError(f"version missing/invalid: {v!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def update_type(current: str, latest: str) -> str | None:
    """Classify latest vs current as major/minor/patch, or None if not newer."""

    a = parse_version(current)
    b = parse_version(latest)
    if b <= a:
        return None
    if b[0] != a[0]:
        return "major"
    if b[1] != a[1]:
        return "minor"
    return "patch"


def _schema_fail(pack_path: Path, errors: list[str]) -> ManifestError:
    return ManifestError(
        f"Invalid pack manifest: {pack_path}: " + "; ".join(errors),
        reason="schema",
        path=str(pack_path),
        errors=errors,
    )


def _rel(value: str, *, where: str, errors: list[str]) -> str:
    try:
        return normalize_rel(value, allow_backslashes=False)
    except ValueError as e:
        errors.append(f"{where}: {e}")
        return value


def _normalize_when(item: dict[str, Any], out: dict[str, Any]) -> None:
    if "when" in item:
        out["when"] = item["when"]


def _normalize_file_items(items: list[dict[str, Any]], *, section: str, errors: list[str]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for i, item in enumerate(items):
        where = f"provides.{section}[{i}]"
        src = _rel(item["src"], where=f"{where}.src", errors=errors)
        target = _rel(item.get("target", item["src"]), where=f"{where}.target", errors=errors)
        n: dict[str, Any] = {"src": src, "target": target, "mode": item.get("mode", "write")}
        if section == "templates":
            n["executable"] = bool(item.get("executable", False))
        if "anchor" in item:
            n["anchor"] = item["anchor"]
        _normalize_when(item, n)
        out.append(n)
    return out


def _normalize_copy_items(items: list[dict[str, Any]], *, section: str, errors: list[str]) -> list[dict[str, Any]]:
    default_dir = JOBS_DIR if section == "jobs" else EVENTS_DIR
    out: list[dict[str, Any]] = []
    for i, item in enumerate(items):
        where = f"provides.{section}[{i}]"
        n: dict[str, Any] = {
            "src": _rel(item["src"], where=f"{where}.src", errors=errors),
            "targetDir": _rel(item.get("targetDir", default_dir), where=f"{where}.targetDir", errors=errors),
        }
        if "id" in item:
            n["id"] = item["id"]
            if "/" in item["id"] or item["id"] in (".", ".."):
                errors.append(f"{where}.id: must be a plain name")
        _normalize_when(item, n)
        out.append(n)
    return out


def _normalize_transforms(items: list[dict[str, Any]], *, errors: list[str]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for i, item in enumerate(items):
        where = f"provides.transforms[{i}]"
        kind = item["kind"]
        spec = item["spec"]
        if kind == "json-merge" and not isinstance(spec, (dict, list)):
            errors.append(f"{where}.spec: json-merge spec must be an object or array")
        if kind in ("text-insert", "line-replace") and not isinstance(spec, str):
            errors.append(f"{where}.spec: {kind} spec must be a string")
        if kind == "line-replace":
            anchor = item.get("anchor")
            if not isinstance(anchor, str) or not anchor:
                errors.append(f"{where}.anchor: line-replace requires a regex anchor")
            else:
                try:
                    re.compile(anchor)
                except re.error as e:
                    errors.append(f"{where}.anchor: invalid regex: {e}")
        n: dict[str, Any] = {
            "target": _rel(item["target"], where=f"{where}.target", errors=errors),
            "kind": kind,
            "spec": spec,
        }
        if "anchor" in item:
            n["anchor"] = item["anchor"]
        if kind == "text-insert":
            n["position"] = item.get("position", "after")
        _normalize_when(item, n)
        out.append(n)
    return out


def _normalize_dependencies(raw: dict[str, Any], *, errors: list[str]) -> dict[str, dict[str, str]]:
    """Normalize to {descriptor-section: {name: version}}.

    Accepts a flat {name: version} map (section "dependencies"), a sectioned
    map, or either wrapped under an "npm" key.
    """

    deps = raw
    if set(deps.keys()) == {"npm"} and isinstance(deps["npm"], dict):
        deps = deps["npm"]
    if not deps:
        return {}
    if all(isinstance(v, str) for v in deps.values()):
        deps = {"dependencies": deps}

    out: dict[str, dict[str, str]] = {}
    for section in sorted(deps.keys()):
        entries = deps[section]
        if not isinstance(entries, dict) or not all(isinstance(v, str) for v in entries.values()):
            errors.append(f"dependencies.{section}: expected a name -> version map")
            continue
        out[section] = {name: entries[name] for name in sorted(entries.keys())}
    return out


def _normalize_inputs(items: list[dict[str, Any]], *, errors: list[str]) -> list[dict[str, Any]]:
    seen: set[str] = set()
    for i, item in enumerate(items):
        key = item["key"]
        if not _INPUT_KEY_RE.match(key):
            errors.append(f"inputs[{i}].key: invalid key {key!r}")
        if key in seen:
            errors.append(f"inputs[{i}].key: duplicate key {key!r}")
        seen.add(key)
        patt = item.get("pattern")
        if isinstance(patt, str):
            try:
                re.compile(patt)
            except re.error as e:
                errors.append(f"inputs[{i}].pattern: invalid regex: {e}")
    return [dict(item) for item in items]


def normalize_manifest(raw: dict[str, Any], *, pack_path: Path) -> dict[str, Any]:
    schema_errors = validate_schema(raw, MANIFEST_SCHEMA, root_schema=MANIFEST_SCHEMA, path="pack")
    if schema_errors:
        raise _schema_fail(pack_path, [str(e) for e in schema_errors])

    errors: list[str] = []
    if not _ID_RE.match(raw["id"]):
        errors.append(f"pack.id: invalid id {raw['id']!r}")
    if not _VERSION_RE.match(raw["version"]):
        errors.append(f"pack.version: expected dotted numeric triple, got {raw['version']!r}")

    modes: list[str] = []
    for m in raw.get("modes", list(MODES)):
        m = MODE_ALIASES.get(m, m)
        if m not in MODES:
            errors.append(f"pack.modes: unknown mode {m!r}")
        elif m not in modes:
            modes.append(m)
    if not modes and not errors:
        errors.append("pack.modes: at least one mode required")

    provides_raw = raw.get("provides", {})
    provides = {
        "files": _normalize_file_items(provides_raw.get("files", []), section="files", errors=errors),
        "templates": _normalize_file_items(provides_raw.get("templates", []), section="templates", errors=errors),
        "jobs": _normalize_copy_items(provides_raw.get("jobs", []), section="jobs", errors=errors),
        "events": _normalize_copy_items(provides_raw.get("events", []), section="events", errors=errors),
        "transforms": _normalize_transforms(provides_raw.get("transforms", []), errors=errors),
        "schedules": [dict(s) for s in provides_raw.get("schedules", [])],
    }

    post_install: list[dict[str, Any]] = []
    for item in raw.get("postInstall", []):
        n = {"action": item["action"], "args": list(item.get("args", []))}
        if "timeout" in item:
            n["timeout"] = item["timeout"]
        _normalize_when(item, n)
        post_install.append(n)

    idem = raw.get("idempotency", {})
    fp_fields = list(idem.get("fingerprint", list(FINGERPRINT_FIELDS)))
    for f in fp_fields:
        if f not in FINGERPRINT_FIELDS:
            errors.append(f"idempotency.fingerprint: unsupported field {f!r}")

    data = {
        "id": raw["id"],
        "name": raw.get("name", raw["id"]),
        "version": raw["version"],
        "description": raw.get("description", ""),
        "license": raw.get("license", ""),
        "tags": list(raw.get("tags", [])),
        "requires": dict(raw.get("requires", {})),
        "detects": [
            {"kind": p["kind"], "pattern": p["pattern"], "negate": bool(p.get("negate", False))}
            for p in raw.get("detects", [])
        ],
        "modes": modes,
        "inputs": _normalize_inputs(raw.get("inputs", []), errors=errors),
        "capabilities": list(raw.get("capabilities", [])),
        "dependencies": _normalize_dependencies(raw.get("dependencies", {}), errors=errors),
        "provides": provides,
        "postInstall": post_install,
        "idempotency": {
            "fingerprint": sorted(set(fp_fields)),
            "conflict": idem.get("conflict", "skip"),
        },
    }
    if "abi" in raw:
        data["abi"] = raw["abi"]

    if errors:
        raise _schema_fail(pack_path, errors)
    return data


def load_manifest(pack_root: Path) -> Manifest:
    """Load and normalize `<pack_root>/pack.json`.

    A path to the manifest file itself is accepted too.
    """

    pack_root = Path(pack_root)
    if pack_root.name == MANIFEST_FILENAME and pack_root.is_file():
        pack_root = pack_root.parent
    path = pack_root / MANIFEST_FILENAME

    if not path.is_file():
        raise ManifestError(f"Pack manifest not found: {path}", reason="missing-file", path=str(path))

    try:
        text = path.read_text(encoding="utf-8", errors="strict")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Failed to read pack manifest: {path}: {e}", reason="parse", path=str(path)) from e
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ManifestError(f"Failed to parse pack manifest: {path}: {e}", reason="parse", path=str(path)) from e
    if not isinstance(raw, dict):
        raise ManifestError(f"Pack manifest must be a JSON object: {path}", reason="schema", path=str(path))

    abi = raw.get("abi")
    if abi is not None and abi != SUPPORTED_ABI:
        raise AbiError(
            f"Unsupported pack abi {abi!r} (engine supports {SUPPORTED_ABI!r})",
            reason="mismatch",
            abi=abi,
            supported=SUPPORTED_ABI,
        )

    data = normalize_manifest(raw, pack_path=path)
    manifest = Manifest(
        root=pack_root.resolve(),
        path=path.resolve(),
        raw=raw,
        data=data,
        inputs=tuple(InputSpec.from_dict(d) for d in data["inputs"]),
    )
    logger.debug("loaded pack %s@%s from %s", manifest.id, manifest.version, path)
    return manifest


_CONSTRAINT_RE = re.compile(r"^\s*(>=|<=|==|>|<|=|\^|~)?\s*v?(\d+(?:\.\d+){0,2})\s*$")


def _version_tuple(s: str) -> tuple[int, ...]:
    parts = [int(p) for p in s.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def version_satisfies(actual: str, constraint: str) -> bool | None:
    """Evaluate a simple version constraint; None when it cannot be parsed."""

    m = _CONSTRAINT_RE.match(constraint or "")
    am = re.match(r"^v?(\d+(?:\.\d+){0,2})", actual or "")
    if m is None or am is None:
        return None
    op = m.group(1) or "=="
    want = _version_tuple(m.group(2))
    have = _version_tuple(am.group(1))
    if op in ("==", "="):
        return have == want
    if op == ">=":
        return have >= want
    if op == ">":
        return have > want
    if op == "<=":
        return have <= want
    if op == "<":
        return have < want
    if op == "^":
        return have >= want and have[0] == want[0]
    return have >= want and have[:2] == want[:2]


def _runtime_versions() -> dict[str, str]:
    from packwright import engine_version

    return {
        "python": platform.python_version(),
        "runtime": platform.python_version(),
        "packwright": engine_version(),
        "engine": engine_version(),
    }


def check_constraints(manifest: Manifest, *, vcs_available: bool) -> list[str]:
    """Check `requires`; returns warnings for unmet soft constraints.

    A VCS requirement (`vcs` or `git` set true) is hard: ConstraintError.
    """

    warnings: list[str] = []
    runtimes = _runtime_versions()
    for key in sorted(manifest.requires.keys()):
        want = manifest.requires[key]
        if key in ("vcs", "git"):
            if want and not vcs_available:
                raise ConstraintError(
                    f"Pack {manifest.id} requires a VCS repository but none is available",
                    reason="requirement",
                    requirement=key,
                )
            continue
        if not isinstance(want, str):
            warnings.append(f"Unrecognized requirement {key}={want!r}")
            continue
        have = runtimes.get(key)
        if have is None:
            warnings.append(f"Cannot check requirement {key} {want}: runtime not known to this engine")
            continue
        ok = version_satisfies(have, want)
        if ok is None:
            warnings.append(f"Cannot parse requirement {key} {want}")
        elif not ok:
            warnings.append(f"Requirement {key} {want} not met (found {have})")

    for w in warnings:
        logger.warning("pack %s: %s", manifest.id, w)
    return warnings
