"""Engine configuration.

Values come from constructor arguments, then `<target>/.packwright/config.toml`
(`[engine]` table), then `PACKWRIGHT_*` environment variables.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from packwright import ENGINE_NAME


logger = logging.getLogger(__name__)


CONFIG_FILENAME = "config.toml"
AUTH_ENV = "PACKWRIGHT_AUTH"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class EngineConfig:
    engine_name: str = ENGINE_NAME
    engine_dir: str = ".packwright"
    notes_ref: str | None = None
    key_dir: str | None = None
    sign_receipts: bool = False
    require_signature: bool = False
    continue_on_error: bool = False
    max_workers: int = 1
    post_action_timeout: float = 30.0
    stale_lock_seconds: float = 3600.0
    recent_modification_seconds: float = 86400.0
    descriptor: str = "package.json"

    @property
    def resolved_notes_ref(self) -> str:
        return self.notes_ref or f"refs/notes/{self.engine_name}/pack-receipts"

    @property
    def resolved_key_dir(self) -> Path:
        if self.key_dir:
            return Path(self.key_dir).expanduser()
        return Path.home() / f".{self.engine_name}" / "keys"

    def engine_root(self, target: Path) -> Path:
        return Path(target).resolve() / self.engine_dir


def _parse_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    s = str(raw).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"{name} invalid boolean: {raw!r}")


def _coerce(name: str, raw: Any) -> Any:
    field_types = {f.name: f.type for f in fields(EngineConfig)}
    t = field_types[name]
    if t == "bool":
        return _parse_bool(name, raw)
    if t == "int":
        if isinstance(raw, bool):
            raise ValueError(f"{name} invalid integer: {raw!r}")
        value = int(raw)
        if value < 1:
            raise ValueError(f"{name} must be >= 1")
        return value
    if t == "float":
        if isinstance(raw, bool):
            raise ValueError(f"{name} invalid number: {raw!r}")
        value = float(raw)
        if value < 0:
            raise ValueError(f"{name} must be >= 0")
        return value
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValueError(f"{name} must be a string")
    return raw


_ENV_OVERRIDES = (
    ("PACKWRIGHT_SIGN", "sign_receipts"),
    ("PACKWRIGHT_KEY_DIR", "key_dir"),
    ("PACKWRIGHT_NOTES_REF", "notes_ref"),
    ("PACKWRIGHT_CONTINUE_ON_ERROR", "continue_on_error"),
    ("PACKWRIGHT_MAX_WORKERS", "max_workers"),
)


def load_engine_config(
    target: Path,
    *,
    env: Mapping[str, str] | None = None,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Layer config.toml and environment overrides over `base`."""

    cfg = base if base is not None else EngineConfig()
    env = os.environ if env is None else env
    known = {f.name for f in fields(EngineConfig)}

    path = Path(target) / cfg.engine_dir / CONFIG_FILENAME
    if path.is_file():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"config file invalid: {path}: {e}") from e
        table = data.get("engine", {})
        if not isinstance(table, dict):
            raise ValueError(f"config file invalid: {path}: [engine] must be a table")
        updates: dict[str, Any] = {}
        for key, raw in table.items():
            name = key.replace("-", "_")
            if name not in known:
                raise ValueError(f"unknown config key: engine.{key}")
            updates[name] = _coerce(name, raw)
        cfg = replace(cfg, **updates)
        logger.debug("loaded engine config from %s", path)

    updates = {}
    for var, name in _ENV_OVERRIDES:
        if var in env:
            updates[name] = _coerce(name, env[var])
    if updates:
        cfg = replace(cfg, **updates)
    return cfg


def registry_auth(env: Mapping[str, str] | None = None) -> str | None:
    """Credentials for Registry capability implementations, if configured."""

    env = os.environ if env is None else env
    value = env.get(AUTH_ENV)
    return value or None
