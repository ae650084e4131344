"""Engine configuration and logging setup tests.

These tests verify:
- `[engine]` values from config.toml layer over the defaults, with dashed or underscored keys
- PACKWRIGHT_* environment variables override the file
- Unknown keys and malformed values are rejected with ValueError
- setup_logging installs one stderr handler and one JSON-lines file handler, idempotently
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from packwright.config import EngineConfig, load_engine_config, registry_auth
from packwright.log import setup_logging


def _write_config(target: Path, body: str) -> None:
    d = target / ".packwright"
    d.mkdir(parents=True, exist_ok=True)
    (d / "config.toml").write_text(body, encoding="utf-8")


class TestLoadEngineConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        cfg = load_engine_config(tmp_path, env={})
        assert cfg == EngineConfig()
        assert cfg.resolved_notes_ref == "refs/notes/packwright/pack-receipts"

    def test_file_values(self, tmp_path: Path) -> None:
        _write_config(
            tmp_path,
            '[engine]\nsign-receipts = true\nmax_workers = 4\npost-action-timeout = 12.5\nnotes-ref = "refs/notes/x"\n',
        )
        cfg = load_engine_config(tmp_path, env={})
        assert cfg.sign_receipts is True
        assert cfg.max_workers == 4
        assert cfg.post_action_timeout == 12.5
        assert cfg.resolved_notes_ref == "refs/notes/x"

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "[engine]\nmax_workers = 4\ncontinue_on_error = true\n")
        cfg = load_engine_config(
            tmp_path,
            env={"PACKWRIGHT_MAX_WORKERS": "2", "PACKWRIGHT_CONTINUE_ON_ERROR": "no", "PACKWRIGHT_KEY_DIR": "/k"},
        )
        assert cfg.max_workers == 2
        assert cfg.continue_on_error is False
        assert cfg.resolved_key_dir == Path("/k")

    def test_base_is_kept(self, tmp_path: Path) -> None:
        base = EngineConfig(descriptor="composer.json")
        assert load_engine_config(tmp_path, env={}, base=base).descriptor == "composer.json"

    @pytest.mark.parametrize(
        "body,match",
        [
            ("[engine]\ncolour = true\n", "unknown config key: engine.colour"),
            ("[engine]\nmax_workers = 0\n", "max_workers must be >= 1"),
            ("[engine]\nsign_receipts = \"maybe\"\n", "invalid boolean"),
            ("engine = 3\n", "must be a table"),
            ("[engine\n", "config file invalid"),
        ],
    )
    def test_rejects_bad_file(self, tmp_path: Path, body: str, match: str) -> None:
        _write_config(tmp_path, body)
        with pytest.raises(ValueError, match=match):
            load_engine_config(tmp_path, env={})

    def test_rejects_bad_env(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            load_engine_config(tmp_path, env={"PACKWRIGHT_MAX_WORKERS": "many"})

    def test_registry_auth(self) -> None:
        assert registry_auth({"PACKWRIGHT_AUTH": "token-123"}) == "token-123"
        assert registry_auth({"PACKWRIGHT_AUTH": ""}) is None
        assert registry_auth({}) is None


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

@pytest.fixture
def clean_logger() -> Iterator[logging.Logger]:
    logger = logging.getLogger("packwright")
    saved = logger.handlers[:]
    yield logger
    for h in logger.handlers[:]:
        if h not in saved:
            logger.removeHandler(h)
            h.close()


class TestSetupLogging:
    def test_json_lines_file(self, tmp_path: Path, clean_logger: logging.Logger) -> None:
        setup_logging(tmp_path / ".packwright")
        logging.getLogger("packwright.pack.applier").info("applied %s", "demo")
        for h in clean_logger.handlers:
            h.flush()

        lines = (tmp_path / ".packwright" / "packwright.log").read_text(encoding="utf-8").splitlines()
        entry = json.loads(lines[-1])
        assert entry["level"] == "INFO"
        assert entry["logger"] == "packwright.pack.applier"
        assert entry["msg"] == "applied demo"

    def test_idempotent(self, tmp_path: Path, clean_logger: logging.Logger) -> None:
        setup_logging(tmp_path / "a")
        setup_logging(tmp_path / "a", verbose=True)
        files = [h for h in clean_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(files) == 1
        assert clean_logger.level == logging.DEBUG

    def test_switching_directory_replaces_file_handler(self, tmp_path: Path, clean_logger: logging.Logger) -> None:
        setup_logging(tmp_path / "a")
        setup_logging(tmp_path / "b")
        files = [h for h in clean_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert [Path(h.baseFilename).parent.name for h in files] == ["b"]
