from __future__ import annotations

import json
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from packwright.config import EngineConfig
from packwright.pack.manager import Engine, EngineContext
from packwright.pack.vcs import NullVcs


def write_pack(root: Path, manifest: dict[str, Any], files: dict[str, str | bytes] | None = None) -> Path:
    """Write `pack.json` plus any files (paths relative to the pack root)."""

    root.mkdir(parents=True, exist_ok=True)
    (root / "pack.json").write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
    for rel, content in (files or {}).items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            p.write_bytes(content)
        else:
            p.write_text(content, encoding="utf-8")
    return root


def demo_manifest(version: str = "1.0.0", **extra: Any) -> dict[str, Any]:
    m: dict[str, Any] = {
        "id": "demo",
        "version": version,
        "provides": {"files": [{"src": "README.md", "target": "README.md", "mode": "write"}]},
    }
    m.update(extra)
    return m


README_BYTES = b"# Demo\n\nInstalled by the demo pack.\n"


@pytest.fixture
def make_pack(tmp_path: Path) -> Callable[..., Path]:
    counter = {"n": 0}

    def _make(manifest: dict[str, Any], files: dict[str, str | bytes] | None = None, *, name: str | None = None) -> Path:
        counter["n"] += 1
        return write_pack(tmp_path / "packs" / (name or f"pack{counter['n']}"), manifest, files)

    return _make


@pytest.fixture
def demo_pack(make_pack: Callable[..., Path]) -> Callable[[str], Path]:
    def _demo(version: str = "1.0.0") -> Path:
        return make_pack(demo_manifest(version), {"assets/README.md": README_BYTES}, name=f"demo-{version}")

    return _demo


@pytest.fixture
def target(tmp_path: Path) -> Path:
    t = tmp_path / "target"
    t.mkdir()
    return t


@pytest.fixture
def engine(tmp_path: Path) -> Engine:
    config = EngineConfig(key_dir=str(tmp_path / "keys"))
    return Engine(config, context=EngineContext(vcs_factory=lambda root: NullVcs()))


@pytest.fixture
def signing_engine(tmp_path: Path) -> Engine:
    config = EngineConfig(key_dir=str(tmp_path / "keys"), sign_receipts=True, require_signature=True)
    return Engine(config, context=EngineContext(vcs_factory=lambda root: NullVcs()))


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True)


@pytest.fixture
def git_target(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    t = tmp_path / "repo"
    t.mkdir()
    _git(t, "init", "-q")
    _git(t, "config", "user.email", "tests@example.invalid")
    _git(t, "config", "user.name", "packwright tests")
    (t / ".gitkeep").write_text("", encoding="utf-8")
    _git(t, "add", ".gitkeep")
    _git(t, "commit", "-q", "-m", "init")
    return t
