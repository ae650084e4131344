"""CLI surface tests.

These tests verify:
- apply/status/verify/remove print JSON results and map statuses to exit codes
- Input, policy and update-risk failures exit with 4, 2 and 3
- receipts export, keys generate, pack sign/verify and policy validate work end to end
"""

from __future__ import annotations

import csv
import io
import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterator

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import README_BYTES, demo_manifest, write_pack

from packwright.cli import main


@pytest.fixture(autouse=True)
def _restore_logger() -> Iterator[None]:
    logger = logging.getLogger("packwright")
    saved = (logger.handlers[:], logger.level, logger.propagate)
    yield
    for h in logger.handlers[:]:
        if h not in saved[0]:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for var in ("PACKWRIGHT_SIGN", "PACKWRIGHT_KEY_DIR", "PACKWRIGHT_NOTES_REF", "PACKWRIGHT_CONTINUE_ON_ERROR", "PACKWRIGHT_MAX_WORKERS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


def _run(capsys: pytest.CaptureFixture[str], argv: list[str]) -> tuple[int, Any]:
    code = main(argv)
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


def _demo(tmp_path: Path, version: str = "1.0.0") -> Path:
    return write_pack(tmp_path / f"demo-{version}", demo_manifest(version), {"assets/README.md": README_BYTES})


class TestLifecycleCommands:
    def test_apply_status_verify_remove(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        pack = _demo(tmp_path)

        code, out = _run(capsys, ["apply", "--pack", str(pack), "--target", str(target)])
        assert code == 0
        assert out["status"] == "success"
        assert (target / "README.md").read_bytes() == README_BYTES
        assert (target / ".packwright" / "packwright.log").is_file()

        code, out = _run(capsys, ["status", "--target", str(target)])
        assert code == 0
        assert [(p["id"], p["version"], p["modified"]) for p in out["packs"]] == [("demo", "1.0.0", [])]

        code, out = _run(capsys, ["verify", "--id", "demo", "--target", str(target)])
        assert code == 0
        assert out["status"] == "VALID"

        code, out = _run(capsys, ["remove", "--id", "demo", "--target", str(target)])
        assert code == 0
        assert out["status"] == "OK"
        assert not (target / "README.md").exists()

    def test_plan_does_not_mutate(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        code, out = _run(capsys, ["plan", "--pack", str(_demo(tmp_path)), "--target", str(target)])
        assert code == 0
        assert out["status"] == "READY"
        assert [c["path"] for c in out["impacts"]["creates"]] == ["README.md"]
        assert list(target.iterdir()) == []

    def test_missing_input_exits_4(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        pack = write_pack(
            tmp_path / "needs",
            {"id": "needs", "version": "1.0.0", "inputs": [{"key": "name", "type": "string", "required": True}]},
        )
        code, out = _run(capsys, ["apply", "--pack", str(pack), "--target", str(target)])
        assert code == 4
        assert out["error"]["kind"] == "InputError"

        code, out = _run(capsys, ["apply", "--pack", str(pack), "--target", str(target), "--input", "name=x"])
        assert code == 0

    def test_bad_input_syntax(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        code = main(["apply", "--pack", str(_demo(tmp_path)), "--target", str(target), "--input", "novalue"])
        assert code == 1
        assert "--input expects KEY=VALUE" in capsys.readouterr().err

    def test_policy_veto_exits_2(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        code, out = _run(capsys, ["apply", "--pack", str(_demo(tmp_path)), "--target", str(target), "--profile", "restrictive"])
        assert code == 2
        assert out["error"]["kind"] == "PolicyViolation"
        assert not (target / "README.md").exists()

    def test_major_update_exits_3_until_forced(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        _run(capsys, ["apply", "--pack", str(_demo(tmp_path, "1.0.0")), "--target", str(target)])

        v2 = _demo(tmp_path, "2.0.0")
        code, out = _run(capsys, ["update", "--pack", str(v2), "--target", str(target)])
        assert code == 3
        assert out["status"] == "RISKS"

        code, out = _run(capsys, ["update", "--pack", str(v2), "--target", str(target), "--force"])
        assert code == 0
        assert out["status"] == "UPDATED"


class TestAuxiliaryCommands:
    def test_receipts_export_csv(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        target = tmp_path / "target"
        target.mkdir()
        _run(capsys, ["apply", "--pack", str(_demo(tmp_path)), "--target", str(target)])

        assert main(["receipts", "export", "--target", str(target), "--format", "csv"]) == 0
        rows = list(csv.reader(io.StringIO(capsys.readouterr().out)))
        assert rows[0] == ["id", "version", "operation", "status", "timestamp", "commit"]
        assert rows[1][:4] == ["demo", "1.0.0", "install", "success"]

        code, out = _run(capsys, ["receipts", "list", "--target", str(target), "--status", "success"])
        assert code == 0
        assert [r["id"] for r in out] == ["demo"]

    def test_keys_and_pack_signature(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        key_dir = tmp_path / "keys"
        assert main(["keys", "generate", "--key-dir", str(key_dir)]) == 0
        capsys.readouterr()
        pack = _demo(tmp_path)

        code, out = _run(
            capsys,
            ["pack", "sign", "--in", str(pack), "--key", str(key_dir / "private.ed25519"), "--signer", "ci"],
        )
        assert code == 0
        assert out["signer"] == "ci"

        code, out = _run(capsys, ["pack", "verify", "--in", str(pack), "--key", str(key_dir / "public.ed25519")])
        assert code == 0
        assert out == {"valid": True, "errors": []}

        code, out = _run(capsys, ["pack", "verify", "--in", str(pack)])
        assert code == 1
        assert out["errors"] == ["Public key not found"]

    def test_policy_validate(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        good = tmp_path / "good.json"
        good.write_text(json.dumps({"profile": "restrictive"}), encoding="utf-8")
        code, out = _run(capsys, ["policy", "validate", "--policy", str(good)])
        assert code == 0
        assert out["valid"] is True

        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"allowedModes": []}), encoding="utf-8")
        code, out = _run(capsys, ["policy", "validate", "--policy", str(bad)])
        assert code == 1
        assert "allowedModes must not be empty" in out["errors"]

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 1
        assert "packwright" in capsys.readouterr().out
