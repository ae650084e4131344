"""Receipt store tests.

These tests verify:
- build() fills every required field and seals integrity last
- verify() reports missing fields, integrity drift and unknown commits
- Queries filter and sort receipts newest first; export writes JSON and CSV
- With git available, receipts are attached as notes and several receipts on one commit share a note
"""

from __future__ import annotations

import csv
import io
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import README_BYTES, demo_manifest, write_pack

from packwright.config import EngineConfig
from packwright.pack.capabilities import FixedClock
from packwright.pack.manager import Engine, EngineContext
from packwright.pack.receipt import CSV_COLUMNS, REQUIRED_FIELDS, ReceiptStore, receipt_integrity
from packwright.pack.vcs import GitVcs


T0 = datetime(2024, 5, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)


def _build(store: ReceiptStore, pack_id: str = "demo", **kw) -> dict:
    args = dict(
        pack_id=pack_id,
        version="1.0.0",
        operation="install",
        status="success",
        fingerprint="f" * 64,
        manifest_hash="m" * 64,
        mode="fresh-tree",
        details={"inputs": {}},
        artifacts=[],
    )
    args.update(kw)
    return store.build(**args)


class TestBuildAndVerify:
    def test_required_fields_and_timestamp(self, tmp_path: Path) -> None:
        store = ReceiptStore(tmp_path, clock=FixedClock(T0))
        r = _build(store)
        assert all(f in r for f in REQUIRED_FIELDS)
        assert r["timestamp"] == "2024-05-01T12:00:00.250Z"
        assert r["commit"] == "unknown"
        assert r["environment"]["utcTimestamp"] == r["timestamp"]
        assert r["integrity"]["receipt"] == receipt_integrity(r)

    def test_written_receipt_verifies(self, tmp_path: Path) -> None:
        store = ReceiptStore(tmp_path, clock=FixedClock(T0))
        r = _build(store)
        store.write(r)
        read_back = store.read_installed("demo")
        assert read_back == r
        assert store.verify(read_back).valid

    def test_missing_fields(self, tmp_path: Path) -> None:
        store = ReceiptStore(tmp_path)
        r = _build(store)
        del r["artifacts"]
        del r["mode"]
        res = store.verify(r)
        assert not res.valid
        assert res.errors == ["Missing required field: mode", "Missing required field: artifacts"]

    def test_any_field_change_breaks_integrity(self, tmp_path: Path) -> None:
        store = ReceiptStore(tmp_path)
        r = _build(store)
        r["details"]["inputs"]["sneaky"] = True
        assert store.verify(r).errors == ["Receipt integrity check failed"]

    def test_rejects_unknown_operation(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            _build(ReceiptStore(tmp_path), operation="uninstall")


class TestQueries:
    @pytest.fixture
    def store(self, tmp_path: Path) -> ReceiptStore:
        store = ReceiptStore(tmp_path)
        for i, (pack_id, status) in enumerate([("a", "success"), ("b", "partial"), ("c", "success")]):
            store.clock = FixedClock(T0 + timedelta(minutes=i))
            store.write(_build(store, pack_id=pack_id, status=status))
        return store

    def test_all_newest_first(self, store: ReceiptStore) -> None:
        assert [r["id"] for r in store.all()] == ["c", "b", "a"]

    def test_filters(self, store: ReceiptStore) -> None:
        assert [r["id"] for r in store.list_by_status("success")] == ["c", "a"]
        assert [r["id"] for r in store.list_by_operation("install")] == ["c", "b", "a"]
        assert store.read("b", latest=True)["status"] == "partial"
        assert store.history("a")[0]["id"] == "a"
        assert store.read("zzz", latest=True) is None

    def test_export_csv(self, store: ReceiptStore) -> None:
        rows = list(csv.reader(io.StringIO(store.export("csv"))))
        assert rows[0] == list(CSV_COLUMNS)
        assert [row[0] for row in rows[1:]] == ["c", "b", "a"]
        assert rows[1][5] == "unknown"

    def test_export_json(self, store: ReceiptStore) -> None:
        exported = json.loads(store.export("json"))
        assert [r["id"] for r in exported] == ["c", "b", "a"]

    def test_export_unknown_format(self, store: ReceiptStore) -> None:
        with pytest.raises(ValueError):
            store.export("xml")


@pytest.mark.git
class TestGitNotes:
    def _engine(self, tmp_path: Path) -> Engine:
        return Engine(EngineConfig(key_dir=str(tmp_path / "keys")), context=EngineContext())

    def test_receipt_attached_to_head(self, tmp_path: Path, git_target: Path) -> None:
        pack = write_pack(tmp_path / "pack", demo_manifest(), {"assets/README.md": README_BYTES})
        engine = self._engine(tmp_path)

        res = engine.apply(pack, git_target)

        assert res.status == "success", res.to_dict()
        vcs = GitVcs(git_target)
        head = vcs.head()
        assert res.receipt["commit"] == head
        note = json.loads(vcs.read_note("refs/notes/packwright/pack-receipts", head))
        assert note == res.receipt
        assert engine.verify_receipt(res.receipt, git_target).valid
        assert engine.store(git_target).read("demo", latest=True) == res.receipt

    def test_second_receipt_on_same_commit_shares_note(self, tmp_path: Path, git_target: Path) -> None:
        engine = self._engine(tmp_path)
        one = write_pack(tmp_path / "one", {"id": "one", "version": "1.0.0"})
        two = write_pack(tmp_path / "two", {"id": "two", "version": "1.0.0"})
        engine.apply(one, git_target)
        engine.apply(two, git_target)

        vcs = GitVcs(git_target)
        body = json.loads(vcs.read_note("refs/notes/packwright/pack-receipts", vcs.head()))
        assert isinstance(body, list)
        assert [r["id"] for r in body] == ["one", "two"]
        assert {r["id"] for r in engine.store(git_target).all()} == {"one", "two"}

    def test_unknown_commit_fails_verification(self, tmp_path: Path, git_target: Path) -> None:
        pack = write_pack(tmp_path / "pack", demo_manifest(), {"assets/README.md": README_BYTES})
        engine = self._engine(tmp_path)
        res = engine.apply(pack, git_target)

        forged = dict(res.receipt, commit="0" * 40)
        check = engine.verify_receipt(forged, git_target)

        assert not check.valid
        assert f"Commit not found: {'0' * 40}" in check.errors
