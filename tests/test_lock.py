"""Target lock and registry update tests.

These tests verify:
- A second holder gets LockError(held) naming the current holder
- A lock older than the stale threshold is broken and re-acquired
- Releasing never removes a lock taken over by someone else
- An apply against a locked target returns a LockError result and writes nothing
- list_available_updates classifies newer registry versions
"""

from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from packwright.config import EngineConfig
from packwright.pack.capabilities import StaticRegistry
from packwright.pack.errors import LockError
from packwright.pack.lock import TargetLock
from packwright.pack.manager import Engine, EngineContext
from packwright.pack.vcs import NullVcs


class TestTargetLock:
    def test_second_holder_is_refused(self, tmp_path: Path) -> None:
        first = TargetLock(tmp_path / ".packwright", operation="apply")
        first.acquire()
        try:
            with pytest.raises(LockError) as ei:
                TargetLock(tmp_path / ".packwright", operation="remove").acquire()
            assert ei.value.reason == "held"
            assert ei.value.payload["holder"]["operation"] == "apply"
            assert ei.value.payload["holder"]["pid"] == os.getpid()
        finally:
            first.release()
        assert not first.lock_file.exists()

    def test_stale_lock_is_broken(self, tmp_path: Path) -> None:
        old = TargetLock(tmp_path, stale_after_seconds=60)
        old.acquire()
        past = time.time() - 120
        os.utime(old.lock_file, (past, past))

        with TargetLock(tmp_path, stale_after_seconds=60) as fresh:
            assert fresh.broke_stale
            assert fresh.read_holder()["token"] == fresh.token
        assert not fresh.lock_file.exists()

    def test_release_leaves_foreign_lock(self, tmp_path: Path) -> None:
        lock = TargetLock(tmp_path)
        lock.acquire()
        lock.lock_file.write_text(json.dumps({"token": "someone-else"}), encoding="utf-8")
        lock.release()
        assert lock.lock_file.exists()

    def test_locked_target_rejects_apply(self, engine, demo_pack, target: Path) -> None:
        holder = TargetLock(target / ".packwright")
        holder.acquire()
        try:
            res = engine.apply(demo_pack("1.0.0"), target)
        finally:
            holder.release()

        assert res.status == "error"
        assert res.error["kind"] == "LockError"
        assert res.error["reason"] == "held"
        assert not (target / "README.md").exists()


class TestAvailableUpdates:
    def test_classifies_newer_versions(self, tmp_path: Path, demo_pack, target: Path) -> None:
        registry = StaticRegistry({"demo": "1.4.0"})
        engine = Engine(
            EngineConfig(key_dir=str(tmp_path / "keys")),
            context=EngineContext(vcs_factory=lambda root: NullVcs(), registry=registry),
        )
        engine.apply(demo_pack("1.0.0"), target)

        assert engine.list_available_updates(target) == [
            {"id": "demo", "installed": "1.0.0", "latest": "1.4.0", "updateType": "minor"}
        ]

    def test_nothing_newer(self, tmp_path: Path, demo_pack, target: Path) -> None:
        engine = Engine(
            EngineConfig(key_dir=str(tmp_path / "keys")),
            context=EngineContext(vcs_factory=lambda root: NullVcs(), registry=StaticRegistry({"demo": "1.0.0"})),
        )
        engine.apply(demo_pack("1.0.0"), target)
        assert engine.list_available_updates(target) == []

    def test_no_registry(self, engine, target: Path) -> None:
        assert engine.list_available_updates(target) == []
