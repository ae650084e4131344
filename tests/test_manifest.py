"""Manifest loading tests.

These tests verify:
- Missing, unparsable and malformed manifests raise ManifestError with the right reason
- An unsupported abi raises AbiError
- Optional fields are filled with defaults (modes, file targets, conflict policy)
- Mode aliases and flat dependency maps are normalized
- Requirement checks warn on soft constraints and fail on a missing VCS
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import write_pack

from packwright.pack.errors import AbiError, ConstraintError, ManifestError
from packwright.pack.manifest import (
    MODES,
    check_constraints,
    load_manifest,
    update_type,
    version_satisfies,
)


class TestLoadErrors:
    def test_missing_manifest_names_path(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestError) as ei:
            load_manifest(tmp_path / "nowhere")
        assert ei.value.reason == "missing-file"
        assert ei.value.payload["path"] == str(tmp_path / "nowhere" / "pack.json")

    def test_parse_error(self, tmp_path: Path) -> None:
        (tmp_path / "pack.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ManifestError) as ei:
            load_manifest(tmp_path)
        assert ei.value.reason == "parse"

    def test_missing_required_fields(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x"})
        with pytest.raises(ManifestError) as ei:
            load_manifest(tmp_path)
        assert ei.value.reason == "schema"

    @pytest.mark.parametrize("version", ["1.0", "01.0.0", "1.0.0-beta", "v1.0.0"])
    def test_bad_versions(self, tmp_path: Path, version: str) -> None:
        write_pack(tmp_path, {"id": "x", "version": version})
        with pytest.raises(ManifestError):
            load_manifest(tmp_path)

    def test_abi_mismatch(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0", "abi": "2.0"})
        with pytest.raises(AbiError) as ei:
            load_manifest(tmp_path)
        assert ei.value.reason == "mismatch"
        assert ei.value.exit_code == 5

    def test_escaping_target_rejected(self, tmp_path: Path) -> None:
        write_pack(
            tmp_path,
            {"id": "x", "version": "1.0.0", "provides": {"files": [{"src": "a", "target": "../a"}]}},
        )
        with pytest.raises(ManifestError):
            load_manifest(tmp_path)


class TestDefaults:
    def test_minimal_manifest_defaults(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "mini", "version": "0.1.0", "abi": "1.0"})
        m = load_manifest(tmp_path)
        assert m.id == "mini"
        assert m.abi == "1.0"
        assert m.modes == list(MODES)
        assert m.conflict_policy == "skip"
        assert m.dependencies == {}
        assert all(items == [] for items in m.provides.values())
        assert m.post_install == []

    def test_file_item_defaults(self, tmp_path: Path) -> None:
        write_pack(
            tmp_path,
            {
                "id": "x",
                "version": "1.0.0",
                "provides": {"files": [{"src": "docs/a.md"}], "templates": [{"src": "b.sh", "target": "bin/b.sh"}]},
            },
        )
        m = load_manifest(tmp_path)
        assert m.provides["files"] == [{"src": "docs/a.md", "target": "docs/a.md", "mode": "write"}]
        assert m.provides["templates"][0]["executable"] is False

    def test_accepts_path_to_manifest_file(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0"})
        assert load_manifest(tmp_path / "pack.json").root == tmp_path.resolve()

    def test_mode_aliases(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0", "modes": ["existing-repo", "existing-tree"]})
        assert load_manifest(tmp_path).modes == ["existing-tree"]

    def test_flat_dependency_map(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0", "dependencies": {"b": "2", "a": "1"}})
        assert load_manifest(tmp_path).dependencies == {"dependencies": {"a": "1", "b": "2"}}

    def test_unknown_top_level_fields_are_kept_as_extra(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0", "registry": "internal"})
        assert load_manifest(tmp_path).extra == {"registry": "internal"}

    def test_scoped_ids(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "@acme/docs", "version": "1.0.0"})
        assert load_manifest(tmp_path).id == "@acme/docs"


class TestConstraints:
    def test_vcs_required_but_absent(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0", "requires": {"git": True}})
        with pytest.raises(ConstraintError) as ei:
            check_constraints(load_manifest(tmp_path), vcs_available=False)
        assert ei.value.reason == "requirement"

    def test_soft_constraints_warn(self, tmp_path: Path) -> None:
        write_pack(tmp_path, {"id": "x", "version": "1.0.0", "requires": {"python": ">=99.0", "node": ">=18"}})
        warnings = check_constraints(load_manifest(tmp_path), vcs_available=True)
        assert any("python" in w and "not met" in w for w in warnings)
        assert any("node" in w for w in warnings)

    @pytest.mark.parametrize(
        "actual,constraint,expected",
        [("3.12.1", ">=3.11", True), ("3.12.1", "^3.0", True), ("3.12.1", "~3.11", False), ("1.2.3", "junk", None)],
    )
    def test_version_satisfies(self, actual: str, constraint: str, expected: bool | None) -> None:
        assert version_satisfies(actual, constraint) is expected

    def test_update_type(self) -> None:
        assert update_type("1.0.0", "2.0.0") == "major"
        assert update_type("1.0.0", "1.1.0") == "minor"
        assert update_type("1.0.0", "1.0.1") == "patch"
        assert update_type("1.0.0", "1.0.0") is None
