"""Tests for canonical JSON, hashing and the path jail.

These tests verify:
- Canonical JSON is key-sorted, compact, UTF-8 and has no trailing newline
- Integral floats serialize as integers; non-finite numbers are rejected
- Manifest fingerprints ignore key order and fields outside {version, provides, dependencies}
- Relative path normalization rejects escapes, absolute paths and NUL bytes
- The manifest schema subset reports sorted, located errors
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import write_pack

from packwright.core.hash import is_hex_sha256, sha256_bytes, sha256_file
from packwright.core.jail import ensure_within_root, normalize_rel, resolve_rel_path, safe_relpath
from packwright.core.json_canon import canonical_hash, canonical_json_bytes
from packwright.core.schema import validate_schema
from packwright.core.time import format_utc_z_ms, parse_utc_z
from packwright.pack.manifest import load_manifest


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------

class TestCanonicalJson:
    def test_sorted_compact_no_trailing_newline(self) -> None:
        out = canonical_json_bytes({"b": 1, "a": [3, 1, {"d": None, "c": True}]})
        assert out == b'{"a":[3,1,{"c":true,"d":null}],"b":1}'

    def test_utf8_is_not_escaped(self) -> None:
        assert canonical_json_bytes({"k": "h\u00e9"}) == '{"k":"h\u00e9"}'.encode("utf-8")

    def test_integral_float_written_as_integer(self) -> None:
        assert canonical_json_bytes({"n": 2.0, "m": 2.5}) == b'{"m":2.5,"n":2}'

    def test_non_finite_rejected(self) -> None:
        with pytest.raises(ValueError):
            canonical_json_bytes({"n": float("nan")})

    def test_parse_of_canonical_is_identity(self) -> None:
        value = {"z": [1, "two", {"x": False}], "a": {"nested": [None, 3.25]}}
        assert json.loads(canonical_json_bytes(value)) == value

    def test_hash_matches_sha256_of_bytes(self) -> None:
        obj = {"a": 1}
        assert canonical_hash(obj) == sha256_bytes(b'{"a":1}')
        assert is_hex_sha256(canonical_hash(obj))


class TestFingerprint:
    def test_key_order_does_not_change_fingerprint(self, tmp_path: Path) -> None:
        a = write_pack(
            tmp_path / "a",
            {
                "id": "fp",
                "version": "1.0.0",
                "provides": {"files": [{"src": "x.txt", "target": "x.txt", "mode": "write"}]},
                "dependencies": {"left-pad": "1.3.0"},
            },
        )
        b = tmp_path / "b"
        b.mkdir()
        (b / "pack.json").write_text(
            '{"dependencies":{"left-pad":"1.3.0"},'
            '"provides":{"files":[{"mode":"write","target":"x.txt","src":"x.txt"}]},'
            '"version":"1.0.0","id":"fp"}',
            encoding="utf-8",
        )
        assert load_manifest(a).fingerprint() == load_manifest(b).fingerprint()

    def test_unrelated_fields_do_not_change_fingerprint(self, tmp_path: Path) -> None:
        base = {"id": "fp", "version": "1.0.0"}
        a = write_pack(tmp_path / "a", dict(base, description="one"))
        b = write_pack(tmp_path / "b", dict(base, description="two", tags=["x"]))
        assert load_manifest(a).fingerprint() == load_manifest(b).fingerprint()

    def test_version_changes_fingerprint(self, tmp_path: Path) -> None:
        a = write_pack(tmp_path / "a", {"id": "fp", "version": "1.0.0"})
        b = write_pack(tmp_path / "b", {"id": "fp", "version": "1.0.1"})
        assert load_manifest(a).fingerprint() != load_manifest(b).fingerprint()


# ---------------------------------------------------------------------------
# Path jail
# ---------------------------------------------------------------------------

class TestNormalizeRel:
    @pytest.mark.parametrize(
        "rel",
        ["", "/etc/passwd", "../up", "a/../../b", "C:/x", "a\x00b", "http://x/y", "a\\b"],
    )
    def test_rejects(self, rel: str) -> None:
        with pytest.raises(ValueError):
            normalize_rel(rel, allow_backslashes=False)

    def test_strips_dot_prefix_and_duplicate_slashes(self) -> None:
        assert normalize_rel("./docs//guide/a.md", allow_backslashes=False) == "docs/guide/a.md"

    def test_backslashes_when_allowed(self) -> None:
        assert normalize_rel("docs\\a.md", allow_backslashes=True) == "docs/a.md"


class TestResolveRelPath:
    def test_stays_inside_root(self, tmp_path: Path) -> None:
        p = resolve_rel_path(tmp_path, "a/b.txt", must_exist=False)
        assert p == (tmp_path / "a" / "b.txt").resolve()

    def test_symlink_escape_rejected(self, tmp_path: Path) -> None:
        outside = tmp_path / "outside"
        outside.mkdir()
        root = tmp_path / "root"
        root.mkdir()
        (root / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(ValueError):
            resolve_rel_path(root, "link/x.txt", must_exist=False)

    def test_must_exist(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="missing path"):
            resolve_rel_path(tmp_path, "nope.txt", must_exist=True)

    def test_ensure_within_root_and_relpath(self, tmp_path: Path) -> None:
        inside = tmp_path / "x" / "y.txt"
        ensure_within_root(tmp_path, inside)
        assert safe_relpath(tmp_path, inside) == "x/y.txt"
        with pytest.raises(ValueError):
            ensure_within_root(tmp_path / "x", tmp_path / "z.txt")


class TestHashAndTime:
    def test_sha256_file(self, tmp_path: Path) -> None:
        p = tmp_path / "f.bin"
        p.write_bytes(b"abc")
        assert sha256_file(p) == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_millisecond_timestamps(self) -> None:
        dt = parse_utc_z("2024-01-02T03:04:05.678901Z")
        assert format_utc_z_ms(dt) == "2024-01-02T03:04:05.678Z"


# ---------------------------------------------------------------------------
# Schema subset
# ---------------------------------------------------------------------------

class TestValidateSchema:
    SCHEMA = {
        "type": "object",
        "required": ["name"],
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "size": {"type": "number", "minimum": 0},
            "tags": {"type": "array", "items": {"$ref": "#/definitions/tag"}},
        },
        "definitions": {"tag": {"type": "string", "enum": ["a", "b"]}},
    }

    def _errors(self, obj: object) -> list[str]:
        return [str(e) for e in validate_schema(obj, self.SCHEMA, root_schema=self.SCHEMA, path="doc")]

    def test_valid(self) -> None:
        assert self._errors({"name": "x", "size": 3, "tags": ["a"]}) == []

    def test_integer_counts_as_number_but_bool_does_not(self) -> None:
        assert self._errors({"name": "x", "size": 2}) == []
        assert self._errors({"name": "x", "size": True}) == ["doc.size: expected type number, got boolean"]

    def test_errors_are_sorted_and_located(self) -> None:
        assert self._errors({"size": -1, "tags": ["a", "c"]}) == [
            "doc: missing required 'name'",
            "doc.size: less than 0",
            "doc.tags[1]: must be one of ['a', 'b']",
        ]

    def test_unresolvable_ref(self) -> None:
        schema = {"$ref": "#/definitions/nope"}
        errs = validate_schema({}, schema, root_schema=schema, path="doc")
        assert [e.message for e in errs] == ["unresolvable $ref: #/definitions/nope"]
