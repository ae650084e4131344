"""Lowest-level packwright utilities.

Dependency direction rules:
- packwright.core must not import packwright.pack
"""

from packwright.core.hash import is_hex_sha256, sha256_bytes, sha256_file
from packwright.core.jail import (
	ensure_within_root,
	normalize_rel,
	resolve_rel_path,
	safe_relpath,
)
from packwright.core.json_canon import canonical_hash, canonical_json_bytes, pretty_json_text
from packwright.core.schema import SchemaError, validate_schema

__all__ = [
	"SchemaError",
	"canonical_hash",
	"canonical_json_bytes",
	"ensure_within_root",
	"is_hex_sha256",
	"normalize_rel",
	"pretty_json_text",
	"resolve_rel_path",
	"safe_relpath",
	"sha256_bytes",
	"sha256_file",
	"validate_schema",
]
