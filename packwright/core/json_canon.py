from __future__ import annotations

import json
import math
from typing import Any

from packwright.core.hash import sha256_bytes


def _normalize_numbers(obj: Any) -> Any:
    # Integral floats serialize without ".0"; non-finite numbers have no JSON form.
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError("non-finite number not allowed in canonical JSON")
        if obj.is_integer():
            return int(obj)
        return obj
    if isinstance(obj, dict):
        out: dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise ValueError("canonical JSON object keys must be strings")
            out[k] = _normalize_numbers(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_normalize_numbers(v) for v in obj]
    return obj


def canonical_json_bytes(obj: Any) -> bytes:
    """Return canonical JSON bytes (UTF-8, sorted keys, compact separators, no trailing LF)."""

    text = json.dumps(
        _normalize_numbers(obj),
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        allow_nan=False,
    )
    return text.encode("utf-8", errors="strict")


def canonical_hash(obj: Any) -> str:
    return sha256_bytes(canonical_json_bytes(obj))


def pretty_json_text(obj: Any) -> str:
    return json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
