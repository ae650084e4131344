"""In-place edits of existing files and the `merge` file mode."""

from __future__ import annotations

import json
import re
from typing import Any


def _dedupe_key(v: Any) -> str:
    if isinstance(v, str):
        return v
    return json.dumps(v, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def deep_merge(base: Any, incoming: Any) -> Any:
    """Merge `incoming` into `base`.

    Objects merge key by key, arrays concatenate with duplicates (by string
    form) dropped, and any other value in `incoming` replaces the one in base.
    """

    if isinstance(base, dict) and isinstance(incoming, dict):
        out = dict(base)
        for k, v in incoming.items():
            out[k] = deep_merge(base[k], v) if k in base else v
        return out
    if isinstance(base, list) and isinstance(incoming, list):
        out_list = list(base)
        seen = {_dedupe_key(v) for v in base}
        for v in incoming:
            key = _dedupe_key(v)
            if key not in seen:
                seen.add(key)
                out_list.append(v)
        return out_list
    return incoming


def _dump_json(obj: Any) -> bytes:
    return (json.dumps(obj, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def json_merge(existing: bytes, spec: Any) -> bytes:
    try:
        base = json.loads(existing.decode("utf-8")) if existing.strip() else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"target is not valid JSON: {e}") from e
    return _dump_json(deep_merge(base, spec))


def text_insert(existing: bytes, spec: str, *, anchor: str | None, position: str = "after") -> bytes:
    """Insert `spec` next to the first literal `anchor`; append when the anchor is absent.

    Re-inserting text that is already present is a no-op.
    """

    text = existing.decode("utf-8")
    if spec in text:
        return existing
    if anchor:
        idx = text.find(anchor)
        if idx != -1:
            at = idx if position == "before" else idx + len(anchor)
            return (text[:at] + spec + text[at:]).encode("utf-8")
    sep = "" if not text or text.endswith("\n") else "\n"
    return (text + sep + spec).encode("utf-8")


def line_replace(existing: bytes, spec: str, *, anchor: str) -> bytes:
    rx = re.compile(anchor)
    text = existing.decode("utf-8")
    lines = text.splitlines(keepends=True)
    out: list[str] = []
    for line in lines:
        body = line.rstrip("\r\n")
        if rx.search(body):
            out.append(spec + line[len(body):])
        else:
            out.append(line)
    return "".join(out).encode("utf-8")


def apply_transform(kind: str, existing: bytes, spec: Any, *, anchor: str | None, position: str = "after") -> bytes:
    if kind == "json-merge":
        return json_merge(existing, spec)
    if kind == "text-insert":
        return text_insert(existing, str(spec), anchor=anchor, position=position)
    if kind == "line-replace":
        if not anchor:
            raise ValueError("line-replace requires an anchor")
        return line_replace(existing, str(spec), anchor=anchor)
    raise ValueError(f"unknown transform kind: {kind}")


def merge_content(target_name: str, existing: bytes, incoming: bytes, *, anchor: str | None) -> bytes:
    """The `merge` file mode: JSON deep-merge for .json targets, anchored text insertion otherwise."""

    if target_name.endswith(".json"):
        try:
            spec = json.loads(incoming.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"pack content is not valid JSON: {e}") from e
        return json_merge(existing, spec)
    return text_insert(existing, incoming.decode("utf-8"), anchor=anchor, position="after")
