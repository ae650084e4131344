"""A small JSON-schema subset used for manifest validation.

Supported keywords: `$ref` (internal `#/...` only), `type` (name or list),
`enum`, `minLength`, `minimum`, `required`, `properties`, `items`.
Anything else in a schema node is ignored. Errors come back sorted so the
same manifest always yields the same message.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class SchemaError:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


_JSON_TYPES: tuple[tuple[type | tuple[type, ...], str], ...] = (
    (bool, "boolean"),
    (int, "integer"),
    (float, "number"),
    (str, "string"),
    (list, "array"),
    (dict, "object"),
)


def json_type_name(v: Any) -> str:
    if v is None:
        return "null"
    for py_type, name in _JSON_TYPES:
        if isinstance(v, py_type):
            return name
    return type(v).__name__


def _accepts(expected: str, actual: str) -> bool:
    return actual == expected or (expected == "number" and actual == "integer")


def _lookup_ref(root: dict[str, Any], ref: str) -> Any:
    if ref == "#":
        return root
    if not ref.startswith("#/"):
        raise ValueError(f"only internal $ref is supported: {ref}")
    node: Any = root
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, dict) or part not in node:
            raise ValueError(f"unresolvable $ref: {ref}")
        node = node[part]
    return node


class _Validator:
    def __init__(self, root_schema: dict[str, Any]) -> None:
        self.root = root_schema
        self.errors: list[SchemaError] = []

    def fail(self, path: str, message: str) -> None:
        self.errors.append(SchemaError(path=path, message=message))

    def check(self, value: Any, schema: Any, path: str) -> None:
        if not isinstance(schema, dict):
            self.fail(path, "schema node is not an object")
            return
        ref = schema.get("$ref")
        if ref is not None:
            try:
                schema = _lookup_ref(self.root, str(ref))
            except ValueError as e:
                self.fail(path, str(e))
                return
            self.check(value, schema, path)
            return

        actual = json_type_name(value)
        expected = schema.get("type")
        allowed = [expected] if isinstance(expected, str) else list(expected or [])
        if allowed and not any(_accepts(str(t), actual) for t in allowed):
            shown = allowed[0] if len(allowed) == 1 else allowed
            self.fail(path, f"expected type {shown}, got {actual}")
            return

        enum = schema.get("enum")
        if isinstance(enum, list) and value not in enum:
            self.fail(path, f"must be one of {enum}")
            return

        if actual == "string" and "minLength" in schema and len(value) < int(schema["minLength"]):
            self.fail(path, f"shorter than {schema['minLength']}")
        if actual in ("integer", "number") and "minimum" in schema and value < schema["minimum"]:
            self.fail(path, f"less than {schema['minimum']}")

        if actual == "object":
            self._object(value, schema, path)
        elif actual == "array" and isinstance(schema.get("items"), dict):
            for i, item in enumerate(value):
                self.check(item, schema["items"], f"{path}[{i}]")

    def _object(self, value: dict[str, Any], schema: dict[str, Any], path: str) -> None:
        for key in schema.get("required", []):
            if key not in value:
                self.fail(path, f"missing required '{key}'")
        props = schema.get("properties") or {}
        for key in sorted(props):
            if key in value:
                self.check(value[key], props[key], f"{path}.{key}")


def validate_schema(obj: Any, schema: dict[str, Any], *, root_schema: dict[str, Any], path: str) -> list[SchemaError]:
    v = _Validator(root_schema)
    v.check(obj, schema, path)
    return sorted(v.errors, key=lambda e: (e.path, e.message))
