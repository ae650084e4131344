"""Input resolution tests.

These tests verify:
- Caller values are coerced per declared type (boolean, number, path, multiselect)
- Validation enforces range, length, pattern and enum membership
- Unset inputs are answered by the prompt capability, then by defaults
- A required input with no answer and no default fails with missing-required
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import write_pack

from packwright.pack.capabilities import UNANSWERED, CallbackPrompt, NonInteractivePrompt
from packwright.pack.errors import InputError
from packwright.pack.inputs import InputResolver
from packwright.pack.manifest import Manifest, load_manifest


def _manifest(tmp_path: Path, inputs: list[dict[str, Any]]) -> Manifest:
    return load_manifest(write_pack(tmp_path / "pack", {"id": "inputs", "version": "1.0.0", "inputs": inputs}))


class TestCoercion:
    @pytest.mark.parametrize("raw,expected", [("yes", True), ("NO", False), ("1", True), ("false", False), (True, True)])
    def test_boolean(self, tmp_path: Path, raw: Any, expected: bool) -> None:
        m = _manifest(tmp_path, [{"key": "flag", "type": "boolean"}])
        assert InputResolver(base_dir=tmp_path).resolve(m, {"flag": raw}) == {"flag": expected}

    def test_boolean_rejects_other_words(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "flag", "type": "boolean"}])
        with pytest.raises(InputError) as ei:
            InputResolver(base_dir=tmp_path).resolve(m, {"flag": "maybe"})
        assert ei.value.reason == "coerce"
        assert ei.value.payload["key"] == "flag"

    def test_number(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "n", "type": "number"}, {"key": "r", "type": "number"}])
        assert InputResolver(base_dir=tmp_path).resolve(m, {"n": "3", "r": "2.5"}) == {"n": 3, "r": 2.5}

    def test_path_resolves_against_base_dir(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "out", "type": "path"}])
        out = InputResolver(base_dir=tmp_path).resolve(m, {"out": "build/out"})
        assert out == {"out": str((tmp_path / "build" / "out").resolve())}

    def test_multiselect_accepts_comma_string(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "langs", "type": "multiselect", "enum": ["py", "js", "go"]}])
        out = InputResolver(base_dir=tmp_path).resolve(m, {"langs": "py, go"})
        assert out == {"langs": ["py", "go"]}


class TestValidation:
    def test_number_range(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "port", "type": "number", "min": 1, "max": 65535}])
        with pytest.raises(InputError) as ei:
            InputResolver(base_dir=tmp_path).resolve(m, {"port": 70000})
        assert ei.value.reason == "validate"

    def test_string_pattern_and_length(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "slug", "type": "string", "pattern": "^[a-z-]+$", "maxLength": 8}])
        r = InputResolver(base_dir=tmp_path)
        assert r.resolve(m, {"slug": "ok-slug"}) == {"slug": "ok-slug"}
        with pytest.raises(InputError):
            r.resolve(m, {"slug": "Not_OK"})
        with pytest.raises(InputError):
            r.resolve(m, {"slug": "much-too-long"})

    def test_enum_membership(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "ci", "type": "select", "enum": ["github", "gitlab"]}])
        with pytest.raises(InputError) as ei:
            InputResolver(base_dir=tmp_path).resolve(m, {"ci": "jenkins"})
        assert ei.value.reason == "validate"


class TestPrompting:
    def test_prompt_answers_unset_inputs_only(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "a", "type": "string"}, {"key": "b", "type": "string"}])
        prompt = NonInteractivePrompt({"a": "from-prompt", "b": "from-prompt"})
        out = InputResolver(prompt, base_dir=tmp_path).resolve(m, {"a": "given"})
        assert out == {"a": "given", "b": "from-prompt"}
        assert prompt.asked == ["b"]

    def test_default_used_when_unanswered(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "name", "type": "string", "required": True, "default": "world"}])
        prompt = CallbackPrompt(lambda spec: UNANSWERED)
        assert InputResolver(prompt, base_dir=tmp_path).resolve(m) == {"name": "world"}

    def test_required_without_default_fails(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "name", "type": "string", "required": True}])
        with pytest.raises(InputError) as ei:
            InputResolver(NonInteractivePrompt(), base_dir=tmp_path).resolve(m)
        assert ei.value.reason == "missing-required"
        assert ei.value.payload["key"] == "name"

    def test_optional_input_resolves_to_none(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "note", "type": "text"}])
        assert InputResolver(base_dir=tmp_path).resolve(m) == {"note": None}

    def test_prompted_values_are_coerced(self, tmp_path: Path) -> None:
        m = _manifest(tmp_path, [{"key": "count", "type": "number"}])
        prompt = CallbackPrompt(lambda spec: "7")
        assert InputResolver(prompt, base_dir=tmp_path).resolve(m) == {"count": 7}
