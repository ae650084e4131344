"""The `when` condition grammar for provided items.

    expr    := ident ( "==" literal | "!=" literal | "?" )
    ident   := "mode" | "inputs." KEY
    literal := quoted string | true | false | null | number | bare word

`inputs.KEY ?` tests presence (value set and not empty). A JSON boolean is
accepted in place of an expression. Anything else is rejected.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping

from packwright.pack.errors import PlanError


_EXPR_RE = re.compile(
    r"""^\s*
    (?P<ident>mode|inputs\.[A-Za-z_][A-Za-z0-9_-]*)
    \s*
    (?:
        (?P<op>==|!=)\s*(?P<lit>"(?:[^"\\]|\\.)*"|'[^']*'|[^\s"'=!?]+)
      | (?P<presence>\?)
    )
    \s*$""",
    re.VERBOSE,
)

_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


@dataclass(frozen=True)
class Condition:
    ident: str
    op: str
    literal: Any = None

    def evaluate(self, *, mode: str, inputs: Mapping[str, Any]) -> bool:
        if self.ident == "mode":
            value: Any = mode
        else:
            value = inputs.get(self.ident[len("inputs."):])
        if self.op == "?":
            return value is not None and value != "" and value != []
        equal = _loose_equal(value, self.literal)
        return equal if self.op == "==" else not equal


def _parse_literal(tok: str) -> Any:
    if tok.startswith('"'):
        return json.loads(tok)
    if tok.startswith("'"):
        return tok[1:-1]
    if tok == "true":
        return True
    if tok == "false":
        return False
    if tok == "null":
        return None
    if _NUMBER_RE.match(tok):
        return float(tok) if "." in tok else int(tok)
    return tok


def _loose_equal(value: Any, literal: Any) -> bool:
    if isinstance(value, bool) and isinstance(literal, str):
        return ("true" if value else "false") == literal.lower()
    if isinstance(value, bool) or isinstance(literal, bool):
        return isinstance(value, bool) and isinstance(literal, bool) and value == literal
    if isinstance(value, (int, float)) and isinstance(literal, (int, float)):
        return value == literal
    if isinstance(value, list):
        return str(literal) in [str(v) for v in value]
    if value is None or literal is None:
        return value is literal
    return str(value) == str(literal)


def parse_when(expr: Any) -> Condition | bool:
    if isinstance(expr, bool):
        return expr
    if not isinstance(expr, str):
        raise PlanError(f"when expression must be a string, got {type(expr).__name__}", reason="when-expr", expr=repr(expr))
    m = _EXPR_RE.match(expr)
    if m is None:
        raise PlanError(f"Unsupported when expression: {expr!r}", reason="when-expr", expr=expr)
    if m.group("presence"):
        return Condition(ident=m.group("ident"), op="?")
    try:
        literal = _parse_literal(m.group("lit"))
    except ValueError:
        raise PlanError(f"Invalid literal in when expression: {expr!r}", reason="when-expr", expr=expr) from None
    return Condition(ident=m.group("ident"), op=m.group("op"), literal=literal)


def evaluate_when(expr: Any, *, mode: str, inputs: Mapping[str, Any]) -> bool:
    """True when the item applies; a missing `when` always applies."""

    if expr is None:
        return True
    cond = parse_when(expr)
    if isinstance(cond, bool):
        return cond
    return cond.evaluate(mode=mode, inputs=inputs)
