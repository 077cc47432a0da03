"""
Condition -- the boolean expression tree every filter, set expression and
access predicate compiles into.

Leaves are ``FieldCondition(field, operator, value)``; internal nodes are
``And`` / ``Or``.  ``MATCH_ALL`` and ``MATCH_NONE`` are the neutral
elements, so fragments can be combined freely with ``and_`` / ``or_``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Union

from recordhub.core.errors import FilterParseError
from recordhub.core.utils import parse_iso, ISO_DATETIME_RE


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    BETWEEN = "between"
    INQ = "inq"
    NIN = "nin"
    LIKE = "like"
    NLIKE = "nlike"
    ILIKE = "ilike"
    NILIKE = "nilike"
    REGEXP = "regexp"
    EXISTS = "exists"


OPERATOR_NAMES = frozenset(op.value for op in Operator)


# ── Nodes ───────────────────────────────────────────────


@dataclass(frozen=True)
class FieldCondition:
    """Leaf: ``field <operator> value``.

    ``literal`` keeps the raw query-string text when the value was inferred
    from it (``"5"`` -> 5), so string-typed fields still compare equal.
    For list-valued operators it is a tuple aligned with ``value``.
    """
    field: str
    operator: Operator
    value: Any = None
    literal: str | tuple | None = None


@dataclass(frozen=True)
class And:
    children: tuple


@dataclass(frozen=True)
class Or:
    children: tuple


@dataclass(frozen=True)
class _Constant:
    value: bool

    def __repr__(self) -> str:
        return "MATCH_ALL" if self.value else "MATCH_NONE"


MATCH_ALL = _Constant(True)
MATCH_NONE = _Constant(False)

Condition = Union[FieldCondition, And, Or, _Constant]


# ── Combinators ─────────────────────────────────────────


def and_(*conditions: Condition) -> Condition:
    """Conjunction with flattening; MATCH_ALL operands vanish."""
    children: list[Condition] = []
    for cond in conditions:
        if cond is MATCH_ALL or cond is None:
            continue
        if cond is MATCH_NONE:
            return MATCH_NONE
        if isinstance(cond, And):
            children.extend(cond.children)
        else:
            children.append(cond)
    if not children:
        return MATCH_ALL
    if len(children) == 1:
        return children[0]
    return And(tuple(children))


def or_(*conditions: Condition) -> Condition:
    """Disjunction with flattening; MATCH_NONE operands vanish."""
    children: list[Condition] = []
    for cond in conditions:
        if cond is MATCH_NONE or cond is None:
            continue
        if cond is MATCH_ALL:
            return MATCH_ALL
        if isinstance(cond, Or):
            children.extend(cond.children)
        else:
            children.append(cond)
    if not children:
        return MATCH_NONE
    if len(children) == 1:
        return children[0]
    return Or(tuple(children))


def eq(field: str, value: Any) -> FieldCondition:
    return FieldCondition(field, Operator.EQ, value)


def prefixed(cond: Condition, prefix: str) -> Condition:
    """Rewrite every leaf's field path to live under ``prefix.``."""
    if isinstance(cond, FieldCondition):
        return replace(cond, field=f"{prefix}.{cond.field}")
    if isinstance(cond, And):
        return And(tuple(prefixed(c, prefix) for c in cond.children))
    if isinstance(cond, Or):
        return Or(tuple(prefixed(c, prefix) for c in cond.children))
    return cond


# ── Value coercion ──────────────────────────────────────

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")

TYPE_HINTS = ("number", "date", "string", "boolean")


def coerce_value(value: Any, type_hint: str | None = None) -> tuple[Any, str | None]:
    """Coerce a literal per *type_hint*, or infer from its lexical form.

    Returns ``(value, literal)`` where *literal* is the original text when
    the value was inferred from a string, else None.
    """
    if type_hint is not None:
        return _coerce_hinted(value, type_hint), None

    if value is None:
        return None, None
    if isinstance(value, datetime):
        return value, None
    if not isinstance(value, str):
        return value, None
    if value == "null":
        return None, None
    if value in ("true", "false"):
        return value == "true", value
    if ISO_DATETIME_RE.match(value):
        parsed = parse_iso(value)
        if parsed is not None:
            return parsed, value
        return value, None
    if _NUMBER_RE.match(value):
        number = float(value) if "." in value else int(value)
        return number, value
    return value, None


def _coerce_hinted(value: Any, type_hint: str) -> Any:
    hint = type_hint.lower()
    if value is None or value == "null":
        return None
    if hint == "string":
        return str(value)
    if hint == "number":
        if isinstance(value, bool):
            raise FilterParseError(f"Value {value!r} is not a number.")
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip()
        try:
            return float(text) if any(c in text for c in ".eE") else int(text)
        except ValueError:
            raise FilterParseError(f"Value {value!r} is not a number.")
    if hint == "date":
        if isinstance(value, datetime):
            return value
        parsed = parse_iso(str(value), allow_date=True)
        if parsed is None:
            raise FilterParseError(f"Value {value!r} is not an ISO-8601 date.")
        return parsed
    if hint == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
        raise FilterParseError(f"Value {value!r} is not a boolean.")
    raise FilterParseError(
        f"Unknown type hint '{type_hint}'. Use any of: {', '.join(TYPE_HINTS)}"
    )
