"""
In-memory evaluation of a ``Condition`` against a record document.

Semantics follow document-store conventions:
  - ``eq`` / ``neq`` against an array field mean contains / not-contains
  - ``eq None`` matches a missing field as well as an explicit null
  - ISO-8601 strings in documents compare as instants against date operands
  - comparisons between incompatible types are simply false
"""
from __future__ import annotations

import re
from datetime import datetime
from functools import lru_cache
from typing import Any

from recordhub.core.utils import get_path, has_path, parse_iso
from recordhub.query.condition import (
    And,
    Condition,
    FieldCondition,
    Operator,
    Or,
    MATCH_ALL,
    MATCH_NONE,
)


def matches(cond: Condition, doc: dict[str, Any]) -> bool:
    """Return True when *doc* satisfies *cond*."""
    if cond is MATCH_ALL:
        return True
    if cond is MATCH_NONE:
        return False
    if isinstance(cond, And):
        return all(matches(c, doc) for c in cond.children)
    if isinstance(cond, Or):
        return any(matches(c, doc) for c in cond.children)
    if isinstance(cond, FieldCondition):
        return _match_leaf(cond, doc)
    raise TypeError(f"Not a condition: {cond!r}")


def _match_leaf(cond: FieldCondition, doc: dict[str, Any]) -> bool:
    op = cond.operator
    present = has_path(doc, cond.field)
    actual = get_path(doc, cond.field)

    if op is Operator.EXISTS:
        return present == bool(cond.value)
    if op is Operator.EQ:
        return _eq(actual, cond.value, cond.literal)
    if op is Operator.NEQ:
        return not _eq(actual, cond.value, cond.literal)
    if op is Operator.INQ:
        return _inq(actual, cond.value, cond.literal)
    if op is Operator.NIN:
        return not _inq(actual, cond.value, cond.literal)
    if op in (Operator.LIKE, Operator.ILIKE, Operator.NLIKE, Operator.NILIKE):
        pattern = _like_pattern(str(cond.value), op in (Operator.ILIKE, Operator.NILIKE))
        found = _any_value(actual, lambda v: isinstance(v, str) and pattern.search(v) is not None)
        return not found if op in (Operator.NLIKE, Operator.NILIKE) else found
    if op is Operator.REGEXP:
        pattern = compile_regexp(cond.value)
        return _any_value(actual, lambda v: isinstance(v, str) and pattern.search(v) is not None)
    if op is Operator.BETWEEN:
        low, high = cond.value
        low_lit, high_lit = cond.literal or (None, None)
        return _any_value(actual, lambda v: _within(v, (low, low_lit), (high, high_lit)))

    def compare(v: Any) -> bool:
        result = _cmp(v, cond.value, cond.literal)
        if result is None:
            return False
        if op is Operator.GT:
            return result > 0
        if op is Operator.GTE:
            return result >= 0
        if op is Operator.LT:
            return result < 0
        return result <= 0

    return _any_value(actual, compare)


# ── Helpers ─────────────────────────────────────────────


def _any_value(actual: Any, predicate) -> bool:
    if isinstance(actual, list):
        return any(predicate(v) for v in actual)
    return predicate(actual)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_instant(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return parse_iso(value)
    return None


def _scalar_eq(actual: Any, expected: Any, literal: str | None) -> bool:
    if expected is None:
        return actual is None
    if isinstance(expected, datetime):
        instant = _as_instant(actual)
        if instant is not None:
            return instant == expected
    elif _is_number(expected):
        if _is_number(actual):
            return actual == expected
    elif isinstance(expected, bool) or isinstance(actual, bool):
        if type(expected) is type(actual):
            return actual == expected
    elif actual == expected:
        return True
    return literal is not None and actual == literal


def _eq(actual: Any, expected: Any, literal: str | None) -> bool:
    if isinstance(expected, list):
        return isinstance(actual, list) and actual == expected
    if isinstance(actual, list):
        if expected is None:
            return False
        return any(_scalar_eq(v, expected, literal) for v in actual)
    return _scalar_eq(actual, expected, literal)


def _inq(actual: Any, values: list, literals: tuple | None = None) -> bool:
    candidates = actual if isinstance(actual, list) else [actual]
    literals = literals or (None,) * len(values)
    for candidate in candidates:
        for value, literal in zip(values, literals):
            if _scalar_eq(candidate, value, literal):
                return True
    return False


def _cmp(actual: Any, expected: Any, literal: str | None) -> int | None:
    """Three-way compare, or None when the operands are not comparable."""
    if actual is None or expected is None:
        return None
    if isinstance(expected, datetime):
        instant = _as_instant(actual)
        if instant is not None:
            return (instant > expected) - (instant < expected)
    elif _is_number(expected):
        if _is_number(actual):
            return (actual > expected) - (actual < expected)
    elif isinstance(expected, str) and isinstance(actual, str):
        return (actual > expected) - (actual < expected)
    if literal is not None and isinstance(actual, str):
        return (actual > literal) - (actual < literal)
    return None


def _within(actual: Any, low: tuple, high: tuple) -> bool:
    above = _cmp(actual, *low)
    below = _cmp(actual, *high)
    return above is not None and below is not None and above >= 0 and below <= 0


@lru_cache(maxsize=256)
def _like_pattern(pattern: str, ignore_case: bool) -> re.Pattern:
    """``%`` matches any run of characters; the pattern may match anywhere."""
    body = ".*".join(re.escape(part) for part in pattern.split("%"))
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    return re.compile(body, flags)


_REGEXP_LITERAL = re.compile(r"^/(.*)/([gimsuy]*)$", re.DOTALL)


@lru_cache(maxsize=256)
def compile_regexp(expr: str) -> re.Pattern:
    """Compile ``pattern`` or the ``/pattern/flags`` literal form."""
    m = _REGEXP_LITERAL.match(expr)
    if not m:
        return re.compile(expr)
    flags = 0
    if "i" in m.group(2):
        flags |= re.IGNORECASE
    if "m" in m.group(2):
        flags |= re.MULTILINE
    if "s" in m.group(2):
        flags |= re.DOTALL
    return re.compile(m.group(1), flags)
