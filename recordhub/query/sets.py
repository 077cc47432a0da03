"""
Set expressions -- named, composable convenience predicates.

Query-string forms::

    set[actives]
    set[and][0][actives]&set[and][1][publics]
    set[or][0][owners][userIds]=u1,u2&set[or][1][publics]
    set[audience][userIds]=u1&set[audience][groupIds]=g1
    set[createds-7d]

Each named set compiles to a ``Condition`` evaluated relative to a fixed
``now`` so that one request sees one consistent instant.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from recordhub.core.errors import FilterParseError
from recordhub.core.logging import get_logger
from recordhub.query.condition import (
    Condition,
    FieldCondition,
    Operator,
    MATCH_ALL,
    MATCH_NONE,
    and_,
    eq,
    or_,
)

logger = get_logger(__name__)


# ── AST ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Audience:
    """User / group ids attached to an ``owners``/``viewers``/``audience`` set."""
    user_ids: tuple[str, ...] = ()
    group_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class NamedSet:
    name: str
    audience: Audience | None = None


@dataclass(frozen=True)
class SetAnd:
    children: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class SetOr:
    children: tuple = field(default_factory=tuple)


SetExpr = NamedSet | SetAnd | SetOr

AUDIENCE_SETS = ("owners", "viewers", "audience")

_DURATION_RE = re.compile(
    r"^(createds|actives|pendings|expireds)-(\d+)(min|m|d|day|w|mon|mo)$",
    re.IGNORECASE,
)
_UNIT_ALIASES = {"m": "min", "day": "d", "mo": "mon"}


# ── Parsing ─────────────────────────────────────────────


def parse_set(raw: Any) -> SetExpr | None:
    """Parse a decoded ``set`` map into a ``SetExpr``.

    Several sibling keys combine with an implicit AND.  A named set given
    the value ``false`` is ignored.
    """
    if raw is None or raw == "" or raw == {}:
        return None
    if isinstance(raw, str):
        return NamedSet(raw.strip().lower())
    if not isinstance(raw, dict):
        raise FilterParseError(f"Set expression must be an object, got {type(raw).__name__}.")

    parts: list[SetExpr] = []
    for key, value in raw.items():
        name = str(key).strip().lower()
        if name in ("and", "or"):
            items = _as_items(value)
            if not items:
                raise FilterParseError(f"Set '{name}' needs at least one member.")
            children = tuple(c for c in (parse_set(item) for item in items) if c is not None)
            if not children:
                raise FilterParseError(f"Set '{name}' needs at least one member.")
            parts.append(SetAnd(children) if name == "and" else SetOr(children))
            continue
        if value is False or (isinstance(value, str) and value.lower() == "false"):
            continue
        parts.append(NamedSet(name, _parse_audience(value)))

    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return SetAnd(tuple(parts))


def _as_items(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    if isinstance(value, str) and value:
        return [value]
    return []


def split_ids(value: Any) -> tuple[str, ...]:
    """``"a, b,,c"`` or ``["a", "b"]`` -> ``("a", "b", "c")``."""
    if value is None:
        return ()
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return tuple(s for s in (str(i).strip() for i in items) if s)


def _parse_audience(value: Any) -> Audience | None:
    if not isinstance(value, dict):
        return None
    return Audience(
        user_ids=split_ids(value.get("userIds")),
        group_ids=split_ids(value.get("groupIds")),
    )


# ── Compilation ─────────────────────────────────────────


def compile_set(expr: SetExpr | None, now: datetime) -> Condition:
    """Compile a set expression into a ``Condition`` fragment."""
    if expr is None:
        return MATCH_ALL
    if isinstance(expr, SetAnd):
        return and_(*(compile_set(c, now) for c in expr.children))
    if isinstance(expr, SetOr):
        return or_(*(compile_set(c, now) for c in expr.children))
    return _compile_named(expr, now)


def _compile_named(expr: NamedSet, now: datetime) -> Condition:
    m = _DURATION_RE.match(expr.name)
    if m:
        amount = int(m.group(2))
        if amount <= 0:
            return MATCH_ALL
        unit = m.group(3).lower()
        unit = _UNIT_ALIASES.get(unit, unit)
        return _duration_set(m.group(1).lower(), _window_start(now, amount, unit), now)

    name = expr.name
    if name == "actives":
        return actives(now)
    if name == "expireds":
        return expireds(now)
    if name == "pendings":
        return pendings(now)
    if name == "publics":
        return eq("_visibility", "public")
    if name == "privates":
        return eq("_visibility", "private")
    if name == "protecteds":
        return eq("_visibility", "protected")
    if name == "roots":
        return eq("_parentsCount", 0)
    if name == "owners":
        return membership(expr.audience, "_ownerUsers", "_ownerGroups")
    if name == "viewers":
        return membership(expr.audience, "_viewerUsers", "_viewerGroups")
    if name == "audience":
        return audience(expr.audience)

    logger.warning("Unknown set '%s' ignored", name)
    return MATCH_ALL


def actives(now: datetime) -> Condition:
    """Records inside their validity window at *now* (both bounds strict)."""
    return and_(
        or_(
            eq("_validUntilDateTime", None),
            FieldCondition("_validUntilDateTime", Operator.GT, now),
        ),
        FieldCondition("_validFromDateTime", Operator.NEQ, None),
        FieldCondition("_validFromDateTime", Operator.LT, now),
    )


def expireds(now: datetime) -> Condition:
    return and_(
        FieldCondition("_validUntilDateTime", Operator.NEQ, None),
        FieldCondition("_validUntilDateTime", Operator.LT, now),
    )


def pendings(now: datetime) -> Condition:
    return or_(
        eq("_validFromDateTime", None),
        FieldCondition("_validFromDateTime", Operator.GT, now),
    )


def membership(value: Audience | None, users_field: str, groups_field: str) -> Condition:
    """``owners`` / ``viewers``: user match, or group match on a non-private record.

    With no ids at all, selects records that have no owners.
    """
    if value is None:
        return MATCH_NONE
    users = or_(*(eq(users_field, u) for u in value.user_ids)) if value.user_ids else None
    groups = None
    if value.group_ids:
        groups = and_(
            or_(*(eq(groups_field, g) for g in value.group_ids)),
            FieldCondition("_visibility", Operator.NEQ, "private"),
        )
    if users is not None and groups is not None:
        return or_(users, groups)
    if users is not None:
        return users
    if groups is not None:
        return groups
    return and_(eq(users_field + "Count", 0), eq(groups_field + "Count", 0))


def audience(value: Audience | None) -> Condition:
    """Owner or viewer overlap with the given users / groups; absent sides are omitted."""
    if value is None:
        return MATCH_NONE
    clauses: list[Condition] = []
    if value.user_ids:
        ids = list(value.user_ids)
        clauses.append(FieldCondition("_ownerUsers", Operator.INQ, ids))
        clauses.append(FieldCondition("_viewerUsers", Operator.INQ, ids))
    if value.group_ids:
        ids = list(value.group_ids)
        clauses.append(FieldCondition("_ownerGroups", Operator.INQ, ids))
        clauses.append(FieldCondition("_viewerGroups", Operator.INQ, ids))
    return or_(*clauses)


def _window_start(now: datetime, amount: int, unit: str) -> datetime:
    if unit == "min":
        return now - timedelta(minutes=amount)
    if unit == "w":
        return now - timedelta(weeks=amount)
    if unit == "mon":
        month = now.month - amount
        year = now.year
        while month <= 0:
            month += 12
            year -= 1
        day = min(now.day, _days_in_month(year, month))
        return now.replace(year=year, month=month, day=day)
    return now - timedelta(days=amount)


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    first_next = datetime(year, month + 1, 1)
    return (first_next - timedelta(days=1)).day


def _duration_set(base: str, start: datetime, now: datetime) -> Condition:
    window = [start, now]
    if base == "createds":
        return FieldCondition("_createdDateTime", Operator.BETWEEN, window)
    if base == "expireds":
        return and_(
            FieldCondition("_validUntilDateTime", Operator.NEQ, None),
            FieldCondition("_validUntilDateTime", Operator.BETWEEN, window),
        )
    if base == "actives":
        return and_(
            or_(
                eq("_validUntilDateTime", None),
                FieldCondition("_validUntilDateTime", Operator.GT, now),
            ),
            FieldCondition("_validFromDateTime", Operator.NEQ, None),
            FieldCondition("_validFromDateTime", Operator.BETWEEN, window),
        )
    return and_(pendings(now), FieldCondition("_createdDateTime", Operator.BETWEEN, window))
