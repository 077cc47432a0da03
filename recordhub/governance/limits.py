"""
Record-count limits and uniqueness constraints, checked before a write.

Rule scopes are query-string templates such as::

    set[actives]&filter[where][_listId]=${_listId}

``${path}`` placeholders are filled from the incoming record, then the
result is parsed by the same filter / set parser used for reads and
counted with the same compiled plans, so a limit counts exactly what a
client would list with the same filter.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any
from urllib.parse import quote

from recordhub.core.errors import ErrorDetail, LimitExceededError, UniquenessViolationError
from recordhub.core.logging import get_logger
from recordhub.core.utils import get_path
from recordhub.db.executor import QueryExecutor
from recordhub.governance.policy import FamilyConfig
from recordhub.query.condition import MATCH_ALL, Condition, FieldCondition, Operator, and_, eq
from recordhub.query.filter_parser import EMPTY_FILTER, FilterSpec, decode_query, parse_filter
from recordhub.query.matcher import matches
from recordhub.query.planner import QueryContext, base_condition, compile_count
from recordhub.query.sets import (
    AUDIENCE_SETS,
    Audience,
    SetAnd,
    SetExpr,
    SetOr,
    parse_set,
)

logger = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")


# ── Scope templates ─────────────────────────────────────


@dataclass(frozen=True)
class Scope:
    filter: FilterSpec = EMPTY_FILTER
    set: SetExpr | None = None


def render_scope(template: str, record: dict[str, Any]) -> str:
    """Substitute ``${path}`` placeholders with values from *record*.

    Arrays are joined with commas, objects become JSON, missing values
    become an empty string.
    """

    def substitute(m: re.Match) -> str:
        path = m.group(1).strip()
        value = get_path(record, path)
        if value is None:
            logger.warning("Property '%s' not found while rendering scope: %s", path, template)
            return ""
        if isinstance(value, list):
            text = ",".join(str(v) for v in value)
        elif isinstance(value, dict):
            text = json.dumps(value)
        elif isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        return quote(text, safe=",:")

    return _PLACEHOLDER_RE.sub(substitute, template)


def record_owners(record: dict[str, Any]) -> Audience:
    return Audience(
        user_ids=tuple(str(u) for u in record.get("_ownerUsers") or ()),
        group_ids=tuple(str(g) for g in record.get("_ownerGroups") or ()),
    )


def fill_audience(expr: SetExpr | None, audience: Audience) -> SetExpr | None:
    """Give value-less ``owners`` / ``audience`` sets the record's owners."""
    if expr is None:
        return None
    if isinstance(expr, SetAnd):
        return SetAnd(tuple(fill_audience(c, audience) for c in expr.children))
    if isinstance(expr, SetOr):
        return SetOr(tuple(fill_audience(c, audience) for c in expr.children))
    if expr.audience is None and expr.name in AUDIENCE_SETS and expr.name != "viewers":
        return replace(expr, audience=audience)
    return expr


def parse_scope(scope: str, owners: Audience | None = None) -> Scope:
    """Parse a rendered scope string into filter + set."""
    if not scope.strip():
        return Scope()
    raw = decode_query(scope)
    filter_raw = raw.get("filter")
    if filter_raw is None and "where" in raw:
        filter_raw = {"where": raw["where"]}
    set_expr = parse_set(raw.get("set"))
    if owners is not None:
        set_expr = fill_audience(set_expr, owners)
    return Scope(filter=parse_filter(filter_raw), set=set_expr)


# ── Enforcement ─────────────────────────────────────────


class LimitEnforcer:
    """Checks limit and uniqueness rules with the read-path machinery."""

    def __init__(self, executor: QueryExecutor):
        self._executor = executor

    def _count(
        self,
        fc: FamilyConfig,
        scope: Scope,
        context: QueryContext,
        extra: Condition = MATCH_ALL,
    ) -> int:
        plan = compile_count(fc.family, scope.filter, context, set_expr=scope.set, extra=extra)
        return self._executor.count(plan)

    def check_limits(
        self,
        fc: FamilyConfig,
        record: dict[str, Any],
        context: QueryContext,
        exclude_id: str | None = None,
    ) -> None:
        """Raise ``LimitExceededError`` when a rule's scope is already full.

        Rules whose scope the incoming record would not fall into are skipped.
        """
        context = context.unrestricted()
        # the incoming record is judged as of just after its own write
        after_write = replace(context, now=context.now + timedelta(milliseconds=1))
        owners = record_owners(record)
        exclude = FieldCondition("_id", Operator.NEQ, exclude_id) if exclude_id else MATCH_ALL

        for rule in fc.limits_for(record.get("_kind")):
            rendered = render_scope(rule.scope, record)
            scope = parse_scope(rendered, owners)
            in_scope = base_condition(fc.family, scope.filter, after_write, scope.set)
            if not matches(in_scope, record):
                logger.debug("Limit rule '%s' skipped: record outside scope", rendered)
                continue
            count = self._count(fc, scope, context, exclude)
            if count >= rule.limit:
                code = f"{fc.family.error_prefix}-LIMIT-EXCEEDED"
                message = f"{fc.family.display} limit is exceeded."
                logger.warning("%s: count=%d limit=%d scope='%s'", code, count, rule.limit, rendered)
                raise LimitExceededError(
                    message,
                    code,
                    [ErrorDetail(code, message, {"limit": rule.limit, "scope": rendered})],
                )

    def check_uniqueness(
        self,
        fc: FamilyConfig,
        record: dict[str, Any],
        context: QueryContext,
        exclude_id: str | None = None,
    ) -> None:
        """Raise ``UniquenessViolationError`` when another record has the same field values.

        Array-valued fields compare as whole arrays, so different owner lists
        never collide; use a ``set[owners]`` scope for overlap semantics.
        """
        context = context.unrestricted()
        owners = record_owners(record)
        for rule in fc.uniqueness_for(record.get("_kind")):
            rendered = render_scope(rule.scope, record)
            scope = parse_scope(rendered, owners)
            same_values = and_(*(eq(f, get_path(record, f)) for f in rule.fields))
            extra = and_(
                same_values,
                FieldCondition("_id", Operator.NEQ, exclude_id) if exclude_id else MATCH_ALL,
            )
            if self._count(fc, scope, context, extra) > 0:
                code = f"{fc.family.error_prefix}-ALREADY-EXISTS"
                message = f"{fc.family.display} already exists."
                logger.warning("%s: fields=%s scope='%s'", code, list(rule.fields), rendered)
                raise UniquenessViolationError(
                    message,
                    code,
                    [ErrorDetail(code, message, {"fields": list(rule.fields), "scope": rendered})],
                )

    def check_list_entity_count(
        self,
        fc: FamilyConfig,
        list_doc: dict[str, Any],
        context: QueryContext,
    ) -> None:
        """Cap the number of relations (entities) one list may hold."""
        limit = fc.list_entity_limit.get(list_doc.get("_kind"))
        if limit is None:
            return
        scope = Scope(filter=FilterSpec(where=eq("_listId", list_doc["_id"])))
        count = self._count(fc, scope, context.unrestricted())
        if count >= limit:
            code = "LIST-ENTITY-LIMIT-EXCEEDED"
            message = (
                f"List entity limit is exceeded. This list cannot contain more than {limit} entities."
            )
            raise LimitExceededError(
                message,
                code,
                [ErrorDetail(code, message, {
                    "limit": limit,
                    "listId": list_doc["_id"],
                    "listKind": list_doc.get("_kind"),
                })],
            )
