"""
Query plan compiler -- turns a FilterSpec + set expression + access
predicate into an ordered list of stages for the executor.

Stage order is fixed:

    match -> join (relations only) -> sort -> skip -> limit -> project -> lookup -> include

The compiler never reads or writes records.  It only decides *what* has to
happen; ``recordhub.db.executor`` decides *how*.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from recordhub.core.errors import FilterParseError
from recordhub.core.logging import get_logger
from recordhub.core.utils import utcnow
from recordhub.governance.policy import AppConfig
from recordhub.query.access import ANONYMOUS, Requester, build_access_predicate
from recordhub.query.condition import (
    Condition,
    FieldCondition,
    Operator,
    MATCH_ALL,
    and_,
    prefixed,
)
from recordhub.query.filter_parser import (
    EMPTY_FILTER,
    FilterSpec,
    IncludeSpec,
    LookupSpec,
    OrderKey,
    Projection,
)
from recordhub.query.sets import SetExpr, compile_set
from recordhub.records.families import ENTITIES, FAMILIES, LISTS, RELATIONS, Family

logger = get_logger(__name__)

# Endpoint fields copied into a relation's _fromMetadata / _toMetadata.
METADATA_FIELDS = (
    "_kind",
    "_name",
    "_slug",
    "_validFromDateTime",
    "_validUntilDateTime",
    "_visibility",
    "_ownerUsers",
    "_ownerGroups",
    "_viewerUsers",
    "_viewerGroups",
)


# ── Context ─────────────────────────────────────────────


@dataclass(frozen=True)
class QueryContext:
    """Per-request inputs shared by every plan compiled for that request."""
    config: AppConfig
    requester: Requester = ANONYMOUS
    now: datetime = field(default_factory=utcnow)
    enforce_access: bool = True

    def access_for(self, family: Family) -> Condition:
        return build_access_predicate(
            self.requester,
            enabled=self.config.access_control and self.enforce_access,
            has_access_fields=family.has_access_fields,
        )

    def unrestricted(self) -> "QueryContext":
        """Same instant, no read access control (limit / uniqueness counting)."""
        return replace(self, enforce_access=False)


@dataclass(frozen=True)
class RelationScopes:
    """Independent filters for the two endpoints of a list-entity relation."""
    list_filter: FilterSpec = EMPTY_FILTER
    list_set: SetExpr | None = None
    entity_filter: FilterSpec = EMPTY_FILTER
    entity_set: SetExpr | None = None


# ── Stages ──────────────────────────────────────────────


@dataclass(frozen=True)
class MatchStage:
    condition: Condition


@dataclass(frozen=True)
class JoinStage:
    """Inner join: attach the record referenced by ``local_field`` as ``as_field``."""
    local_field: str
    target: Family
    as_field: str


@dataclass(frozen=True)
class ReshapeStage:
    """Trim the joined document under ``as_field`` down to ``keep``."""
    as_field: str
    keep: tuple[str, ...]


@dataclass(frozen=True)
class SortStage:
    keys: tuple[OrderKey, ...]


@dataclass(frozen=True)
class SkipStage:
    count: int


@dataclass(frozen=True)
class LimitStage:
    count: int


@dataclass(frozen=True)
class ProjectStage:
    projection: Projection


@dataclass(frozen=True)
class LookupStage:
    lookups: tuple[LookupSpec, ...]


@dataclass(frozen=True)
class IncludeStage:
    family: Family
    includes: tuple[IncludeSpec, ...]


@dataclass(frozen=True)
class QueryPlan:
    family: Family
    collection: str
    stages: tuple
    context: QueryContext

    def describe(self) -> list[dict[str, Any]]:
        """Compact, loggable view of the stages."""
        out = []
        for stage in self.stages:
            entry = {"stage": type(stage).__name__.replace("Stage", "").lower()}
            if isinstance(stage, JoinStage):
                entry.update(local=stage.local_field, target=stage.target.segment, as_=stage.as_field)
            elif isinstance(stage, (SkipStage, LimitStage)):
                entry["count"] = stage.count
            elif isinstance(stage, SortStage):
                entry["keys"] = [f"{k.field} {'DESC' if k.descending else 'ASC'}" for k in stage.keys]
            elif isinstance(stage, LookupStage):
                entry["props"] = [lk.prop for lk in stage.lookups]
            out.append(entry)
        return out


# ── Compilation ─────────────────────────────────────────


def base_condition(
    family: Family,
    spec: FilterSpec,
    context: QueryContext,
    set_expr: SetExpr | None = None,
    extra: Condition = MATCH_ALL,
) -> Condition:
    """``AND(where, set, access, extra)`` for *family*."""
    return and_(
        spec.where,
        compile_set(spec.set, context.now),
        compile_set(set_expr, context.now),
        context.access_for(family),
        extra,
    )


def _relation_stages(context: QueryContext, scopes: RelationScopes) -> list:
    stages: list = []
    for local_field, target, as_field, spec, set_expr in (
        ("_listId", LISTS, "_fromMetadata", scopes.list_filter, scopes.list_set),
        ("_entityId", ENTITIES, "_toMetadata", scopes.entity_filter, scopes.entity_set),
    ):
        stages.append(JoinStage(local_field, target, as_field))
        endpoint = base_condition(target, spec, context, set_expr)
        if endpoint is not MATCH_ALL:
            stages.append(MatchStage(prefixed(endpoint, as_field)))
    stages.append(ReshapeStage("_fromMetadata", METADATA_FIELDS))
    stages.append(ReshapeStage("_toMetadata", METADATA_FIELDS))
    return stages


def tail_stages(family: Family | None, spec: FilterSpec) -> list:
    """Sort / paginate / project / lookup / include stages for *spec*."""
    stages: list = []
    if spec.order:
        stages.append(SortStage(spec.order))
    if spec.skip:
        stages.append(SkipStage(spec.skip))
    if spec.limit is not None:
        stages.append(LimitStage(spec.limit))
    if spec.fields is not None:
        stages.append(ProjectStage(spec.fields))
    if spec.lookup:
        stages.append(LookupStage(spec.lookup))
    if spec.include and family is not None:
        for inc in spec.include:
            if inc.relation not in family.includes:
                raise FilterParseError(
                    f"Unknown include '{inc.relation}' for {family.segment}. "
                    f"Available: {', '.join(sorted(family.includes)) or 'none'}"
                )
        stages.append(IncludeStage(family, spec.include))
    return stages


def compile_query(
    family: Family | str,
    spec: FilterSpec,
    context: QueryContext,
    *,
    set_expr: SetExpr | None = None,
    extra: Condition = MATCH_ALL,
    relation_scopes: RelationScopes | None = None,
) -> QueryPlan:
    """Compile a full listing query.

    Parameters
    ----------
    family:
        Target family (or its URL segment).
    spec:
        Parsed filter.
    context:
        Requester, instant and configuration.
    set_expr:
        Request-level set expression (``set[...]``), ANDed with ``spec.set``.
    extra:
        Additional condition from the caller (children / parents / through).
    relation_scopes:
        ``listFilter`` / ``entityFilter`` style endpoint scopes; relations
        are always joined with their endpoints even when this is None.

    Returns
    -------
    QueryPlan
    """
    family = FAMILIES[family] if isinstance(family, str) else family
    stages: list = [MatchStage(base_condition(family, spec, context, set_expr, extra))]
    if family is RELATIONS:
        stages.extend(_relation_stages(context, relation_scopes or RelationScopes()))
    stages.extend(tail_stages(family, spec))

    plan = QueryPlan(
        family=family,
        collection=context.config.family(family.segment).collection,
        stages=tuple(stages),
        context=context,
    )
    logger.debug("Compiled %s plan: %s", family.segment, plan.describe())
    return plan


def compile_count(
    family: Family | str,
    spec: FilterSpec,
    context: QueryContext,
    *,
    set_expr: SetExpr | None = None,
    extra: Condition = MATCH_ALL,
    relation_scopes: RelationScopes | None = None,
) -> QueryPlan:
    """Like ``compile_query`` without pagination, projection or lookups.

    Relations are joined only when endpoint scopes are given.
    """
    family = FAMILIES[family] if isinstance(family, str) else family
    stages: list = [MatchStage(base_condition(family, spec, context, set_expr, extra))]
    if family is RELATIONS and relation_scopes is not None:
        stages.extend(_relation_stages(context, relation_scopes))
    return QueryPlan(
        family=family,
        collection=context.config.family(family.segment).collection,
        stages=tuple(stages),
        context=context,
    )


def compile_lookup_match(
    family: Family,
    scope: FilterSpec,
    context: QueryContext,
    ids: list[str],
) -> QueryPlan:
    """Match-only plan resolving referenced *ids* of *family* under *scope*."""
    return compile_batch_match(family, scope, context, "_id", ids)


def compile_batch_match(
    family: Family,
    scope: FilterSpec,
    context: QueryContext,
    field: str,
    values: list[str],
) -> QueryPlan:
    """Match-only plan for every record of *family* whose *field* is in *values*.

    Used to resolve lookups and includes for a whole page in one pass; the
    caller applies ``tail_stages`` per parent afterwards.
    """
    condition = base_condition(
        family, scope, context, extra=FieldCondition(field, Operator.INQ, list(values))
    )
    return QueryPlan(
        family=family,
        collection=context.config.family(family.segment).collection,
        stages=(MatchStage(condition),),
        context=context,
    )
