"""
Query plan executor.

Runs a ``QueryPlan`` against the ``RecordStore``:
  1. Loads the collection, pushing ``_id`` equality / ``inq`` down to SQL
  2. Applies each stage in plan order
  3. Resolves reference-URI lookups and includes recursively

Unresolvable lookups, missing fields and empty results are normal
outcomes here, never errors.
"""
from __future__ import annotations

import copy
import json
from collections import defaultdict
from typing import Any

from recordhub.core.logging import get_logger
from recordhub.core.utils import delete_path, get_path, has_path, set_path, timer
from recordhub.db.store import RecordStore
from recordhub.query.condition import And, Condition, FieldCondition, Operator
from recordhub.query.filter_parser import LookupSpec, OrderKey, Projection
from recordhub.query.matcher import matches
from recordhub.query.planner import (
    IncludeStage,
    JoinStage,
    LimitStage,
    LookupStage,
    MatchStage,
    ProjectStage,
    QueryContext,
    QueryPlan,
    ReshapeStage,
    SkipStage,
    SortStage,
    compile_batch_match,
    compile_lookup_match,
    tail_stages,
)
from recordhub.records.families import FAMILIES, parse_reference

logger = get_logger(__name__)


class QueryExecutor:
    """Evaluates compiled plans against a ``RecordStore``."""

    def __init__(self, store: RecordStore):
        self._store = store

    # ── Public API ──────────────────────────────────────

    def run(self, plan: QueryPlan) -> list[dict[str, Any]]:
        """Execute *plan* and return the resulting documents (never None)."""
        with timer() as t:
            docs = self._load(plan)
            docs = self.apply(docs, plan.stages, plan.context)
        logger.debug(
            "Executed %s plan: %d docs in %d ms", plan.family.segment, len(docs), t["elapsed_ms"]
        )
        return docs

    def count(self, plan: QueryPlan) -> int:
        return len(self.run(plan))

    def apply(self, docs: list[dict], stages, context: QueryContext) -> list[dict]:
        for stage in stages:
            if isinstance(stage, MatchStage):
                docs = [d for d in docs if matches(stage.condition, d)]
            elif isinstance(stage, JoinStage):
                docs = self._join(docs, stage, context)
            elif isinstance(stage, ReshapeStage):
                for d in docs:
                    joined = d.get(stage.as_field) or {}
                    d[stage.as_field] = {k: joined[k] for k in stage.keep if k in joined}
            elif isinstance(stage, SortStage):
                docs = sort_documents(docs, stage.keys)
            elif isinstance(stage, SkipStage):
                docs = docs[stage.count:]
            elif isinstance(stage, LimitStage):
                docs = docs[: stage.count]
            elif isinstance(stage, ProjectStage):
                docs = [project(d, stage.projection) for d in docs]
            elif isinstance(stage, LookupStage):
                for lookup in stage.lookups:
                    self._lookup(docs, lookup, context)
            elif isinstance(stage, IncludeStage):
                self._include(docs, stage, context)
            else:
                raise TypeError(f"Unknown stage {stage!r}")
        return docs

    # ── Loading ─────────────────────────────────────────

    def _load(self, plan: QueryPlan) -> list[dict]:
        first = plan.stages[0] if plan.stages else None
        ids = _id_candidates(first.condition) if isinstance(first, MatchStage) else None
        if ids is not None:
            return self._store.fetch_many(plan.collection, ids)
        return self._store.scan(plan.collection)

    def _join(self, docs: list[dict], stage: JoinStage, context: QueryContext) -> list[dict]:
        collection = context.config.family(stage.target.segment).collection
        wanted = {d.get(stage.local_field) for d in docs if isinstance(d.get(stage.local_field), str)}
        targets = {t["_id"]: t for t in self._store.fetch_many(collection, wanted)}
        joined = []
        for d in docs:
            target = targets.get(d.get(stage.local_field))
            if target is None:
                continue
            d[stage.as_field] = copy.deepcopy(target)
            joined.append(d)
        return joined

    # ── Lookups ─────────────────────────────────────────

    def _lookup(self, docs: list[dict], lookup: LookupSpec, context: QueryContext) -> None:
        """Resolve *lookup* for every doc with one storage pass per target family."""
        slots = [slot for d in docs for slot in _reference_slots(d, lookup.prop.split("."))]
        if not slots:
            return

        by_family: dict[str, set[str]] = defaultdict(set)
        slot_keys: list[list[tuple[str, str]]] = []
        for container, key in slots:
            keys = []
            for ref in _as_list(container[key]):
                parsed = parse_reference(ref)
                if parsed is None:
                    continue
                family, record_id = parsed
                keys.append((family.segment, record_id))
                by_family[family.segment].add(record_id)
            slot_keys.append(keys)

        found: dict[tuple[str, str], dict] = {}
        for segment, ids in by_family.items():
            plan = compile_lookup_match(FAMILIES[segment], lookup.scope, context, sorted(ids))
            for target in self.run(plan):
                found[(segment, target["_id"])] = target

        shaping, nested = _split_tail(tail_stages(None, lookup.scope))
        placed: list[dict] = []
        for (container, key), keys in zip(slots, slot_keys):
            resolved = [copy.deepcopy(found[k]) for k in keys if k in found]
            resolved = self.apply(resolved, shaping, context)
            if isinstance(container[key], list):
                container[key] = resolved
                placed.extend(resolved)
            elif resolved:
                container[key] = resolved[0]
                placed.append(resolved[0])
            else:
                del container[key]
        if nested:
            self.apply(placed, nested, context)
        logger.debug(
            "Lookup '%s': %d slots, %d targets resolved", lookup.prop, len(slots), len(found)
        )

    def _include(self, docs: list[dict], stage: IncludeStage, context: QueryContext) -> None:
        parents = [d for d in docs if "_id" in d]
        if not parents:
            return
        for inc in stage.includes:
            segment, via = stage.family.includes[inc.relation]
            target = FAMILIES[segment]
            ids = list(dict.fromkeys(d["_id"] for d in parents))
            grouped: dict[str, list[dict]] = defaultdict(list)
            for child in self.run(compile_batch_match(target, inc.scope, context, via, ids)):
                grouped[child.get(via)].append(child)

            shaping, nested = _split_tail(tail_stages(target, inc.scope))
            placed: list[dict] = []
            for d in parents:
                children = [copy.deepcopy(c) for c in grouped.get(d["_id"], [])]
                d[inc.relation] = self.apply(children, shaping, context)
                placed.extend(d[inc.relation])
            if nested:
                self.apply(placed, nested, context)


# ── Helpers ─────────────────────────────────────────────


def _reference_slots(node: Any, parts: list[str]):
    """Yield ``(container, key)`` for each place *parts* reaches in *node*.

    Arrays met on the way fan out per element, so ``items.ref`` names the
    ``ref`` key inside every object of ``items``.
    """
    if isinstance(node, list):
        for item in node:
            yield from _reference_slots(item, parts)
        return
    if not isinstance(node, dict) or parts[0] not in node:
        return
    if len(parts) == 1:
        yield node, parts[0]
    else:
        yield from _reference_slots(node[parts[0]], parts[1:])


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else [value]


def _split_tail(stages: list) -> tuple[list, list]:
    """Separate per-parent shaping stages from lookups / includes run once per page."""
    shaping = [s for s in stages if not isinstance(s, (LookupStage, IncludeStage))]
    nested = [s for s in stages if isinstance(s, (LookupStage, IncludeStage))]
    return shaping, nested


def _id_candidates(cond: Condition) -> list[str] | None:
    """Ids a condition is restricted to, when that can be read off directly."""
    if isinstance(cond, FieldCondition) and cond.field == "_id":
        if cond.operator is Operator.EQ and isinstance(cond.value, str):
            return [cond.value]
        if cond.operator is Operator.INQ:
            return [str(v) for v in cond.value]
    if isinstance(cond, And):
        for child in cond.children:
            ids = _id_candidates(child)
            if ids is not None:
                return ids
    return None


def _sort_key(value: Any) -> tuple:
    # null < numbers < strings < objects < arrays < booleans
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (5, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, dict):
        return (3, json.dumps(value, sort_keys=True, default=str))
    if isinstance(value, list):
        return (4, json.dumps(value, sort_keys=True, default=str))
    return (6, str(value))


def sort_documents(docs: list[dict], keys: tuple[OrderKey, ...]) -> list[dict]:
    """Stable multi-key sort; ties keep their incoming order."""
    result = list(docs)
    for key in reversed(keys):
        result.sort(key=lambda d: _sort_key(get_path(d, key.field)), reverse=key.descending)
    return result


def project(doc: dict, projection: Projection) -> dict:
    """Apply an allow-list (``_id`` always kept) or deny-list projection."""
    if projection.mode == "include":
        out: dict = {}
        if "_id" in doc:
            out["_id"] = doc["_id"]
        for name in projection.names:
            if has_path(doc, name):
                set_path(out, name, get_path(doc, name))
        return out
    out = copy.deepcopy(doc)
    for name in projection.names:
        delete_path(out, name)
    return out
