"""
Record service -- the single entry-point used by the HTTP routers.

Reads: raw query map -> FilterSpec + set -> compiled plan -> executor.
Writes: lifecycle (managed fields) -> reference and lookup-constraint checks ->
limits / uniqueness -> store, with the checks and the write serialised per family.
Bulk writes (``PATCH /{family}``, writes through a list) prepare and validate
every document before the first one is stored.
"""
from __future__ import annotations

import threading
from typing import Any

from recordhub.core.errors import (
    BadRequestError,
    ImmutableKindError,
    NotFoundError,
    RecordHubError,
    ValidationError,
)
from recordhub.core.logging import get_logger
from recordhub.db.executor import QueryExecutor
from recordhub.db.store import RecordStore
from recordhub.governance.limits import LimitEnforcer
from recordhub.governance.lookups import LookupValidator
from recordhub.governance.policy import AppConfig, FamilyConfig
from recordhub.query.access import Requester
from recordhub.query.condition import MATCH_ALL, Condition, FieldCondition, Operator, eq
from recordhub.query.filter_parser import EMPTY_FILTER, FilterSpec, load_filter_param, parse_filter
from recordhub.query.planner import QueryContext, RelationScopes, compile_count, compile_query
from recordhub.query.sets import parse_set
from recordhub.records.families import (
    ENTITIES,
    FAMILIES,
    LISTS,
    RELATIONS,
    Family,
    parse_reference,
    reference_uri,
)
from recordhub.records.lifecycle import prepare_create, prepare_replace, prepare_update

logger = get_logger(__name__)


def not_found(family: Family, record_id: str) -> NotFoundError:
    return NotFoundError(
        f"{family.display} with id '{record_id}' could not be found.",
        f"{family.error_prefix}-NOT-FOUND",
    )


class RecordService:
    """CRUD, traversal and counting over every record family."""

    def __init__(self, store: RecordStore, config: AppConfig):
        self._store = store
        self._config = config
        self._executor = QueryExecutor(store)
        self._enforcer = LimitEnforcer(self._executor)
        self._lookups = LookupValidator(store, config)
        self._locks = {segment: threading.Lock() for segment in config.families}

    @property
    def config(self) -> AppConfig:
        return self._config

    def context(self, requester: Requester) -> QueryContext:
        return QueryContext(config=self._config, requester=requester)

    # ── Query parsing ───────────────────────────────────

    def _filter(self, fc: FamilyConfig, raw: Any, *, paginate: bool = True) -> FilterSpec:
        limit = fc.response_limit if paginate else None
        return parse_filter(
            raw,
            default_limit=limit,
            max_limit=limit,
            max_depth=self._config.max_lookup_depth,
        )

    def _relation_scopes(self, query: dict[str, Any]) -> RelationScopes:
        lists, entities = self._config.family(LISTS.segment), self._config.family(ENTITIES.segment)
        return RelationScopes(
            list_filter=self._filter(lists, query.get("listFilter"), paginate=False),
            list_set=parse_set(query.get("listSet")),
            entity_filter=self._filter(entities, query.get("entityFilter"), paginate=False),
            entity_set=parse_set(query.get("entitySet")),
        )

    # ── Reads ───────────────────────────────────────────

    def find(
        self,
        segment: str,
        query: dict[str, Any],
        requester: Requester,
        *,
        extra: Condition = MATCH_ALL,
    ) -> list[dict[str, Any]]:
        """List records of *segment* matching ``filter`` / ``set`` in *query*."""
        fc = self._config.family(segment)
        spec = self._filter(fc, query.get("filter"))
        scopes = self._relation_scopes(query) if fc.family is RELATIONS else None
        plan = compile_query(
            fc.family,
            spec,
            self.context(requester),
            set_expr=parse_set(query.get("set")),
            extra=extra,
            relation_scopes=scopes,
        )
        return self._executor.run(plan)

    def count(self, segment: str, query: dict[str, Any], requester: Requester) -> int:
        """Number of records ``find`` would return without pagination."""
        fc = self._config.family(segment)
        raw = query.get("filter")
        if raw is None and "where" in query:
            raw = {"where": query["where"]}
        spec = self._filter(fc, raw, paginate=False)
        scopes = self._relation_scopes(query) if fc.family is RELATIONS else None
        plan = compile_count(
            fc.family,
            spec,
            self.context(requester),
            set_expr=parse_set(query.get("set")),
            relation_scopes=scopes,
        )
        return self._executor.count(plan)

    def find_by_id(
        self,
        segment: str,
        record_id: str,
        requester: Requester,
        query: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """One readable record; 404 when missing or hidden from *requester*."""
        found = self.find(segment, query or {}, requester, extra=eq("_id", record_id))
        if not found:
            raise not_found(FAMILIES[segment], record_id)
        return found[0]

    def find_children(
        self,
        segment: str,
        record_id: str,
        requester: Requester,
        query: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Records of the same family whose ``_parents`` references *record_id*."""
        family = FAMILIES[segment]
        self.find_by_id(segment, record_id, requester, {"filter": {"fields": {"_id": True}}})
        uri = reference_uri(self._config.reference_host, family, record_id)
        return self.find(segment, query, requester, extra=eq("_parents", uri))

    def find_parents(
        self,
        segment: str,
        record_id: str,
        requester: Requester,
        query: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Records referenced by the ``_parents`` of *record_id*."""
        family = FAMILIES[segment]
        record = self.find_by_id(segment, record_id, requester)
        parent_ids = []
        for ref in record.get("_parents") or []:
            parsed = parse_reference(ref)
            if parsed is not None and parsed[0] is family:
                parent_ids.append(parsed[1])
        if not parent_ids:
            return []
        return self.find(
            segment, query, requester, extra=FieldCondition("_id", Operator.INQ, parent_ids)
        )

    def list_entities(
        self, list_id: str, requester: Requester, query: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Entities related to list *list_id*."""
        return self._through(LISTS, "_listId", list_id, ENTITIES, "_entityId", requester, query)

    def entity_lists(
        self, entity_id: str, requester: Requester, query: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Lists the entity *entity_id* belongs to."""
        return self._through(ENTITIES, "_entityId", entity_id, LISTS, "_listId", requester, query)

    def _through(
        self,
        source: Family,
        source_field: str,
        source_id: str,
        target: Family,
        target_field: str,
        requester: Requester,
        query: dict[str, Any],
    ) -> list[dict[str, Any]]:
        self.find_by_id(source.segment, source_id, requester, {"filter": {"fields": {"_id": True}}})
        ids = [
            rel[target_field]
            for rel in self._matching(RELATIONS, eq(source_field, source_id))
            if rel.get(target_field)
        ]
        if not ids:
            return []
        return self.find(
            target.segment, query, requester, extra=FieldCondition("_id", Operator.INQ, ids)
        )

    def _matching(self, family: Family, condition: Condition) -> list[dict[str, Any]]:
        """Every stored record of *family* matching *condition*, access ignored."""
        context = QueryContext(config=self._config).unrestricted()
        plan = compile_count(family, EMPTY_FILTER, context, extra=condition)
        return self._executor.run(plan)

    # ── Writes ──────────────────────────────────────────

    def create(
        self, segment: str, payload: dict[str, Any], requester: Requester
    ) -> dict[str, Any]:
        fc = self._config.family(segment)
        context = self.context(requester)
        doc = prepare_create(fc, payload, requester, context.now)
        targets = self._check_references(fc.family, doc)
        self._lookups.validate(fc, doc)

        with self._locks[segment]:
            self._enforcer.check_limits(fc, doc, context)
            self._enforcer.check_uniqueness(fc, doc, context)
            if fc.family is RELATIONS:
                self._enforcer.check_list_entity_count(fc, targets["_listId"], context)
            self._store.insert(fc.collection, doc)

        logger.info("Created %s %s (kind=%s)", fc.family.friendly, doc["_id"], doc["_kind"])
        return doc

    def create_child(
        self,
        segment: str,
        parent_id: str,
        payload: dict[str, Any],
        requester: Requester,
    ) -> dict[str, Any]:
        """Create a record whose ``_parents`` includes *parent_id*."""
        family = FAMILIES[segment]
        self.find_by_id(segment, parent_id, requester, {"filter": {"fields": {"_id": True}}})
        uri = reference_uri(self._config.reference_host, family, parent_id)
        parents = [p for p in payload.get("_parents") or [] if p != uri]
        return self.create(segment, {**payload, "_parents": parents + [uri]}, requester)

    def replace(
        self,
        segment: str,
        record_id: str,
        payload: dict[str, Any],
        requester: Requester,
    ) -> dict[str, Any]:
        fc = self._config.family(segment)
        context = self.context(requester)
        existing = self._existing(fc, record_id)
        doc = prepare_replace(fc, existing, payload, context.now)
        return self._save(fc, doc, context)

    def update(
        self,
        segment: str,
        record_id: str,
        payload: dict[str, Any],
        requester: Requester,
    ) -> dict[str, Any]:
        fc = self._config.family(segment)
        context = self.context(requester)
        existing = self._existing(fc, record_id)
        doc = prepare_update(fc, existing, payload, context.now)
        return self._save(fc, doc, context)

    def delete(self, segment: str, record_id: str) -> None:
        """Delete a record and every record that references it."""
        fc = self._config.family(segment)
        self._existing(fc, record_id)
        self._remove(fc, [record_id])
        logger.info("Deleted %s %s", fc.family.friendly, record_id)

    def update_all(
        self,
        segment: str,
        payload: dict[str, Any],
        query: dict[str, Any],
        requester: Requester,
        *,
        extra: Condition = MATCH_ALL,
    ) -> int:
        """Merge *payload* into every readable record picked by ``where`` / ``set``.

        All documents are prepared and validated before the first one is
        written; returns the number of records updated.
        """
        fc = self._config.family(segment)
        if "_kind" in payload:
            raise ImmutableKindError(
                f"{fc.family.display} kind cannot be changed after creation.",
                f"IMMUTABLE-{fc.family.error_prefix}-KIND",
            )
        context = self.context(requester)
        matched = self._selected(fc, query, context, extra=extra)
        docs = [prepare_update(fc, existing, payload, context.now) for existing in matched]
        for doc in docs:
            self._lookups.validate(fc, doc)

        with self._locks[segment]:
            for doc in docs:
                self._enforcer.check_limits(fc, doc, context, exclude_id=doc["_id"])
                self._enforcer.check_uniqueness(fc, doc, context, exclude_id=doc["_id"])
            for doc in docs:
                self._store.replace(fc.collection, doc)
        logger.info("Bulk update: %d %s", len(docs), segment)
        return len(docs)

    # ── Writes through a list ───────────────────────────

    def create_in_list(
        self, list_id: str, payload: dict[str, Any], requester: Requester
    ) -> dict[str, Any]:
        """Create an entity and relate it to list *list_id*."""
        self.find_by_id(LISTS.segment, list_id, requester, {"filter": {"fields": {"_id": True}}})
        entity = self.create(ENTITIES.segment, payload, requester)
        try:
            self.create(
                RELATIONS.segment, {"_listId": list_id, "_entityId": entity["_id"]}, requester
            )
        except RecordHubError:
            self._store.delete(self._config.family(ENTITIES.segment).collection, entity["_id"])
            raise
        return entity

    def update_list_entities(
        self,
        list_id: str,
        payload: dict[str, Any],
        query: dict[str, Any],
        requester: Requester,
    ) -> int:
        """Bulk-update the entities of a list; ``whereThrough`` / ``setThrough`` pick relations."""
        ids = self._entity_ids_in_list(list_id, query, requester)
        if not ids:
            return 0
        return self.update_all(
            ENTITIES.segment, payload, query, requester,
            extra=FieldCondition("_id", Operator.INQ, ids),
        )

    def delete_list_entities(
        self, list_id: str, query: dict[str, Any], requester: Requester
    ) -> int:
        """Delete the entities of a list (and, by cascade, their relations)."""
        ids = self._entity_ids_in_list(list_id, query, requester)
        if not ids:
            return 0
        fc = self._config.family(ENTITIES.segment)
        doomed = [
            d["_id"]
            for d in self._selected(
                fc, query, self.context(requester), extra=FieldCondition("_id", Operator.INQ, ids)
            )
        ]
        self._remove(fc, doomed)
        logger.info("Deleted %d entities of list %s", len(doomed), list_id)
        return len(doomed)

    def _entity_ids_in_list(
        self, list_id: str, query: dict[str, Any], requester: Requester
    ) -> list[str]:
        self.find_by_id(LISTS.segment, list_id, requester, {"filter": {"fields": {"_id": True}}})
        relations = self._config.family(RELATIONS.segment)
        rels = self._selected(
            relations,
            query,
            QueryContext(config=self._config).unrestricted(),
            extra=eq("_listId", list_id),
            where_key="whereThrough",
            set_key="setThrough",
        )
        return list(dict.fromkeys(r["_entityId"] for r in rels if r.get("_entityId")))

    # ── Write helpers ───────────────────────────────────

    def _selected(
        self,
        fc: FamilyConfig,
        query: dict[str, Any],
        context: QueryContext,
        *,
        extra: Condition = MATCH_ALL,
        where_key: str = "where",
        set_key: str = "set",
    ) -> list[dict[str, Any]]:
        """Stored records a bulk write targets: ``where`` / ``set`` query params plus *extra*."""
        where = load_filter_param(query.get(where_key))
        spec = self._filter(fc, {"where": where} if where else None, paginate=False)
        plan = compile_count(
            fc.family, spec, context, set_expr=parse_set(query.get(set_key)), extra=extra
        )
        return self._executor.run(plan)

    def _remove(self, fc: FamilyConfig, record_ids: list[str]) -> None:
        """Delete *record_ids* and cascade to every record referencing them."""
        if not record_ids:
            return
        self._store.delete_many(fc.collection, record_ids)
        segment = fc.family.segment
        for dependent in FAMILIES.values():
            for ref_field, target in dependent.references.items():
                if target != segment:
                    continue
                condition = FieldCondition(ref_field, Operator.INQ, list(record_ids))
                ids = [d["_id"] for d in self._matching(dependent, condition)]
                removed = self._store.delete_many(self._config.family(dependent.segment).collection, ids)
                if removed:
                    logger.info(
                        "Cascade: removed %d %s referencing %d %s",
                        removed, dependent.segment, len(record_ids), segment,
                    )

    def _existing(self, fc: FamilyConfig, record_id: str) -> dict[str, Any]:
        existing = self._store.fetch(fc.collection, record_id)
        if existing is None:
            raise not_found(fc.family, record_id)
        return existing

    def _save(self, fc: FamilyConfig, doc: dict[str, Any], context: QueryContext) -> dict[str, Any]:
        self._lookups.validate(fc, doc)
        with self._locks[fc.family.segment]:
            self._enforcer.check_limits(fc, doc, context, exclude_id=doc["_id"])
            self._enforcer.check_uniqueness(fc, doc, context, exclude_id=doc["_id"])
            if not self._store.replace(fc.collection, doc):
                raise not_found(fc.family, doc["_id"])
        logger.info("Saved %s %s (version=%s)", fc.family.friendly, doc["_id"], doc["_version"])
        return doc

    def _check_references(self, family: Family, doc: dict[str, Any]) -> dict[str, dict]:
        """Every reference field must name an existing record."""
        missing = [f for f in family.references if not doc.get(f)]
        if missing and family is RELATIONS:
            raise BadRequestError(
                "Relation requires both _listId and _entityId.", "RELATION-MISSING-IDS"
            )
        if missing:
            raise ValidationError(
                f"{family.display} requires {', '.join(missing)}.",
                f"MISSING-{family.error_prefix}-TARGET",
            )

        targets: dict[str, dict] = {}
        for ref_field, segment in family.references.items():
            target_family = FAMILIES[segment]
            record_id = str(doc[ref_field])
            target = self._store.fetch(self._config.family(segment).collection, record_id)
            if target is None:
                raise not_found(target_family, record_id)
            targets[ref_field] = target
        return targets
