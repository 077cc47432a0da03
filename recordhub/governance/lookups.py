"""
Lookup constraints: reference properties must hold well-formed URIs that
point at existing records of the configured family (and kind).

Every family with ``_parents`` gets a default rule tying its parents to
the same family; ``{FAMILY}_LOOKUP_CONSTRAINT`` adds or overrides rules::

    ENTITY_LOOKUP_CONSTRAINT='[{"propertyPath": "author", "record": "entity",
                                "sourceKind": "book", "targetKind": "person"}]'
"""
from __future__ import annotations

from typing import Any

from recordhub.core.errors import ErrorDetail, ValidationError
from recordhub.core.logging import get_logger
from recordhub.core.utils import get_path
from recordhub.db.store import RecordStore
from recordhub.governance.policy import AppConfig, FamilyConfig, LookupConstraint
from recordhub.records.families import FAMILIES, parse_reference, reference_uri

logger = get_logger(__name__)

# Reactions may only nest under reactions of the same entity / list.
_SHARED_PARENT_FIELD = {
    "entity-reactions": ("_entityId", "Entity", "ENTITY"),
    "list-reactions": ("_listId", "List", "LIST"),
}


def _fail(message: str, code: str, name: str, info: dict[str, Any]) -> ValidationError:
    return ValidationError(message, code, [ErrorDetail(code, message, info)], name=name)


class LookupValidator:
    """Checks a record's reference properties against its family's constraints."""

    def __init__(self, store: RecordStore, config: AppConfig):
        self._store = store
        self._config = config

    def validate(self, fc: FamilyConfig, record: dict[str, Any]) -> None:
        """Raise ``ValidationError`` (422) on the first violated constraint."""
        for constraint in fc.lookup_constraints:
            if constraint.applies_to(record.get("_kind")):
                self._check(fc, record, constraint)

    def _check(self, fc: FamilyConfig, record: dict[str, Any], constraint: LookupConstraint) -> None:
        value = get_path(record, constraint.property_path)
        if value is None or value == [] or value == "":
            return
        refs = value if isinstance(value, list) else [value]
        prefix = fc.family.error_prefix
        path = constraint.property_path

        parsed = [parse_reference(ref) for ref in refs]
        if constraint.record is not None:
            expected = reference_uri(self._config.reference_host, FAMILIES[constraint.record], "")
            if not all(
                isinstance(ref, str) and p is not None
                and p[0].segment == constraint.record and ref.startswith(expected)
                for ref, p in zip(refs, parsed)
            ):
                raise _fail(
                    f"Invalid reference format in property '{path}'. "
                    f"Expected format: '{expected}{{id}}'",
                    f"{prefix}-INVALID-LOOKUP-REFERENCE",
                    "InvalidLookupReferenceError",
                    {"propertyPath": path},
                )
        elif constraint.target_kind is None:
            return

        keys = [(p[0].segment, p[1]) for p in parsed if p is not None]
        targets = self._targets(keys)
        missing = [f"{s}/{i}" for s, i in keys if (s, i) not in targets]
        if missing:
            logger.warning("Dangling references in %s.%s: %s", fc.family.segment, path, missing)
            raise _fail(
                f"One or more lookup references in property '{path}' point at records "
                f"that do not exist.",
                f"{prefix}-INVALID-LOOKUP-REFERENCE",
                "InvalidLookupReferenceError",
                {"propertyPath": path, "missing": missing},
            )

        if constraint.target_kind is not None:
            if any(t.get("_kind") != constraint.target_kind for t in targets.values()):
                raise _fail(
                    f"One or more lookup references in property '{path}' do not meet the "
                    f"constraint: expected targetKind='{constraint.target_kind}'.",
                    f"{prefix}-INVALID-LOOKUP-KIND",
                    "InvalidLookupConstraintError",
                    {"propertyPath": path, "targetKind": constraint.target_kind},
                )

        shared = _SHARED_PARENT_FIELD.get(fc.family.segment)
        if path == "_parents" and shared is not None:
            field, display, stem = shared
            own = record.get(field)
            if any(t.get(field) != own for t in targets.values()):
                raise _fail(
                    f"One or more parent reactions in property '_parents' do not have matching "
                    f"{display.lower()} ID. Expected {display.lower()} ID: '{own}'.",
                    f"{prefix}-INVALID-PARENT-{stem}-ID",
                    f"InvalidParent{display}IdError",
                    {"propertyPath": path, field: own},
                )

    def _targets(self, keys: list[tuple[str, str]]) -> dict[tuple[str, str], dict[str, Any]]:
        """Stored records for ``(segment, id)`` pairs, one fetch per family."""
        by_family: dict[str, set[str]] = {}
        for segment, record_id in keys:
            by_family.setdefault(segment, set()).add(record_id)
        found: dict[tuple[str, str], dict[str, Any]] = {}
        for segment, ids in by_family.items():
            collection = self._config.family(segment).collection
            for doc in self._store.fetch_many(collection, sorted(ids)):
                found[(segment, doc["_id"])] = doc
        return found
