"""
Managed-field lifecycle for create / replace / update.

These functions are pure: they take the stored document (if any), the
caller's payload and the request instant, and return the document that
should be persisted.  Every check runs before anything is written, so a
rejected write never leaves a partial change behind.
"""
from __future__ import annotations

import copy
import re
import uuid
from datetime import datetime
from typing import Any

from recordhub.core.errors import (
    ImmutableFieldError,
    ImmutableKindError,
    InvalidKindError,
    ValidationError,
)
from recordhub.core.utils import parse_iso, to_iso
from recordhub.governance.policy import VISIBILITIES, FamilyConfig
from recordhub.query.access import Requester
from recordhub.records.families import FAMILIES

_SLUG_RE = re.compile(r"[^a-z0-9]+")

ACCESS_ARRAYS = ("_ownerUsers", "_ownerGroups", "_viewerUsers", "_viewerGroups")
COUNTED_ARRAYS = ACCESS_ARRAYS + ("_parents",)

# Written by the service only; ignored when a caller sends them.
SERVER_FIELDS = ("_id", "_version", "_fromMetadata", "_toMetadata") + tuple(
    f + "Count" for f in COUNTED_ARRAYS
)


def slugify(value: str) -> str:
    """``"Hello, World!"`` -> ``"hello-world"``"""
    return _SLUG_RE.sub("-", str(value).strip().lower()).strip("-")


# ── Validation ──────────────────────────────────────────


def validate_kind(fc: FamilyConfig, kind: Any) -> str:
    family = fc.family
    code = f"INVALID-{family.error_prefix}-KIND"
    if not isinstance(kind, str) or not kind.strip():
        raise InvalidKindError(f"{family.display} kind must be a non-empty string.", code)
    slug = slugify(kind)
    if slug != kind:
        raise InvalidKindError(
            f"{family.display} kind cannot contain special or uppercase characters. "
            f"Use '{slug}' instead.",
            code,
        )
    if not fc.kind_allowed(kind):
        raise InvalidKindError(
            f"{family.display} kind '{kind}' is not valid. "
            f"Use any of these values instead: {', '.join(fc.kinds)}",
            code,
        )
    return kind


def _validate_visibility(fc: FamilyConfig, value: Any) -> str:
    if value not in VISIBILITIES:
        raise ValidationError(
            f"{fc.family.display} visibility must be one of: {', '.join(VISIBILITIES)}.",
            f"INVALID-{fc.family.error_prefix}-VISIBILITY",
        )
    return value


def _validate_shape(fc: FamilyConfig, doc: dict[str, Any]) -> None:
    family = fc.family
    if family.requires_name:
        name = doc.get("_name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(
                f"{family.display} name is required.", f"MISSING-{family.error_prefix}-NAME"
            )
    for key in COUNTED_ARRAYS:
        value = doc.get(key)
        if value is not None and not (
            isinstance(value, list) and all(isinstance(v, str) for v in value)
        ):
            raise ValidationError(
                f"{key} must be an array of strings.",
                f"INVALID-{family.error_prefix}-FIELD",
                name="InvalidFieldError",
            )


def _instant(fc: FamilyConfig, doc: dict[str, Any], key: str) -> str | None:
    """Normalise an incoming instant to ``...mmmZ``; None stays None."""
    value = doc.get(key)
    if value is None:
        return None
    parsed = parse_iso(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError(
            f"{key} must be an ISO-8601 date-time.",
            f"INVALID-{fc.family.error_prefix}-FIELD",
            name="InvalidFieldError",
        )
    return to_iso(parsed)


def check_immutables(fc: FamilyConfig, existing: dict[str, Any], payload: dict[str, Any]) -> None:
    """Reject a payload that changes the kind or a fixed reference field."""
    family = fc.family
    if "_kind" in payload and payload["_kind"] != existing.get("_kind"):
        raise ImmutableKindError(
            f"{family.display} kind cannot be changed after creation. "
            f"Current kind is '{existing.get('_kind')}'.",
            f"IMMUTABLE-{family.error_prefix}-KIND",
        )
    for ref_field, segment in family.references.items():
        if ref_field in payload and payload[ref_field] != existing.get(ref_field):
            target = FAMILIES[segment]
            raise ImmutableFieldError(
                f"{target.display} id cannot be changed after creation.",
                f"IMMUTABLE-{target.error_prefix}-ID",
                name=f"Immutable{target.display}IdError",
            )


# ── Derived fields ──────────────────────────────────────


def _strip_server_fields(payload: dict[str, Any]) -> dict[str, Any]:
    doc = copy.deepcopy(payload)
    for key in SERVER_FIELDS:
        doc.pop(key, None)
    return doc


def _finish(fc: FamilyConfig, doc: dict[str, Any]) -> dict[str, Any]:
    if doc.get("_name") and not doc.get("_slug"):
        doc["_slug"] = slugify(doc["_name"])
    if fc.family.has_access_fields:
        for key in COUNTED_ARRAYS:
            doc[key + "Count"] = len(doc.get(key) or [])
    _validate_shape(fc, doc)
    return doc


# ── Operations ──────────────────────────────────────────


def prepare_create(
    fc: FamilyConfig,
    payload: dict[str, Any],
    requester: Requester,
    now: datetime,
) -> dict[str, Any]:
    """Build a new document: id, kind, version, timestamps and defaults.

    Parameters
    ----------
    fc:
        Policy of the target family.
    payload:
        Caller-supplied fields; server-owned fields in it are ignored.
    requester:
        Becomes the sole owner when ``_ownerUsers`` is not given.
    now:
        The request instant.

    Returns
    -------
    dict
        The document to insert.
    """
    body = _strip_server_fields(payload)
    kind = body.pop("_kind", None)
    kind = validate_kind(fc, fc.default_kind if kind is None else kind)
    iso_now = to_iso(now)

    doc: dict[str, Any] = {"_id": uuid.uuid4().hex, "_kind": kind}
    doc.update(body)
    doc["_version"] = 1
    doc["_createdDateTime"] = _instant(fc, body, "_createdDateTime") or iso_now
    doc["_lastUpdatedDateTime"] = _instant(fc, body, "_lastUpdatedDateTime") or iso_now
    valid_from = _instant(fc, body, "_validFromDateTime")
    if valid_from is None and fc.autoapprove_for(kind):
        valid_from = iso_now
    doc["_validFromDateTime"] = valid_from
    doc["_validUntilDateTime"] = _instant(fc, body, "_validUntilDateTime")

    if fc.family.has_access_fields:
        doc["_visibility"] = _validate_visibility(
            fc, body.get("_visibility") or fc.visibility_for(kind)
        )
        if body.get("_ownerUsers") is None:
            doc["_ownerUsers"] = [requester.user_id] if requester.user_id else []
        for key in ("_ownerGroups", "_viewerUsers", "_viewerGroups", "_parents"):
            if doc.get(key) is None:
                doc[key] = []
    return _finish(fc, doc)


def prepare_replace(
    fc: FamilyConfig,
    existing: dict[str, Any],
    payload: dict[str, Any],
    now: datetime,
) -> dict[str, Any]:
    """Full replace: caller fields not resupplied are dropped.

    Identity, kind, creation time and reference fields carry over; managed
    fields that are absent keep their stored value.
    """
    check_immutables(fc, existing, payload)
    body = _strip_server_fields(payload)

    doc: dict[str, Any] = {"_id": existing["_id"], "_kind": existing.get("_kind")}
    doc.update(body)
    doc["_kind"] = existing.get("_kind")
    doc["_createdDateTime"] = existing.get("_createdDateTime")
    for ref_field in fc.family.references:
        if ref_field in existing:
            doc[ref_field] = existing[ref_field]
    for key in ("_validFromDateTime", "_validUntilDateTime"):
        doc[key] = _instant(fc, body, key) if key in body else existing.get(key)
    if fc.family.has_access_fields:
        for key in ("_visibility",) + COUNTED_ARRAYS:
            if doc.get(key) is None:
                doc[key] = copy.deepcopy(existing.get(key))
        doc["_visibility"] = _validate_visibility(fc, doc["_visibility"])
    doc["_version"] = int(existing.get("_version") or 0) + 1
    doc["_lastUpdatedDateTime"] = _instant(fc, body, "_lastUpdatedDateTime") or to_iso(now)
    return _finish(fc, doc)


def prepare_update(
    fc: FamilyConfig,
    existing: dict[str, Any],
    payload: dict[str, Any],
    now: datetime,
) -> dict[str, Any]:
    """Partial update: supplied top-level fields are merged into the stored document."""
    check_immutables(fc, existing, payload)
    body = _strip_server_fields(payload)

    doc = copy.deepcopy(existing)
    doc.update(body)
    for key in ("_validFromDateTime", "_validUntilDateTime"):
        if key in body:
            doc[key] = _instant(fc, body, key)
    doc["_createdDateTime"] = existing.get("_createdDateTime")
    if fc.family.has_access_fields and "_visibility" in body:
        _validate_visibility(fc, doc["_visibility"])
    doc["_version"] = int(existing.get("_version") or 0) + 1
    doc["_lastUpdatedDateTime"] = _instant(fc, body, "_lastUpdatedDateTime") or to_iso(now)
    return _finish(fc, doc)
