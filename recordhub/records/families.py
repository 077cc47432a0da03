"""
Record families served by the API and their fixed traits.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Family:
    """Static description of one record family.

    ``segment`` is the URL path segment (also used in reference URIs),
    ``prefix`` the configuration-key stem and ``error_prefix`` the stem of
    error codes such as ``ENTITY-NOT-FOUND``.
    """
    segment: str
    prefix: str
    default_kind: str
    collection: str
    error_prefix: str
    display: str
    autoapprove_key: str
    references: dict[str, str] = field(default_factory=dict)
    has_access_fields: bool = True
    requires_name: bool = False
    includes: dict[str, tuple[str, str]] = field(default_factory=dict)

    @property
    def friendly(self) -> str:
        return self.display.lower()


ENTITIES = Family(
    segment="entities",
    prefix="entity",
    default_kind="entity",
    collection="GenericEntity",
    error_prefix="ENTITY",
    display="Entity",
    autoapprove_key="entity",
    requires_name=True,
    includes={"reactions": ("entity-reactions", "_entityId")},
)

LISTS = Family(
    segment="lists",
    prefix="list",
    default_kind="list",
    collection="List",
    error_prefix="LIST",
    display="List",
    autoapprove_key="list",
    requires_name=True,
    includes={"reactions": ("list-reactions", "_listId")},
)

ENTITY_REACTIONS = Family(
    segment="entity-reactions",
    prefix="entity_reaction",
    default_kind="entity-reaction",
    collection="EntityReaction",
    error_prefix="ENTITY-REACTION",
    display="Entity reaction",
    autoapprove_key="entity_reaction",
    references={"_entityId": "entities"},
)

LIST_REACTIONS = Family(
    segment="list-reactions",
    prefix="list_reaction",
    default_kind="list-reaction",
    collection="ListReaction",
    error_prefix="LIST-REACTION",
    display="List reaction",
    autoapprove_key="list_reaction",
    references={"_listId": "lists"},
)

RELATIONS = Family(
    segment="list-entity-relations",
    prefix="list_entity_rel",
    default_kind="relation",
    collection="ListToEntityRelation",
    error_prefix="RELATION",
    display="Relation",
    autoapprove_key="list_entity_relations",
    references={"_listId": "lists", "_entityId": "entities"},
    has_access_fields=False,
)

FAMILIES: dict[str, Family] = {
    f.segment: f for f in (ENTITIES, LISTS, ENTITY_REACTIONS, LIST_REACTIONS, RELATIONS)
}


# ── Reference URIs ──────────────────────────────────────

_URI_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://[^/]+/([^/]+)/([^/?#]+)$")


def reference_uri(host: str, family: Family, record_id: str) -> str:
    """``tapp://localhost/entities/<id>``"""
    return f"{host.rstrip('/')}/{family.segment}/{record_id}"


def parse_reference(uri: object) -> tuple[Family, str] | None:
    """Split ``scheme://host/<segment>/<id>``; None when malformed or unknown."""
    if not isinstance(uri, str):
        return None
    m = _URI_RE.match(uri.strip())
    if not m or m.group(1) not in FAMILIES:
        return None
    return FAMILIES[m.group(1)], m.group(2)
