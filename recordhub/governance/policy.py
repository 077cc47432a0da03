"""
Per-family business policy, built once at start-up from the environment.

The policy is the single source of truth for:
  - allowed kinds and the default kind
  - default visibility (global and per kind)
  - autoapprove flags (global and per kind)
  - response-size limits
  - record-count limit rules and uniqueness rules
  - lookup constraints on reference properties (``ENTITY_LOOKUP_CONSTRAINT``)
  - collection names

Environment keys are matched case-insensitively.  Record limits may be given
either as JSON lists (``ENTITY_RECORD_LIMITS='[{"scope": "...", "limit": 5}]'``)
or with the flat keys (``record_limit_entity_count``,
``record_limit_entity_scope_for_book`` ...).  An optional YAML file
(``RULES_FILE``) contributes further rules::

    entities:
      record_limits:
        - scope: "set[actives]&filter[where][_kind]=book"
          limit: 100
      uniqueness:
        - fields: [_slug, _kind]
          scope: "set[owners]"
      lookup_constraints:
        - propertyPath: relatedBooks
          record: entity
          targetKind: book
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from recordhub.core.config import Settings, get_settings
from recordhub.core.logging import get_logger
from recordhub.records.families import FAMILIES, Family

logger = get_logger(__name__)

VISIBILITIES = ("public", "protected", "private")
DEFAULT_VISIBILITY = "protected"
DEFAULT_RESPONSE_LIMIT = 50

_JSON_LIMIT_KEYS = {
    "entities": "entity_record_limits",
    "lists": "list_record_limits",
    "list-entity-relations": "relation_record_limits",
    "entity-reactions": "entity_reaction_record_limits",
    "list-reactions": "list_reaction_record_limits",
}


class ConfigError(ValueError):
    """Raised at start-up for an unusable configuration value."""


# ── Rules ───────────────────────────────────────────────


@dataclass(frozen=True)
class LimitRule:
    """At most ``limit`` records may match ``scope`` (a query-string template)."""
    scope: str
    limit: int


@dataclass(frozen=True)
class UniquenessRule:
    fields: tuple[str, ...]
    scope: str = ""


@dataclass(frozen=True)
class LookupConstraint:
    """References under ``property_path`` must point at ``record`` records.

    ``source_kind`` limits the rule to records of that kind; ``target_kind``
    additionally requires every referenced record to be of that kind.
    """
    property_path: str
    record: str | None = None
    source_kind: str | None = None
    target_kind: str | None = None

    def applies_to(self, kind: str | None) -> bool:
        return not self.source_kind or self.source_kind == kind


@dataclass(frozen=True)
class KindScoped:
    """A general value plus per-kind overrides."""
    default: Any = None
    by_kind: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def get(self, kind: str | None) -> Any:
        if kind is not None:
            key = _kind_key(kind)
            if key in self.by_kind:
                return self.by_kind[key]
        return self.default


# ── Family policy ───────────────────────────────────────


@dataclass(frozen=True)
class FamilyConfig:
    family: Family
    collection: str
    kinds: tuple[str, ...]
    default_kind: str
    visibility: KindScoped
    autoapprove: KindScoped
    response_limit: int
    limit_rules: tuple[LimitRule, ...] = ()
    legacy_limit_count: KindScoped = KindScoped()
    legacy_limit_scope: KindScoped = KindScoped("")
    uniqueness_fields: KindScoped = KindScoped(())
    uniqueness_scope: KindScoped = KindScoped("")
    extra_uniqueness: tuple[UniquenessRule, ...] = ()
    list_entity_limit: KindScoped = KindScoped()
    lookup_constraints: tuple[LookupConstraint, ...] = ()

    def kind_allowed(self, kind: str) -> bool:
        return not self.kinds or kind in self.kinds

    def visibility_for(self, kind: str | None) -> str:
        return self.visibility.get(kind)

    def autoapprove_for(self, kind: str | None) -> bool:
        return bool(self.autoapprove.get(kind))

    def limits_for(self, kind: str | None) -> list[LimitRule]:
        """Every limit rule that applies to a record of *kind*."""
        rules = list(self.limit_rules)
        per_kind = kind is not None and _kind_key(kind) in self.legacy_limit_count.by_kind
        count = self.legacy_limit_count.get(kind)
        if count is not None:
            parts = []
            if per_kind:
                parts.append(f"filter[where][_kind]={kind}")
            scope = self.legacy_limit_scope.get(kind)
            if scope:
                parts.append(scope)
            rules.append(LimitRule(scope="&".join(parts), limit=int(count)))
        return rules

    def uniqueness_for(self, kind: str | None) -> list[UniquenessRule]:
        rules = list(self.extra_uniqueness)
        fields = self.uniqueness_fields.get(kind)
        if fields:
            rules.append(UniquenessRule(tuple(fields), self.uniqueness_scope.get(kind) or ""))
        return rules


@dataclass(frozen=True)
class AppConfig:
    """Immutable process-wide configuration shared by every component."""
    families: Mapping[str, FamilyConfig]
    access_control: bool = True
    reference_host: str = "tapp://localhost"
    max_lookup_depth: int = 5
    user_header: str = "X-User-Id"
    groups_header: str = "X-Group-Ids"

    def family(self, segment: str) -> FamilyConfig:
        return self.families[segment]


# ── Building ────────────────────────────────────────────


def _kind_key(kind: str) -> str:
    return kind.strip().lower().replace("-", "_")


class _Env:
    """Case-insensitive view over an environment mapping."""

    def __init__(self, env: Mapping[str, str]):
        self._values = {str(k).lower().replace("-", "_"): v for k, v in env.items()}

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self._values.get(key.lower())
        if value is None or value == "":
            return default
        return value

    def per_kind(self, stem: str) -> dict[str, str]:
        """Collect ``{stem}_for_{kind}`` keys as ``{kind: value}``."""
        marker = f"{stem}_for_"
        return {
            key[len(marker):]: value
            for key, value in self._values.items()
            if key.startswith(marker) and value != ""
        }


def _as_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _as_int(value: str | None, key: str) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"Configuration '{key}' must be an integer, got {value!r}")


def _csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.split(",") if v.strip())


def _check_visibility(value: str, key: str) -> str:
    value = value.strip().lower()
    if value not in VISIBILITIES:
        raise ConfigError(f"Configuration '{key}' must be one of {', '.join(VISIBILITIES)}")
    return value


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType({_kind_key(k): v for k, v in mapping.items()})


def _parse_limit_rules(raw: Any, source: str) -> tuple[LimitRule, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ConfigError(f"{source} is not valid JSON")
    if not isinstance(raw, list):
        raise ConfigError(f"{source} must be a list of {{scope, limit}} objects")
    rules = []
    for item in raw:
        if not isinstance(item, dict) or "limit" not in item:
            raise ConfigError(f"{source}: every rule needs a 'limit'")
        rules.append(LimitRule(scope=str(item.get("scope") or ""), limit=int(item["limit"])))
    return tuple(rules)


def _parse_uniqueness_rules(raw: Any, source: str) -> tuple[UniquenessRule, ...]:
    if not raw:
        return ()
    rules = []
    for item in raw:
        fields = item.get("fields") if isinstance(item, dict) else None
        if isinstance(fields, str):
            fields = _csv(fields)
        if not fields:
            raise ConfigError(f"{source}: every uniqueness rule needs 'fields'")
        rules.append(UniquenessRule(tuple(fields), str(item.get("scope") or "")))
    return tuple(rules)


# Accepts the singular record names as well as URL segments.
_RECORD_NAMES = {
    "entity": "entities",
    "list": "lists",
    "entity-reaction": "entity-reactions",
    "list-reaction": "list-reactions",
}


def _parse_lookup_constraints(raw: Any, source: str) -> tuple[LookupConstraint, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ConfigError(f"{source} is not valid JSON")
    if not isinstance(raw, list):
        raise ConfigError(f"{source} must be a list of {{propertyPath, record, ...}} objects")
    constraints = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("propertyPath"):
            raise ConfigError(f"{source}: every constraint needs a 'propertyPath'")
        record = item.get("record")
        if record is not None:
            record = _RECORD_NAMES.get(record, record)
            if record not in FAMILIES:
                raise ConfigError(f"{source}: unknown record type '{item['record']}'")
        constraints.append(LookupConstraint(
            property_path=str(item["propertyPath"]),
            record=record,
            source_kind=item.get("sourceKind"),
            target_kind=item.get("targetKind"),
        ))
    return tuple(constraints)


def _with_parent_default(family: Family, constraints: tuple[LookupConstraint, ...]):
    """``_parents`` must reference the same family unless configured otherwise."""
    if not family.has_access_fields:
        return constraints
    if any(c.property_path == "_parents" for c in constraints):
        return constraints
    return constraints + (LookupConstraint("_parents", record=family.segment),)


def load_rules_file(path: str | Path) -> dict[str, Any]:
    """Read the optional YAML rules file (keyed by family segment)."""
    with open(path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Rules file {path} must contain a mapping")
    unknown = set(raw) - set(FAMILIES)
    if unknown:
        raise ConfigError(f"Rules file {path} names unknown families: {', '.join(sorted(unknown))}")
    return raw


def _build_family(family: Family, env: _Env, file_rules: dict[str, Any]) -> FamilyConfig:
    p = family.prefix

    default_kind = env.get(f"default_{p}_kind", family.default_kind).strip()
    kinds = _csv(env.get(f"{p}_kinds"))
    if kinds and default_kind not in kinds:
        kinds = kinds + (default_kind,)

    visibility = KindScoped(
        _check_visibility(env.get(f"visibility_{p}", DEFAULT_VISIBILITY), f"visibility_{p}"),
        _frozen({
            k: _check_visibility(v, f"visibility_{p}_for_{k}")
            for k, v in env.per_kind(f"visibility_{p}").items()
        }),
    )
    a = family.autoapprove_key
    autoapprove = KindScoped(
        bool(_as_bool(env.get(f"autoapprove_{a}"))),
        _frozen({k: _as_bool(v) for k, v in env.per_kind(f"autoapprove_{a}").items()}),
    )

    response_limit = _as_int(env.get(f"response_limit_{p}"), f"response_limit_{p}")

    limit_rules = _parse_limit_rules(
        env.get(_JSON_LIMIT_KEYS[family.segment]), _JSON_LIMIT_KEYS[family.segment].upper()
    )
    own_file_rules = file_rules.get(family.segment) or {}
    limit_rules += _parse_limit_rules(own_file_rules.get("record_limits"), f"{family.segment}.record_limits")

    legacy_count = KindScoped(
        _as_int(env.get(f"record_limit_{p}_count"), f"record_limit_{p}_count"),
        _frozen({
            k: _as_int(v, f"record_limit_{p}_count_for_{k}")
            for k, v in env.per_kind(f"record_limit_{p}_count").items()
        }),
    )
    legacy_scope = KindScoped(
        env.get(f"record_limit_{p}_scope", ""),
        _frozen(env.per_kind(f"record_limit_{p}_scope")),
    )
    uniqueness_fields = KindScoped(
        _csv(env.get(f"uniqueness_{p}_fields")),
        _frozen({k: _csv(v) for k, v in env.per_kind(f"uniqueness_{p}_fields").items()}),
    )
    uniqueness_scope = KindScoped(
        env.get(f"uniqueness_{p}_scope", ""),
        _frozen(env.per_kind(f"uniqueness_{p}_scope")),
    )

    lookup_constraints = _parse_lookup_constraints(
        env.get(f"{p}_lookup_constraint"), f"{p}_lookup_constraint".upper()
    )
    lookup_constraints += _parse_lookup_constraints(
        own_file_rules.get("lookup_constraints"), f"{family.segment}.lookup_constraints"
    )

    list_entity_limit = KindScoped()
    if family.segment == "list-entity-relations":
        list_entity_limit = KindScoped(
            _as_int(env.get("record_limit_list_entity_count"), "record_limit_list_entity_count"),
            _frozen({
                k: _as_int(v, f"record_limit_list_entity_count_for_{k}")
                for k, v in env.per_kind("record_limit_list_entity_count").items()
            }),
        )

    return FamilyConfig(
        family=family,
        collection=env.get(f"collection_{p}", family.collection),
        kinds=kinds,
        default_kind=default_kind,
        visibility=visibility,
        autoapprove=autoapprove,
        response_limit=response_limit or DEFAULT_RESPONSE_LIMIT,
        limit_rules=limit_rules,
        legacy_limit_count=legacy_count,
        legacy_limit_scope=legacy_scope,
        uniqueness_fields=uniqueness_fields,
        uniqueness_scope=uniqueness_scope,
        extra_uniqueness=_parse_uniqueness_rules(
            own_file_rules.get("uniqueness"), f"{family.segment}.uniqueness"
        ),
        list_entity_limit=list_entity_limit,
        lookup_constraints=_with_parent_default(family, lookup_constraints),
    )


def build_config(
    env: Mapping[str, str] | None = None,
    settings: Settings | None = None,
) -> AppConfig:
    """Build the immutable ``AppConfig`` from *env* (defaults to ``os.environ``)."""
    settings = settings or get_settings()
    reader = _Env(os.environ if env is None else env)

    file_rules: dict[str, Any] = {}
    rules_file = reader.get("rules_file", settings.rules_file)
    if rules_file:
        file_rules = load_rules_file(rules_file)

    families = {
        segment: _build_family(family, reader, file_rules)
        for segment, family in FAMILIES.items()
    }
    access = _as_bool(reader.get("access_control"))
    config = AppConfig(
        families=MappingProxyType(families),
        access_control=settings.access_control if access is None else access,
        reference_host=settings.reference_host,
        max_lookup_depth=settings.max_lookup_depth,
        user_header=settings.user_header,
        groups_header=settings.groups_header,
    )
    for fc in families.values():
        logger.debug(
            "Policy %s: kinds=%s default=%s limits=%d",
            fc.family.segment, list(fc.kinds) or "*", fc.default_kind, len(fc.limit_rules),
        )
    return config
