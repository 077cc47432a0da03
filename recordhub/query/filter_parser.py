"""
Filter parser & normaliser.

Turns the bracketed query-string grammar (or an equivalent JSON object)
into a ``FilterSpec``::

    filter[where][and][0][rating][gt]=3
    filter[where][and][0][rating][type]=number
    filter[order][0]=_name DESC
    filter[limit]=10&filter[skip]=20
    filter[fields][_id]=true&filter[fields][_kind]=true
    filter[lookup][0][prop]=authors&filter[lookup][0][scope][fields][_name]=true
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl

from recordhub.core.errors import FilterParseError
from recordhub.query.condition import (
    Condition,
    FieldCondition,
    Operator,
    OPERATOR_NAMES,
    MATCH_ALL,
    and_,
    coerce_value,
    or_,
)
from recordhub.query.matcher import compile_regexp
from recordhub.query.sets import SetExpr, parse_set

_BRACKET_RE = re.compile(r"\[([^\]]*)\]")
_LEAF_KEYS = OPERATOR_NAMES | {"type", "options"}


# ── Data classes ────────────────────────────────────────


@dataclass(frozen=True)
class OrderKey:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Projection:
    """``include`` keeps only ``names`` (plus ``_id``); ``exclude`` drops them."""
    mode: str
    names: tuple[str, ...]


@dataclass(frozen=True)
class LookupSpec:
    prop: str
    scope: "FilterSpec"


@dataclass(frozen=True)
class IncludeSpec:
    relation: str
    scope: "FilterSpec"


@dataclass(frozen=True)
class FilterSpec:
    where: Condition = MATCH_ALL
    order: tuple[OrderKey, ...] = ()
    limit: int | None = None
    skip: int = 0
    fields: Projection | None = None
    lookup: tuple[LookupSpec, ...] = ()
    include: tuple[IncludeSpec, ...] = ()
    set: SetExpr | None = None


EMPTY_FILTER = FilterSpec()


# ── Query-string decoding ───────────────────────────────


def decode_query(query: str) -> dict[str, Any]:
    """Decode ``a[b][0][c]=v`` pairs into nested dicts / lists.

    Maps whose keys are all integers become lists ordered by index, and a
    repeated key (or a ``[]`` suffix) collects its values into a list.
    """
    root: dict[str, Any] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        head = key.split("[", 1)[0]
        path = [head] + _BRACKET_RE.findall(key[len(head):])
        _assign(root, path, value)
    return _listify(root)


def _assign(node: dict, path: list[str], value: str) -> None:
    for i, part in enumerate(path[:-1]):
        nxt = path[i + 1]
        if nxt == "":
            bucket = node.setdefault(part, [])
            if isinstance(bucket, list):
                bucket.append(value)
            return
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    last = path[-1]
    if last in node:
        existing = node[last]
        if isinstance(existing, list):
            existing.append(value)
        elif not isinstance(existing, dict):
            node[last] = [existing, value]
    else:
        node[last] = value


def _listify(node: Any) -> Any:
    if isinstance(node, dict):
        converted = {k: _listify(v) for k, v in node.items()}
        if converted and all(k.isdigit() for k in converted):
            return [converted[k] for k in sorted(converted, key=int)]
        return converted
    if isinstance(node, list):
        return [_listify(v) for v in node]
    return node


def load_filter_param(raw: Any) -> Any:
    """Accept ``filter`` either decoded from brackets or as a JSON string."""
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            raise FilterParseError("Filter is neither bracket syntax nor valid JSON.")
    return raw


# ── FilterSpec parsing ──────────────────────────────────


def parse_filter(
    raw: Any,
    *,
    default_limit: int | None = None,
    max_limit: int | None = None,
    max_depth: int = 5,
    _depth: int = 0,
) -> FilterSpec:
    """Parse a decoded filter map into a ``FilterSpec``.

    Parameters
    ----------
    raw:
        Decoded ``filter`` map, a JSON string, or None.
    default_limit:
        Limit applied when the filter has none (None = unlimited).
    max_limit:
        Hard ceiling; larger limits are silently truncated.
    max_depth:
        Maximum nesting of ``lookup`` scopes.

    Returns
    -------
    FilterSpec
        Normalised, immutable filter.
    """
    raw = load_filter_param(raw)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise FilterParseError("Filter must be an object.")
    if _depth > max_depth:
        raise FilterParseError(f"Lookups are nested deeper than the allowed {max_depth} levels.")

    where = parse_where(raw["where"]) if raw.get("where") not in (None, "", {}) else MATCH_ALL
    limit = _parse_limit(raw.get("limit"), default_limit, max_limit)
    skip = _parse_skip(raw.get("skip", raw.get("offset")))

    lookups = tuple(
        _parse_lookup(item, max_depth=max_depth, depth=_depth + 1)
        for item in _as_list(raw.get("lookup"))
    )
    includes = tuple(
        _parse_include(item, max_depth=max_depth, depth=_depth + 1)
        for item in _as_list(raw.get("include"))
    )

    return FilterSpec(
        where=where,
        order=parse_order(raw.get("order")),
        limit=limit,
        skip=skip,
        fields=parse_fields(raw.get("fields")),
        lookup=lookups,
        include=includes,
        set=parse_set(raw.get("set")),
    )


def _as_list(value: Any) -> list:
    if value in (None, "", {}):
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise FilterParseError(f"Filter {name} must be an integer.")
    try:
        return int(str(value).strip())
    except ValueError:
        raise FilterParseError(f"Filter {name} must be an integer, got {value!r}.")


def _parse_limit(value: Any, default: int | None, maximum: int | None) -> int | None:
    limit = None if value in (None, "") else _parse_int(value, "limit")
    if limit is not None and limit < 0:
        raise FilterParseError("Filter limit must not be negative.")
    if not limit:
        limit = default
    if maximum is not None and (limit is None or limit > maximum):
        limit = maximum
    return limit


def _parse_skip(value: Any) -> int:
    if value in (None, ""):
        return 0
    skip = _parse_int(value, "skip")
    if skip < 0:
        raise FilterParseError("Filter skip must not be negative.")
    return skip


def _parse_lookup(item: Any, *, max_depth: int, depth: int) -> LookupSpec:
    if not isinstance(item, dict) or not item.get("prop"):
        raise FilterParseError("Each lookup needs a 'prop'.")
    scope = parse_filter(item.get("scope"), max_depth=max_depth, _depth=depth)
    return LookupSpec(prop=str(item["prop"]), scope=scope)


def _parse_include(item: Any, *, max_depth: int, depth: int) -> IncludeSpec:
    if isinstance(item, str):
        return IncludeSpec(relation=item, scope=EMPTY_FILTER)
    if not isinstance(item, dict) or not item.get("relation"):
        raise FilterParseError("Each include needs a 'relation'.")
    scope = parse_filter(item.get("scope"), max_depth=max_depth, _depth=depth)
    return IncludeSpec(relation=str(item["relation"]), scope=scope)


# ── Order / fields ──────────────────────────────────────


def parse_order(raw: Any) -> tuple[OrderKey, ...]:
    """``["_name DESC", "rating asc"]`` or ``"_name DESC, rating"``."""
    if raw in (None, "", []):
        return ()
    items = raw if isinstance(raw, list) else str(raw).split(",")
    keys: list[OrderKey] = []
    for item in items:
        parts = str(item).split()
        if not parts:
            continue
        direction = parts[1].upper() if len(parts) > 1 else "ASC"
        if len(parts) > 2 or direction not in ("ASC", "DESC"):
            raise FilterParseError(f"Invalid order clause '{item}'. Use '<field> ASC|DESC'.")
        keys.append(OrderKey(parts[0], direction == "DESC"))
    return tuple(keys)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "")
    return bool(value)


def parse_fields(raw: Any) -> Projection | None:
    """Allow-list when any entry is true (false entries then ignored), else deny-list."""
    if raw in (None, "", {}, []):
        return None
    if isinstance(raw, list):
        return Projection("include", tuple(str(n) for n in raw))
    if isinstance(raw, str):
        return Projection("include", tuple(n.strip() for n in raw.split(",") if n.strip()))
    if not isinstance(raw, dict):
        raise FilterParseError("Filter fields must be an object of field -> boolean.")
    flags = {str(k): _truthy(v) for k, v in raw.items()}
    included = tuple(k for k, v in flags.items() if v)
    if included:
        return Projection("include", included)
    return Projection("exclude", tuple(flags))


# ── Where ───────────────────────────────────────────────


def parse_where(raw: Any, prefix: str = "") -> Condition:
    """Parse a ``where`` map; sibling keys are ANDed."""
    if not isinstance(raw, dict):
        raise FilterParseError("Where clause must be an object.")
    parts: list[Condition] = []
    for key, value in raw.items():
        if key in ("and", "or") and not prefix:
            items = _as_list(value)
            if not items:
                raise FilterParseError(f"'{key}' needs at least one condition.")
            children = [parse_where(item) for item in items]
            parts.append(and_(*children) if key == "and" else or_(*children))
            continue
        path = f"{prefix}{key}"
        parts.append(_parse_field(path, value))
    return and_(*parts)


def _parse_field(path: str, value: Any) -> Condition:
    if isinstance(value, dict):
        if value and set(value) <= _LEAF_KEYS:
            return _parse_operators(path, value)
        if not value:
            raise FilterParseError(f"Empty condition for field '{path}'.")
        return parse_where(value, prefix=f"{path}.")
    if isinstance(value, list):
        values, literals = _coerce_each(value, None)
        return FieldCondition(path, Operator.EQ, values, literals)
    coerced, literal = coerce_value(value)
    return FieldCondition(path, Operator.EQ, coerced, literal)


def _parse_operators(path: str, spec: dict[str, Any]) -> Condition:
    hint = spec.get("type")
    options = str(spec.get("options", "")).lower()
    leaves: list[Condition] = []
    for name, value in spec.items():
        if name in ("type", "options"):
            continue
        op = Operator(name)
        if "i" in options and op in (Operator.LIKE, Operator.NLIKE):
            op = Operator.ILIKE if op is Operator.LIKE else Operator.NILIKE
        leaves.append(_build_leaf(path, op, value, hint))
    if not leaves:
        raise FilterParseError(f"No operator given for field '{path}'.")
    return and_(*leaves)


def _build_leaf(path: str, op: Operator, value: Any, hint: str | None) -> FieldCondition:
    if op is Operator.BETWEEN:
        items = _split_list(value)
        if len(items) != 2:
            raise FilterParseError(f"'between' on '{path}' needs exactly two values.")
        values, literals = _coerce_each(items, hint)
        return FieldCondition(path, op, values, literals)
    if op in (Operator.INQ, Operator.NIN):
        values, literals = _coerce_each(_split_list(value), hint)
        return FieldCondition(path, op, values, literals)
    if op is Operator.EXISTS:
        return FieldCondition(path, op, _truthy(value))
    if op in (Operator.LIKE, Operator.NLIKE, Operator.ILIKE, Operator.NILIKE, Operator.REGEXP):
        if not isinstance(value, str):
            raise FilterParseError(f"'{op.value}' on '{path}' needs a string pattern.")
        if op is Operator.REGEXP:
            _check_regexp(path, value)
        return FieldCondition(path, op, value)
    coerced, literal = coerce_value(value, hint)
    return FieldCondition(path, op, coerced, literal)


def _coerce_each(items: list, hint: str | None) -> tuple[list, tuple | None]:
    """Coerce list members, keeping per-member literals aligned by index."""
    pairs = [coerce_value(v, hint) for v in items]
    values = [v for v, _ in pairs]
    literals = tuple(lit for _, lit in pairs)
    if all(lit is None for lit in literals):
        return values, None
    return values, literals


def _split_list(value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [v.strip() for v in value.split(",")]
    return [value]


def _check_regexp(path: str, pattern: str) -> None:
    try:
        compile_regexp(pattern)
    except re.error as exc:
        raise FilterParseError(f"Invalid regexp on '{path}': {exc}")
