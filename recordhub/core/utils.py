"""
Small shared utilities: timing, UTC instants and dotted-path access.
"""
from __future__ import annotations

import re
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator

_MISSING = object()

ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


# ── Instants ────────────────────────────────────────────


def utcnow() -> datetime:
    """Current instant, truncated to millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_iso(value: datetime) -> str:
    """Render an instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso(value: str, allow_date: bool = False) -> datetime | None:
    """Parse an ISO-8601 instant; naive values are taken as UTC.

    With *allow_date* a bare ``YYYY-MM-DD`` is read as midnight UTC.
    Returns None when *value* is not a recognisable timestamp.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not ISO_DATETIME_RE.match(text) and not (allow_date and ISO_DATE_RE.match(text)):
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ── Dotted paths ────────────────────────────────────────


def get_path(doc: Any, path: str, default: Any = None) -> Any:
    """Read ``a.b.c`` from nested dicts; arrays of objects fan out."""
    value = _resolve(doc, path.split("."))
    return default if value is _MISSING else value


def has_path(doc: Any, path: str) -> bool:
    return _resolve(doc, path.split(".")) is not _MISSING


def _resolve(node: Any, parts: list[str]) -> Any:
    for i, part in enumerate(parts):
        if isinstance(node, dict):
            if part not in node:
                return _MISSING
            node = node[part]
        elif isinstance(node, list):
            collected = []
            for item in node:
                found = _resolve(item, parts[i:])
                if found is _MISSING:
                    continue
                if isinstance(found, list):
                    collected.extend(found)
                else:
                    collected.append(found)
            return collected if collected else _MISSING
        else:
            return _MISSING
    return node


def set_path(doc: dict, path: str, value: Any) -> None:
    """Write ``a.b.c`` into *doc*, creating intermediate dicts."""
    parts = path.split(".")
    node = doc
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def delete_path(doc: dict, path: str) -> None:
    parts = path.split(".")
    node: Any = doc
    for part in parts[:-1]:
        if not isinstance(node, dict) or part not in node:
            return
        node = node[part]
    if isinstance(node, dict):
        node.pop(parts[-1], None)
