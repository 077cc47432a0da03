"""
Record storage on SQLAlchemy Core.

Every record of every family lives in one ``records`` table as a JSON
document, keyed by ``(collection, record_id)``.  ``seq`` preserves
insertion order, which is the default result order of every query.
Each write is a single statement, so single-document writes are atomic.
"""
from __future__ import annotations

import copy
from typing import Any, Iterable

from sqlalchemy import (
    JSON,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from recordhub.core.logging import get_logger

logger = get_logger(__name__)

metadata = MetaData()

records = Table(
    "records",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("collection", String(64), nullable=False, index=True),
    Column("record_id", String(64), nullable=False),
    Column("document", JSON, nullable=False),
    UniqueConstraint("collection", "record_id", name="uq_records_collection_id"),
)


class RecordStore:
    """Thin persistence gateway: documents in, documents out."""

    def __init__(self, engine: Engine):
        self._engine = engine
        metadata.create_all(engine)

    # ── Reads ───────────────────────────────────────────

    def scan(self, collection: str) -> list[dict[str, Any]]:
        """All documents of *collection* in insertion order."""
        stmt = (
            select(records.c.document)
            .where(records.c.collection == collection)
            .order_by(records.c.seq)
        )
        with self._engine.connect() as conn:
            return [copy.deepcopy(row[0]) for row in conn.execute(stmt)]

    def fetch(self, collection: str, record_id: str) -> dict[str, Any] | None:
        stmt = select(records.c.document).where(
            records.c.collection == collection, records.c.record_id == record_id
        )
        with self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        return copy.deepcopy(row[0]) if row else None

    def fetch_many(self, collection: str, record_ids: Iterable[str]) -> list[dict[str, Any]]:
        """Documents with the given ids, in insertion order; unknown ids are skipped."""
        ids = sorted({str(i) for i in record_ids})
        if not ids:
            return []
        stmt = (
            select(records.c.document)
            .where(records.c.collection == collection, records.c.record_id.in_(ids))
            .order_by(records.c.seq)
        )
        with self._engine.connect() as conn:
            return [copy.deepcopy(row[0]) for row in conn.execute(stmt)]

    # ── Writes ──────────────────────────────────────────

    def insert(self, collection: str, document: dict[str, Any]) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(records).values(
                    collection=collection, record_id=document["_id"], document=document
                )
            )
        logger.debug("Inserted %s/%s", collection, document["_id"])

    def replace(self, collection: str, document: dict[str, Any]) -> bool:
        """Overwrite the stored document; False when it does not exist."""
        stmt = (
            update(records)
            .where(records.c.collection == collection, records.c.record_id == document["_id"])
            .values(document=document)
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount > 0

    def delete(self, collection: str, record_id: str) -> bool:
        return self.delete_many(collection, [record_id]) > 0

    def delete_many(self, collection: str, record_ids: Iterable[str]) -> int:
        ids = list({str(i) for i in record_ids})
        if not ids:
            return 0
        stmt = delete(records).where(
            records.c.collection == collection, records.c.record_id.in_(ids)
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount
