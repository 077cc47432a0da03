"""SQLAlchemy engine factory.

Single shared engine with connection pooling.  In-memory SQLite gets a
``StaticPool`` so every thread sees the same database.
"""
from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from recordhub.core.config import get_settings
from recordhub.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def make_engine(url: str) -> Engine:
    """Create an engine suited to *url*."""
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=False, **kwargs)
    else:
        engine = create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10, echo=False)
    logger.info("DB engine created  url=%s", engine.url.render_as_string(hide_password=True))
    return engine


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        _engine = make_engine(get_settings().database_url)
    return _engine
