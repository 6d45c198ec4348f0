"""Database setup: SQLite with WAL mode via SQLModel/SQLAlchemy.

The engine is created lazily so importing the package never touches disk.
In-memory URLs share a single connection (StaticPool) so every session sees
the same database.
"""

from __future__ import annotations

import os

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from taskengine.config import settings

# Table classes must be imported before create_all
from taskengine.models import session as _session_models  # noqa: F401

_engine: Engine | None = None


def get_database_url(url: str | None = None) -> str:
    """Resolve the database URL, ensuring a SQLite data directory exists."""
    url = url or settings.database_url
    if url.startswith("sqlite:///") and ":memory:" not in url:
        db_path = url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    return url


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Enable WAL mode for concurrent reads while sessions run."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def make_engine(url: str | None = None, echo: bool = False) -> Engine:
    """Create an engine for ``url`` (defaults to settings.database_url)."""
    url = get_database_url(url)
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _set_sqlite_pragmas)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_db_and_tables(engine: Engine) -> None:
    """Create all tables defined by SQLModel metadata."""
    SQLModel.metadata.create_all(engine)


def get_engine() -> Engine:
    """Process-wide engine built from settings, with tables created."""
    global _engine
    if _engine is None:
        _engine = make_engine()
        create_db_and_tables(_engine)
    return _engine
