"""Database engine and session factory.

The URL comes from :class:`QAnalyticsSettings`: ``QANALYTICS_DB_URL`` when
set, otherwise a SQLite file under the settings' data directory.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from qanalytics.config import QAnalyticsSettings, load_settings

_IN_MEMORY = "sqlite://"


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def get_engine(db_url: str | None = None, *, settings: QAnalyticsSettings | None = None) -> Engine:
    """Create the engine for *db_url*, or for the configured database.

    ``"sqlite://"`` gives an in-memory database shared by every connection
    (tests).  For a SQLite file the parent directory is created.
    """
    url = db_url or (settings or load_settings()).database_url
    if url == _IN_MEMORY:
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url)
    if parsed.database:
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    # Commands run in worker threads
    return create_engine(url, connect_args={"check_same_thread": False})


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
    """Enforce foreign keys (submissions and analysis state reference studies)."""
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine)


def _migrate_schema(engine: Engine) -> None:
    """Add columns that ``create_all`` will not add to existing tables."""
    insp = inspect(engine)
    if "analysis_states" in insp.get_table_names():
        cols = {c["name"] for c in insp.get_columns("analysis_states")}
        if "pending_rotation" not in cols:
            with engine.begin() as conn:
                conn.execute(
                    text(
                        "ALTER TABLE analysis_states"
                        " ADD COLUMN pending_rotation BOOLEAN DEFAULT 0"
                    )
                )


def init_db(engine: Engine) -> None:
    """Create all tables and bring older databases up to date. Idempotent."""
    from qanalytics.server import models  # noqa: F401  registers all tables

    Base.metadata.create_all(bind=engine)
    _migrate_schema(engine)
