"""
Engine and session wiring for import session storage.

Several workers read and write the same import session row. SQLite connections run in WAL
mode with a busy timeout and enforce the audit-event foreign key.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, sessionmaker

DB_URL_ENV_VAR = "IMPORT_DB_URL"
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "data" / "imports.db"

SQLITE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

_engine: Engine | None = None


def get_database_url() -> str:
    return os.getenv(DB_URL_ENV_VAR) or f"sqlite:///{DEFAULT_DB_PATH}"


def _ensure_sqlite_dir(url: URL) -> None:
    database = url.database
    if not database or database == ":memory:":
        return
    db_path = Path(database)
    if not db_path.is_absolute():
        db_path = (Path.cwd() / db_path).resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def create_import_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return create_engine(database_url, future=True, pool_pre_ping=True)

    _ensure_sqlite_dir(url)
    engine = create_engine(database_url, future=True, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _apply_sqlite_pragmas)
    return engine


def get_engine() -> Engine:
    """Return the process-wide engine, creating it from IMPORT_DB_URL on first use."""
    global _engine
    if _engine is None:
        _engine = create_import_engine(get_database_url())
    return _engine


SessionLocal = sessionmaker(
    bind=get_engine(),
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency for DB sessions (yield pattern)."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db() -> None:
    from . import models  # noqa: WPS433 (import inside function)

    models.Base.metadata.create_all(bind=get_engine())
