"""Persistence primitives for the ledger import service."""

from persistence.database import (
    DB_URL_ENV_VAR,
    DEFAULT_DB_PATH,
    SessionLocal,
    create_import_engine,
    get_database_url,
    get_engine,
    init_db,
)
from persistence.models import Base, ImportAuditEvent, ImportSession

__all__ = [
    "Base",
    "DB_URL_ENV_VAR",
    "DEFAULT_DB_PATH",
    "ImportAuditEvent",
    "ImportSession",
    "SessionLocal",
    "create_import_engine",
    "get_database_url",
    "get_engine",
    "init_db",
]
