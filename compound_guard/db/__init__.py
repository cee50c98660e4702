"""Persistence for Compound-Guard."""

from .database import (
    init_database,
    get_connection,
    transaction,
    resolve_db_path,
    SCHEMA_PATH,
)

from .store import CompoundingStore, UNSET
from .sqlite_store import SQLiteCompoundingStore

__all__ = [
    "init_database",
    "get_connection",
    "transaction",
    "resolve_db_path",
    "SCHEMA_PATH",
    "CompoundingStore",
    "UNSET",
    "SQLiteCompoundingStore",
]
