"""Database connection and initialization for Compound-Guard."""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union

from ..config import get_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

PathLike = Union[str, Path]


def resolve_db_path(db_path: Optional[PathLike] = None) -> Path:
    """Explicit path, else COMPOUND_DB_PATH (relative paths resolve against the project root)."""
    if db_path is not None:
        return Path(db_path)
    settings = get_settings()
    path = settings.db_path
    return path if path.is_absolute() else settings.project_root / path


def init_database(db_path: Optional[PathLike] = None) -> Path:
    """Initialize the database with schema."""
    path = resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with get_connection(path) as conn:
        with open(SCHEMA_PATH, "r") as f:
            conn.executescript(f.read())
        conn.commit()
    logger.info(f"Database initialized at {path}")
    return path


@contextmanager
def get_connection(db_path: Optional[PathLike] = None):
    """Context manager for database connections."""
    conn = sqlite3.connect(resolve_db_path(db_path), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: Optional[PathLike] = None, immediate: bool = False):
    """
    Connection wrapped in one transaction; commits on success, rolls back on error.

    immediate=True takes the write lock up front (BEGIN IMMEDIATE), so a
    read-then-write sequence cannot interleave with another writer.
    """
    with get_connection(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
