"""
Database connection management.

Provides SQLite connections for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".credit-guard.db"
DEFAULT_BUSY_TIMEOUT = 30.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    The connection runs in autocommit mode so callers open transactions
    explicitly with ``BEGIN IMMEDIATE``, which takes the write lock up front
    and serializes read-modify-write cycles across processes.

    Args:
        db_path: Path to SQLite database file
        busy_timeout: Seconds to wait for a competing writer

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=busy_timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
