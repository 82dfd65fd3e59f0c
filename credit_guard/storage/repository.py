"""
Repository pattern for data access.

Handles database operations and data persistence logic: a transactional
key-value table for ledger and payment records, and an append-only table
for usage events.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from credit_guard.core.errors import StorageError

from .db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection
from .models import EventType, UsageEvent, utcnow

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = "event_id, type, user_id, timestamp, metadata"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the key-value and usage event tables if they don't exist.

    ``usage_event`` is an append-only ledger: rows are never updated, only
    evicted oldest-first once the log exceeds its retention count.

    Args:
        db_path: Path to SQLite database file
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise StorageError(f"Cannot open database {db_path}: {e}") from e
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_event (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL,
                user_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                metadata TEXT NOT NULL
            )
        """)
    except sqlite3.Error as e:
        raise StorageError(f"Cannot initialize schema in {db_path}: {e}") from e
    finally:
        conn.close()


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row[0],
        type=EventType(row[1]),
        user_id=row[2],
        timestamp=datetime.fromisoformat(row[3]),
        metadata=json.loads(row[4]),
    )


class Transaction:
    """Reads and writes bound to one open SQLite transaction.

    Nothing written through a Transaction is visible to other connections
    until the enclosing ``SQLiteStore.transaction()`` block exits cleanly.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def write(self, key: str, value: Dict[str, Any]) -> None:
        self._conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value, sort_keys=True), utcnow().isoformat()),
        )

    def delete(self, key: str) -> bool:
        cursor = self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def scan(self, prefix: str) -> List[Tuple[str, Dict[str, Any]]]:
        """All (key, value) pairs whose key starts with ``prefix``, in key order."""
        rows = self._conn.execute(
            "SELECT key, value FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        return [(key, json.loads(value)) for key, value in rows]

    def append_event(self, event: UsageEvent, retention: Optional[int] = None) -> int:
        """Append an event and evict the oldest beyond ``retention``.

        Returns:
            Number of events evicted
        """
        self._conn.execute(
            f"INSERT INTO usage_event ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            (
                event.id,
                event.type.value,
                event.user_id,
                event.timestamp.isoformat(),
                json.dumps(event.metadata, sort_keys=True),
            ),
        )
        if retention is None:
            return 0
        cursor = self._conn.execute(
            """
            DELETE FROM usage_event WHERE seq <= (
                SELECT seq FROM usage_event ORDER BY seq DESC LIMIT 1 OFFSET ?
            )
            """,
            (retention,),
        )
        return max(cursor.rowcount, 0)

    def fetch_events(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[UsageEvent]:
        """Fetch events in append order (or reverse append order)."""
        order = "DESC" if newest_first else "ASC"
        query = f"SELECT {_EVENT_COLUMNS} FROM usage_event ORDER BY seq {order}"
        params: List[Any] = []
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params.append(offset)
        return [_row_to_event(row) for row in self._conn.execute(query, params)]

    def count_events(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM usage_event").fetchone()[0]


class SQLiteStore:
    """Transactional key-value store plus usage event log on one SQLite file.

    Every operation opens its own connection, so a single store instance can
    be shared by all request handlers and threads of a process. Multi-key
    updates must go through ``transaction()`` to be atomic.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ):
        """Initialize the store and make sure its schema exists.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait for a competing writer
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        initialize_schema(db_path)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Run the block as one atomic write transaction.

        Commits on normal exit; rolls back on any exception, including
        cancellation. ``sqlite3.Error`` is surfaced as ``StorageError``.
        """
        try:
            conn = get_connection(self.db_path, self.busy_timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield Transaction(conn)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("Storage transaction failed on %s: %s", self.db_path, e)
            raise StorageError(f"Storage transaction failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[Transaction]:
        try:
            conn = get_connection(self.db_path, self.busy_timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        try:
            yield Transaction(conn)
        except sqlite3.Error as e:
            raise StorageError(f"Storage read failed: {e}") from e
        finally:
            conn.close()

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Read a value, or None if the key is not present."""
        with self._reader() as reader:
            return reader.read(key)

    def scan(self, prefix: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._reader() as reader:
            return reader.scan(prefix)

    def write(self, key: str, value: Dict[str, Any]) -> None:
        """Write a single value atomically."""
        with self.transaction() as txn:
            txn.write(key, value)

    def fetch_events(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> List[UsageEvent]:
        """Fetch usage events; newest first unless ``newest_first`` is False."""
        with self._reader() as reader:
            return reader.fetch_events(limit=limit, offset=offset, newest_first=newest_first)

    def count_events(self) -> int:
        with self._reader() as reader:
            return reader.count_events()
