"""
Thin SQLite handle.

One ``Database`` wraps one file (or ``:memory:``). The connection is opened
lazily on first statement, so constructing a handle that is never used
leaves nothing on disk. Statements on one handle are serialized with a lock
so a handle can be shared between turn threads.
"""

import logging
import os
import sqlite3
import threading
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class Database:
    """Lazily connected SQLite database with parameterized helpers."""

    def __init__(self, path: str = MEMORY) -> None:
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _get_conn(self) -> sqlite3.Connection:
        """Return a persistent connection (reused across calls)."""
        if self._conn is None:
            if self.path != MEMORY:
                os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            logger.debug("Opened database %s", self.path)
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement and commit. Returns the affected row count."""
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute(sql, tuple(params))
            conn.commit()
            return cur.rowcount

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run an INSERT and commit. Returns the new rowid."""
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute(sql, tuple(params))
            conn.commit()
            return cur.lastrowid

    def executescript(self, script: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(script)
            conn.commit()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._get_conn().execute(sql, tuple(params)).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._get_conn().execute(sql, tuple(params)).fetchone()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __repr__(self) -> str:
        return f"Database({self.path!r})"
