"""Session registry — SQLite-backed map from session key to external session id."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path

from chatrelay.session.models import SessionRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_key TEXT PRIMARY KEY,
    external_session_id TEXT NOT NULL,
    context_label TEXT NOT NULL DEFAULT '',
    last_used REAL NOT NULL
)
"""


class SessionRegistry:
    """Remembers the last external session id per session key.

    A record is only replaced by a later ``set`` for the same key or
    removed by ``clear``/eviction; empty ids never overwrite a stored one.
    """

    def __init__(
        self,
        database: str | Path = ":memory:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        if str(database) != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(database), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if str(database) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_SCHEMA)
        self._conn.commit()
        self._closed = False

    def get(self, session_key: str) -> str | None:
        """Return the external session id for *session_key*, if any."""
        record = self.get_record(session_key)
        return record.external_session_id if record is not None else None

    def get_record(self, session_key: str) -> SessionRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE session_key = ?", (session_key,)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def set(self, session_key: str, external_session_id: str, context_label: str = "") -> None:
        """Store *external_session_id* for *session_key* and touch its timestamp."""
        if not external_session_id:
            return
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sessions "
                "(session_key, external_session_id, context_label, last_used) "
                "VALUES (?, ?, ?, ?)",
                (session_key, external_session_id, context_label, self._clock()),
            )
            self._conn.commit()

    def clear(self, session_key: str) -> bool:
        """Forget *session_key*.  Returns True if a record was removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM sessions WHERE session_key = ?", (session_key,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def all(self) -> list[SessionRecord]:
        """All records, most recently used first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM sessions ORDER BY last_used DESC"
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def evict_older_than(self, max_age: float) -> int:
        """Delete records unused for more than *max_age* seconds.

        Returns the number of records removed.
        """
        cutoff = self._clock() - max_age
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM sessions WHERE last_used < ?", (cutoff,)
            )
            self._conn.commit()
        removed = cursor.rowcount
        if removed > 0:
            logger.info("Evicted %d stale session(s)", removed)
        return removed

    def close(self) -> None:
        """Close the database connection.  Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()


def _row_to_record(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        session_key=row["session_key"],
        external_session_id=row["external_session_id"],
        context_label=row["context_label"],
        last_used=row["last_used"],
    )
