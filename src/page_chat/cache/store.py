"""Session-scoped key/value stores.

Values are JSON strings. A store forgets everything belonging to a session
when `end_session` is called, which is the only eviction mechanism for the
processing cache and the conversation history.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Protocol


class SessionStore(Protocol):
    def get(self, session_key: str, key: str) -> str | None:
        """Return the stored value or `None`."""

    def set(self, session_key: str, key: str, value: str) -> None:
        """Insert or replace a value."""

    def delete(self, session_key: str, key: str) -> None:
        """Remove a value if present."""

    def end_session(self, session_key: str) -> None:
        """Drop every value stored for the session."""


class InMemorySessionStore:
    """Process-local store used for tests and single-process deployments."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, session_key: str, key: str) -> str | None:
        with self._lock:
            return self._data.get(session_key, {}).get(key)

    def set(self, session_key: str, key: str, value: str) -> None:
        with self._lock:
            self._data.setdefault(session_key, {})[key] = value

    def delete(self, session_key: str, key: str) -> None:
        with self._lock:
            self._data.get(session_key, {}).pop(key, None)

    def end_session(self, session_key: str) -> None:
        with self._lock:
            self._data.pop(session_key, None)

    def keys(self, session_key: str) -> list[str]:
        with self._lock:
            return sorted(self._data.get(session_key, {}))


class SqliteSessionStore:
    """SQLite-backed store keyed by `(session_key, key)`."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        _ensure_kv_table(self.db_path)

    def get(self, session_key: str, key: str) -> str | None:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                "SELECT value FROM session_kv WHERE session_key = ? AND key = ?",
                (session_key, key),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def set(self, session_key: str, key: str, value: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO session_kv(session_key, key, value) VALUES(?, ?, ?) "
                "ON CONFLICT(session_key, key) DO UPDATE SET value=excluded.value",
                (session_key, key, value),
            )
            conn.commit()

    def delete(self, session_key: str, key: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM session_kv WHERE session_key = ? AND key = ?",
                (session_key, key),
            )
            conn.commit()

    def end_session(self, session_key: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM session_kv WHERE session_key = ?", (session_key,))
            conn.commit()


def _ensure_kv_table(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS session_kv ("
            "session_key TEXT NOT NULL, key TEXT NOT NULL, value TEXT NOT NULL, "
            "PRIMARY KEY (session_key, key))"
        )
        conn.commit()
