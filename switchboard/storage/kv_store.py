"""
Key/value persistence for conversation history.

The history store only needs get/set of JSON values plus a usage figure to
decide whether to start trimming. SQLiteKeyValueStore keeps everything in one
portable file and refuses writes that would exceed its quota, the way a
browser's storage.local does.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from switchboard.errors import StorageError, StorageQuotaError

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 50 * 1024 * 1024

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class KeyValueStore(Protocol):
    quota_bytes: int

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def used_bytes(self, namespace: str | None = None) -> int | None: ...


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class SQLiteKeyValueStore:
    """JSON values in a single SQLite table, with a byte quota."""

    def __init__(self, db_path: str, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("Key/value store initialized at %s (quota %d bytes)", self.db_path, self.quota_bytes)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"SQLite error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, key: str) -> Any:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value under '{key}': {e}") from e

    def set(self, key: str, value: Any) -> None:
        encoded = _encode(value)
        size = len(encoded.encode("utf-8")) + len(key.encode("utf-8"))
        with self._connect() as conn:
            others = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0) "
                "FROM kv WHERE key != ?",
                (key,),
            ).fetchone()[0]
            if others + size > self.quota_bytes:
                raise StorageQuotaError(
                    f"Write of {size} bytes under '{key}' exceeds quota "
                    f"({others} of {self.quota_bytes} bytes used)",
                    key=key,
                )
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, encoded),
            )
        logger.debug("Stored %d bytes under '%s'", size, key)

    def delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def used_bytes(self, namespace: str | None = None) -> int | None:
        """Bytes used by all keys, or by one key when `namespace` is given."""
        query = "SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0) FROM kv"
        params: tuple = ()
        if namespace is not None:
            query += " WHERE key = ?"
            params = (namespace,)
        with self._connect() as conn:
            return int(conn.execute(query, params).fetchone()[0])
