"""SQLite-backed key-value storage shared by every data service.

The classroom application historically persisted each collection under its
own key in a browser-local store.  This module reproduces that contract on top
of a single SQLite table so that legacy payloads (including corrupt ones) can be
stored byte-for-byte and read back by the migration services.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from data_paths import default_storage_path

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def get_db_connection(path: Optional[PathLike] = None) -> sqlite3.Connection:
    """Establishes a connection to the SQLite storage database."""
    target = str(path) if path is not None else str(default_storage_path())
    conn = sqlite3.connect(
        target,
        timeout=30.0,
        isolation_level='DEFERRED',
        check_same_thread=False,
    )
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning("Could not set PRAGMA settings: %s", e)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Initializes the storage schema."""
    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS storage (
                key TEXT PRIMARY KEY NOT NULL,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS update_storage_updated_at
            AFTER UPDATE OF value ON storage
            FOR EACH ROW
            BEGIN
                UPDATE storage SET updated_at = CURRENT_TIMESTAMP WHERE key = OLD.key;
            END;
            """
        )


class KeyValueStore:
    """Minimal string key-value store with localStorage-like semantics."""

    def __init__(self, path: Optional[PathLike] = None) -> None:
        self.path = Path(path) if path is not None else default_storage_path()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = get_db_connection(self.path)
            init_db(self._conn)
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "KeyValueStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM storage WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, items: Mapping[str, str]) -> None:
        """Write several keys in one transaction."""
        if not items:
            return
        with self._lock, self.conn:
            self.conn.executemany(
                """
                INSERT INTO storage (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                [(key, str(value)) for key, value in items.items()],
            )

    def remove_item(self, key: str) -> None:
        self.remove_many([key])

    def remove_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        with self._lock, self.conn:
            self.conn.executemany("DELETE FROM storage WHERE key = ?", [(key,) for key in keys])

    def keys(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute("SELECT key FROM storage ORDER BY key").fetchall()
        return [row["key"] for row in rows]

    def items(self) -> Dict[str, str]:
        with self._lock:
            rows = self.conn.execute("SELECT key, value FROM storage ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get_item(key) is not None


__all__ = ["KeyValueStore", "get_db_connection", "init_db"]
