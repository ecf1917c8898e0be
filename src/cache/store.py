"""Keyed text blob stores backing the point cache.

The persisted cache is a single blob per key holding the whole serialized
point array; only whole-value get/set is offered.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> bool: ...


class MemoryBlobStore:
    """Dict-backed store for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqliteBlobStore:
    """SQLite key/value store, one row per key.

    Usage:
        with SqliteBlobStore(path) as store:
            store.set('terrainPoints', text)
            text = store.get('terrainPoints')
    """

    def __init__(self, path: str | Path) -> None:
        """Open (and create if needed) the database at ``path``."""
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.path), check_same_thread=False
        )
        self._conn.execute('PRAGMA journal_mode=WAL')
        self._conn.execute('PRAGMA synchronous=NORMAL')
        self._init_schema(self._conn)
        logger.info('Point store opened at %s', self.path)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript('''
            CREATE TABLE IF NOT EXISTS blobs (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
        ''')
        conn.commit()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            msg = f'Store is closed: {self.path}'
            raise RuntimeError(msg)
        return self._conn

    def get(self, key: str) -> str | None:
        cursor = self.conn.execute('SELECT value FROM blobs WHERE key = ?', (key,))
        row = cursor.fetchone()
        return None if row is None else row[0]

    def set(self, key: str, value: str) -> None:
        now = int(time.time())
        self.conn.execute(
            'INSERT OR REPLACE INTO blobs (key, value, updated_at) VALUES (?, ?, ?)',
            (key, value, now),
        )
        self.conn.commit()

    def delete(self, key: str) -> bool:
        cursor = self.conn.execute('DELETE FROM blobs WHERE key = ?', (key,))
        self.conn.commit()
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        cursor = self.conn.execute('SELECT key FROM blobs ORDER BY key')
        return [row[0] for row in cursor]

    def updated_at(self, key: str) -> int | None:
        cursor = self.conn.execute('SELECT updated_at FROM blobs WHERE key = ?', (key,))
        row = cursor.fetchone()
        return None if row is None else int(row[0])

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SqliteBlobStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
