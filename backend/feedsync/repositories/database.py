from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path

from backend.feedsync.resource_lock import ResourceLock

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS entities (
    store TEXT NOT NULL,
    id TEXT NOT NULL,
    document_json TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (store, id)
);

CREATE TABLE IF NOT EXISTS sync_store_items (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = ResourceLock()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[sqlite3.Connection]:
        """
        Exclusive connection for the calling task.

        Sessions are handed out in request order and never overlap, so a
        multi-statement transaction is not interleaved with another task's
        statements. Everything commits when the session ends without error.
        """
        async with self._lock:
            with self.connection() as conn:
                yield conn

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
