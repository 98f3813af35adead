from __future__ import annotations

from backend.feedsync.repositories.common import utc_now_iso
from backend.feedsync.repositories.database import Database


class SyncStoreRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def load_items(self) -> dict[str, str]:
        async with self._db.session() as conn:
            rows = conn.execute("SELECT key, value_json FROM sync_store_items").fetchall()
        return {str(row["key"]): str(row["value_json"]) for row in rows}

    async def save_item(self, key: str, value_json: str) -> None:
        async with self._db.session() as conn:
            conn.execute(
                """
                INSERT INTO sync_store_items (key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (key, value_json, utc_now_iso()),
            )
