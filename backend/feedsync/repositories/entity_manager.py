from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, TypeVar

from backend.feedsync.models.entities import (
    ENTITY_STORES,
    MEMBERSHIP_FIELDS,
    Entity,
    EntityT,
    Subscription,
)
from backend.feedsync.repositories.common import new_subscription_id, utc_now_iso
from backend.feedsync.repositories.database import Database

T = TypeVar("T")


class EntityManager:
    """
    Persistence of the entity graph, one JSON document per entity.

    Every call runs in its own database session unless it happens inside
    `run_transaction`, in which case it joins the open transaction. A manager
    belongs to one unit of work at a time.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._transaction: sqlite3.Connection | None = None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    async def run_transaction(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` atomically; any exception rolls every write back."""
        if self._transaction is not None:
            return await operation()
        async with self._db.session() as conn:
            self._transaction = conn
            try:
                return await operation()
            finally:
                self._transaction = None

    async def find(self, entity_type: type[EntityT], entity_id: str) -> EntityT | None:
        async with self._connection() as conn:
            row = conn.execute(
                "SELECT document_json FROM entities WHERE store = ? AND id = ?",
                (_store_of(entity_type), entity_id),
            ).fetchone()
        if row is None:
            return None
        return entity_type.model_validate_json(str(row["document_json"]))

    async def persist(self, entity: EntityT) -> EntityT:
        if isinstance(entity, Subscription) and entity.id is None:
            entity.id = new_subscription_id()
        if entity.id is None:
            raise ValueError(f"cannot persist {type(entity).__name__} without an id")

        async with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO entities (store, id, document_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(store, id) DO UPDATE SET
                    document_json = excluded.document_json,
                    updated_at = excluded.updated_at
                """,
                (_store_of(type(entity)), entity.id, entity.model_dump_json(), utc_now_iso()),
            )
        return entity

    async def remove(self, entity_type: type[Entity], entity_id: str) -> bool:
        async with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM entities WHERE store = ? AND id = ?",
                (_store_of(entity_type), entity_id),
            )
        return cursor.rowcount > 0

    async def query(
        self,
        entity_type: type[EntityT],
        filters: Mapping[str, object] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[EntityT]:
        """
        Entities of one type matching every filter.

        Membership fields (`account_ids`, `incognito_subscription_ids`) match
        entities whose list contains the value; other fields compare for
        equality. `order_by` names a field, prefixed with `-` for descending.
        """
        clauses = ["store = ?"]
        params: list[object] = [_store_of(entity_type)]
        for field_name, value in (filters or {}).items():
            _require_field(entity_type, field_name)
            json_path = f"$.{field_name}"
            if field_name in MEMBERSHIP_FIELDS:
                clauses.append(
                    "EXISTS (SELECT 1 FROM json_each(entities.document_json, ?) "
                    "WHERE json_each.value = ?)"
                )
                params.extend([json_path, _to_sql_value(value)])
            elif value is None:
                clauses.append("json_extract(document_json, ?) IS NULL")
                params.append(json_path)
            else:
                clauses.append("json_extract(document_json, ?) = ?")
                params.extend([json_path, _to_sql_value(value)])

        sql = f"SELECT document_json FROM entities WHERE {' AND '.join(clauses)}"
        if order_by is not None:
            descending = order_by.startswith("-")
            field_name = order_by.lstrip("-")
            _require_field(entity_type, field_name)
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY json_extract(document_json, ?) {direction}, id {direction}"
            params.append(f"$.{field_name}")
        else:
            sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, limit))

        async with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [entity_type.model_validate_json(str(row["document_json"])) for row in rows]

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[sqlite3.Connection]:
        if self._transaction is not None:
            yield self._transaction
            return
        async with self._db.session() as conn:
            yield conn


def _store_of(entity_type: type[Any]) -> str:
    store = ENTITY_STORES.get(entity_type)
    if store is None:
        raise TypeError(f"{entity_type.__name__} is not a persisted entity type")
    return store


def _require_field(entity_type: type[Any], field_name: str) -> None:
    if field_name not in entity_type.model_fields:
        raise ValueError(f"{entity_type.__name__} has no field {field_name!r}")


def _to_sql_value(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value
