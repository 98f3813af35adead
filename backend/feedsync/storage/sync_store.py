from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

from backend.feedsync.errors import SyncStoreQuotaError
from backend.feedsync.repositories.sync_store_repository import SyncStoreRepository

LOGGER = logging.getLogger("feedsync.storage.sync_store")

QUOTA_BYTES = 102_400
QUOTA_BYTES_PER_ITEM = 8_192

ChangeListener = Callable[[str, Any, Any], None]


class SyncStore(Protocol):
    """Key-value store whose contents are replicated across installations."""

    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def get_bytes_in_use(self, key: str | None = None) -> int:
        ...

    def add_change_listener(self, listener: ChangeListener) -> None:
        ...

    def remove_change_listener(self, listener: ChangeListener) -> None:
        ...


def item_size(key: str, value: Any) -> int:
    return len(key) + len(_encode(value).encode("utf-8"))


class LocalSyncStore:
    """
    In-process synchronized store, optionally persisted to SQLite.

    Values are JSON documents. Every effective write is reported once to the
    change listeners as `(key, old_value, new_value)` on a later loop
    iteration; writes that leave a value unchanged are not reported.
    """

    def __init__(
        self,
        repository: SyncStoreRepository | None = None,
        *,
        quota_bytes: int = QUOTA_BYTES,
        quota_bytes_per_item: int = QUOTA_BYTES_PER_ITEM,
    ) -> None:
        self._repository = repository
        self._quota_bytes = quota_bytes
        self._quota_bytes_per_item = quota_bytes_per_item
        self._items: dict[str, str] = {}
        self._listeners: list[ChangeListener] = []
        self._loaded = repository is None

    async def load(self) -> None:
        if self._repository is None:
            return
        self._items = await self._repository.load_items()
        self._loaded = True
        LOGGER.debug("synchronized store loaded keys=%d", len(self._items))

    async def get(self, key: str) -> Any | None:
        await self._ensure_loaded()
        encoded = self._items.get(key)
        if encoded is None:
            return None
        return json.loads(encoded)

    async def set(self, key: str, value: Any) -> None:
        await self._ensure_loaded()
        encoded = _encode(value)
        size = item_size(key, value)
        if size > self._quota_bytes_per_item:
            raise SyncStoreQuotaError(key, size, self._quota_bytes_per_item)
        total = size + sum(
            len(other_key) + len(other.encode("utf-8"))
            for other_key, other in self._items.items()
            if other_key != key
        )
        if total > self._quota_bytes:
            raise SyncStoreQuotaError(key, total, self._quota_bytes)

        previous = self._items.get(key)
        if previous == encoded:
            return
        if self._repository is not None:
            await self._repository.save_item(key, encoded)
        self._items[key] = encoded

        old_value = None if previous is None else json.loads(previous)
        new_value = json.loads(encoded)
        asyncio.get_running_loop().call_soon(self._notify, key, old_value, new_value)

    async def get_bytes_in_use(self, key: str | None = None) -> int:
        await self._ensure_loaded()
        if key is not None:
            encoded = self._items.get(key)
            return 0 if encoded is None else len(key) + len(encoded.encode("utf-8"))
        return sum(
            len(item_key) + len(encoded.encode("utf-8"))
            for item_key, encoded in self._items.items()
        )

    def add_change_listener(self, listener: ChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    def _notify(self, key: str, old_value: Any, new_value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, old_value, new_value)
            except Exception:
                LOGGER.error("synchronized store change listener failed key=%s", key, exc_info=True)


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
