from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from backend.feedsync.event_bus.bus import EventBus
from backend.feedsync.models.entities import SubscriptionType
from backend.feedsync.resource_lock import ResourceLock
from backend.feedsync.storage.sync_list import (
    ModificationType,
    SyncedResource,
    decode_resource_list,
    diff_resource_lists,
    encode_resource_list,
    find_resource,
)
from backend.feedsync.storage.sync_store import QUOTA_BYTES, QUOTA_BYTES_PER_ITEM, SyncStore

LOGGER = logging.getLogger("feedsync.storage.sync_storage")

ACCOUNTS_KEY = "a"
SUBSCRIBED_CHANNELS_KEY = "c"
SUBSCRIBED_PLAYLISTS_KEY = "p"

EVENT_PREFIX = "background.storage.SyncStorage.EVENTS."


class SyncStorageEvents:
    ACCOUNT_ADDED = f"{EVENT_PREFIX}ACCOUNT_ADDED"
    ACCOUNT_ENABLED = f"{EVENT_PREFIX}ACCOUNT_ENABLED"
    ACCOUNT_DISABLED = f"{EVENT_PREFIX}ACCOUNT_DISABLED"
    ACCOUNT_REMOVED = f"{EVENT_PREFIX}ACCOUNT_REMOVED"
    CHANNEL_ADDED = f"{EVENT_PREFIX}CHANNEL_ADDED"
    CHANNEL_ENABLED = f"{EVENT_PREFIX}CHANNEL_ENABLED"
    CHANNEL_DISABLED = f"{EVENT_PREFIX}CHANNEL_DISABLED"
    CHANNEL_REMOVED = f"{EVENT_PREFIX}CHANNEL_REMOVED"
    PLAYLIST_ADDED = f"{EVENT_PREFIX}PLAYLIST_ADDED"
    PLAYLIST_ENABLED = f"{EVENT_PREFIX}PLAYLIST_ENABLED"
    PLAYLIST_DISABLED = f"{EVENT_PREFIX}PLAYLIST_DISABLED"
    PLAYLIST_REMOVED = f"{EVENT_PREFIX}PLAYLIST_REMOVED"


_RESOURCE_CLASS_BY_KEY: dict[str, str] = {
    ACCOUNTS_KEY: "ACCOUNT",
    SUBSCRIBED_CHANNELS_KEY: "CHANNEL",
    SUBSCRIBED_PLAYLISTS_KEY: "PLAYLIST",
}
_KEY_BY_SUBSCRIPTION_TYPE: dict[SubscriptionType, str] = {
    SubscriptionType.CHANNEL: SUBSCRIBED_CHANNELS_KEY,
    SubscriptionType.PLAYLIST: SUBSCRIBED_PLAYLISTS_KEY,
}


def modification_topic(key: str, modification_type: ModificationType) -> str:
    return f"{EVENT_PREFIX}{_RESOURCE_CLASS_BY_KEY[key]}_{modification_type.value}"


@dataclass(frozen=True)
class IncognitoSubscriptionRecord:
    type: SubscriptionType
    resource_id: str
    enabled: bool


@dataclass(frozen=True)
class QuotaUsage:
    accounts: int
    channels: int
    playlists: int
    item_maximum: int
    total_maximum: int

    @property
    def total(self) -> int:
        return self.accounts + self.channels + self.playlists


ListUpdate = Callable[[list[SyncedResource]], list[SyncedResource]]


class SyncStorage:
    """
    Gateway to the synchronized store.

    Mutations are read-modify-write cycles serialized per resource class (one
    lock for accounts, one for incognito subscriptions). They never publish
    topics themselves: the store's change notification is diffed and turned
    into one topic per modification, whoever made the write.
    """

    def __init__(
        self,
        store: SyncStore,
        event_bus: EventBus,
        *,
        quota_bytes: int = QUOTA_BYTES,
        quota_bytes_per_item: int = QUOTA_BYTES_PER_ITEM,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._quota_bytes = quota_bytes
        self._quota_bytes_per_item = quota_bytes_per_item
        self.accounts_lock = ResourceLock()
        self.subscriptions_lock = ResourceLock()
        store.add_change_listener(self._on_store_changed)

    def close(self) -> None:
        self._store.remove_change_listener(self._on_store_changed)

    async def get_account_ids(self) -> list[SyncedResource]:
        async with self.accounts_lock:
            return await self._read(ACCOUNTS_KEY)

    async def get_account(self, account_id: str) -> SyncedResource | None:
        async with self.accounts_lock:
            return find_resource(await self._read(ACCOUNTS_KEY), account_id)

    async def add_account(self, account_id: str) -> bool:
        """Append an enabled account; returns False when it is already listed."""
        async with self.accounts_lock:
            return await self._append(ACCOUNTS_KEY, account_id)

    async def enable_accounts(self, account_ids: Iterable[str]) -> None:
        await self._set_enabled(self.accounts_lock, ACCOUNTS_KEY, account_ids, enabled=True)

    async def disable_accounts(self, account_ids: Iterable[str]) -> None:
        await self._set_enabled(self.accounts_lock, ACCOUNTS_KEY, account_ids, enabled=False)

    async def remove_accounts(self, account_ids: Iterable[str]) -> None:
        removed = set(account_ids)
        async with self.accounts_lock:
            await self._update(
                ACCOUNTS_KEY,
                lambda resources: [r for r in resources if r.resource_id not in removed],
            )

    async def get_incognito_subscriptions(self) -> list[IncognitoSubscriptionRecord]:
        async with self.subscriptions_lock:
            records: list[IncognitoSubscriptionRecord] = []
            for subscription_type, key in _KEY_BY_SUBSCRIPTION_TYPE.items():
                for resource in await self._read(key):
                    records.append(
                        IncognitoSubscriptionRecord(
                            type=subscription_type,
                            resource_id=resource.resource_id,
                            enabled=resource.enabled,
                        )
                    )
            return records

    async def get_incognito_subscription(
        self, subscription_type: SubscriptionType, resource_id: str
    ) -> SyncedResource | None:
        async with self.subscriptions_lock:
            resources = await self._read(_KEY_BY_SUBSCRIPTION_TYPE[subscription_type])
            return find_resource(resources, resource_id)

    async def add_incognito_subscription(
        self, subscription_type: SubscriptionType, resource_id: str
    ) -> bool:
        async with self.subscriptions_lock:
            return await self._append(_KEY_BY_SUBSCRIPTION_TYPE[subscription_type], resource_id)

    async def enable_incognito_subscriptions(
        self, subscriptions: Iterable[tuple[SubscriptionType, str]]
    ) -> None:
        await self._set_incognito_enabled(subscriptions, enabled=True)

    async def disable_incognito_subscriptions(
        self, subscriptions: Iterable[tuple[SubscriptionType, str]]
    ) -> None:
        await self._set_incognito_enabled(subscriptions, enabled=False)

    async def remove_incognito_subscriptions(
        self, subscriptions: Iterable[tuple[SubscriptionType, str]]
    ) -> None:
        grouped = _group_by_key(subscriptions)
        async with self.subscriptions_lock:
            for key, removed in grouped.items():
                await self._update(
                    key,
                    lambda resources, removed=removed: [
                        r for r in resources if r.resource_id not in removed
                    ],
                )

    async def get_quota_usage(self) -> QuotaUsage:
        return QuotaUsage(
            accounts=await self._store.get_bytes_in_use(ACCOUNTS_KEY),
            channels=await self._store.get_bytes_in_use(SUBSCRIBED_CHANNELS_KEY),
            playlists=await self._store.get_bytes_in_use(SUBSCRIBED_PLAYLISTS_KEY),
            item_maximum=self._quota_bytes_per_item,
            total_maximum=self._quota_bytes,
        )

    async def _set_incognito_enabled(
        self,
        subscriptions: Iterable[tuple[SubscriptionType, str]],
        *,
        enabled: bool,
    ) -> None:
        grouped = _group_by_key(subscriptions)
        async with self.subscriptions_lock:
            for key, resource_ids in grouped.items():
                await self._update(key, _flag_setter(resource_ids, enabled=enabled))

    async def _set_enabled(
        self,
        lock: ResourceLock,
        key: str,
        resource_ids: Iterable[str],
        *,
        enabled: bool,
    ) -> None:
        async with lock:
            await self._update(key, _flag_setter(set(resource_ids), enabled=enabled))

    async def _read(self, key: str) -> list[SyncedResource]:
        return decode_resource_list(await self._store.get(key))

    async def _append(self, key: str, resource_id: str) -> bool:
        resources = await self._read(key)
        if find_resource(resources, resource_id) is not None:
            return False
        resources.append(SyncedResource(resource_id=resource_id, enabled=True))
        await self._store.set(key, encode_resource_list(resources))
        return True

    async def _update(self, key: str, update: ListUpdate) -> None:
        current = await self._read(key)
        updated = update(list(current))
        if updated == current:
            return
        await self._store.set(key, encode_resource_list(updated))

    def _on_store_changed(self, key: str, old_value: Any, new_value: Any) -> None:
        if key not in _RESOURCE_CLASS_BY_KEY:
            return
        try:
            modifications = diff_resource_lists(old_value, new_value)
        except ValueError:
            LOGGER.error("ignoring malformed synchronized list key=%s", key, exc_info=True)
            return
        for modification in modifications:
            topic = modification_topic(key, modification.type)
            LOGGER.debug("synchronized change topic=%s id=%s", topic, modification.resource_id)
            self._event_bus.fire(topic, {"id": modification.resource_id})


def _flag_setter(resource_ids: set[str], *, enabled: bool) -> ListUpdate:
    def _apply(resources: list[SyncedResource]) -> list[SyncedResource]:
        return [
            SyncedResource(resource_id=r.resource_id, enabled=enabled)
            if r.resource_id in resource_ids
            else r
            for r in resources
        ]

    return _apply


def _group_by_key(subscriptions: Iterable[tuple[SubscriptionType, str]]) -> dict[str, set[str]]:
    grouped: dict[str, set[str]] = {}
    for subscription_type, resource_id in subscriptions:
        grouped.setdefault(_KEY_BY_SUBSCRIPTION_TYPE[subscription_type], set()).add(resource_id)
    return grouped
