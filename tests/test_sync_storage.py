from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from backend.feedsync.errors import SyncStoreQuotaError
from backend.feedsync.event_bus.bus import EventBus, Reply
from backend.feedsync.models.entities import SubscriptionType
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.sync_store_repository import SyncStoreRepository
from backend.feedsync.storage.sync_list import SyncedResource
from backend.feedsync.storage.sync_storage import (
    ACCOUNTS_KEY,
    SUBSCRIBED_CHANNELS_KEY,
    SUBSCRIBED_PLAYLISTS_KEY,
    IncognitoSubscriptionRecord,
    SyncStorage,
    SyncStorageEvents,
)
from backend.feedsync.storage.sync_store import LocalSyncStore


class _TopicRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[str, Any]] = []
        bus.add_listener("background.storage.SyncStorage.EVENTS.*", self)

    def __call__(self, topic: str, data: Any, _reply: Reply | None) -> None:
        self.events.append((topic.rsplit(".", 1)[-1], data["id"]))


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_local_store_reports_effective_changes_later() -> None:
    store = LocalSyncStore()
    changes: list[tuple[str, Any, Any]] = []
    store.add_change_listener(lambda key, old, new: changes.append((key, old, new)))

    await store.set("a", ["acc_1", 1])
    assert changes == []
    await _settle()
    assert changes == [("a", None, ["acc_1", 1])]

    await store.set("a", ["acc_1", 1])
    await store.set("a", ["acc_1", 0])
    await _settle()

    assert changes == [("a", None, ["acc_1", 1]), ("a", ["acc_1", 1], ["acc_1", 0])]
    assert await store.get("a") == ["acc_1", 0]
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_local_store_enforces_quotas() -> None:
    store = LocalSyncStore(quota_bytes=40, quota_bytes_per_item=24)

    with pytest.raises(SyncStoreQuotaError) as item_error:
        await store.set("a", ["x" * 30, 1])
    assert item_error.value.limit == 24

    await store.set("a", ["acc_1", 1])
    await store.set("c", ["UC_1", 1])
    with pytest.raises(SyncStoreQuotaError):
        await store.set("p", ["PL_12345678", 1])

    assert await store.get("p") is None
    assert await store.get_bytes_in_use("a") == len("a") + len('["acc_1",1]')


@pytest.mark.asyncio
async def test_persisted_store_survives_reload(tmp_path: Path) -> None:
    database = Database(tmp_path / "sync-store.db")
    database.initialize()

    first = LocalSyncStore(SyncStoreRepository(database))
    await first.set(ACCOUNTS_KEY, ["acc_1", 1, "acc_2", 0])

    second = LocalSyncStore(SyncStoreRepository(database))
    await second.load()

    assert await second.get(ACCOUNTS_KEY) == ["acc_1", 1, "acc_2", 0]


@pytest.mark.asyncio
async def test_concurrent_account_additions_are_not_lost() -> None:
    bus = EventBus()
    storage = SyncStorage(LocalSyncStore(), bus)
    recorder = _TopicRecorder(bus)

    results = await asyncio.gather(
        storage.add_account("acc_1"),
        storage.add_account("acc_2"),
        storage.add_account("acc_3"),
        storage.add_account("acc_1"),
    )
    await _settle()

    assert results == [True, True, True, False]
    assert await storage.get_account_ids() == [
        SyncedResource("acc_1", True),
        SyncedResource("acc_2", True),
        SyncedResource("acc_3", True),
    ]
    assert recorder.events == [
        ("ACCOUNT_ADDED", "acc_1"),
        ("ACCOUNT_ADDED", "acc_2"),
        ("ACCOUNT_ADDED", "acc_3"),
    ]


@pytest.mark.asyncio
async def test_account_flag_changes_and_removal_publish_topics() -> None:
    bus = EventBus()
    storage = SyncStorage(LocalSyncStore(), bus)
    await storage.add_account("acc_1")
    await storage.add_account("acc_2")
    await _settle()
    recorder = _TopicRecorder(bus)

    await storage.disable_accounts(["acc_1"])
    await storage.disable_accounts(["acc_1"])
    await storage.enable_accounts(["acc_1"])
    await storage.remove_accounts(["acc_2", "unknown"])
    await _settle()

    assert recorder.events == [
        ("ACCOUNT_DISABLED", "acc_1"),
        ("ACCOUNT_ENABLED", "acc_1"),
        ("ACCOUNT_REMOVED", "acc_2"),
    ]
    assert await storage.get_account("acc_1") == SyncedResource("acc_1", True)
    assert await storage.get_account("acc_2") is None


@pytest.mark.asyncio
async def test_writes_from_elsewhere_publish_topics_too() -> None:
    bus = EventBus()
    store = LocalSyncStore()
    storage = SyncStorage(store, bus)
    recorder = _TopicRecorder(bus)

    await store.set(SUBSCRIBED_CHANNELS_KEY, ["UC_1", 1, "UC_2", 0])
    await store.set(SUBSCRIBED_PLAYLISTS_KEY, ["PL_1", 1])
    await store.set("unrelated", {"x": 1})
    await _settle()

    assert recorder.events == [
        ("CHANNEL_ADDED", "UC_1"),
        ("CHANNEL_ADDED", "UC_2"),
        ("PLAYLIST_ADDED", "PL_1"),
    ]
    assert await storage.get_incognito_subscriptions() == [
        IncognitoSubscriptionRecord(SubscriptionType.CHANNEL, "UC_1", True),
        IncognitoSubscriptionRecord(SubscriptionType.CHANNEL, "UC_2", False),
        IncognitoSubscriptionRecord(SubscriptionType.PLAYLIST, "PL_1", True),
    ]


@pytest.mark.asyncio
async def test_malformed_list_from_elsewhere_is_ignored() -> None:
    bus = EventBus()
    store = LocalSyncStore()
    SyncStorage(store, bus)
    recorder = _TopicRecorder(bus)

    await store.set(ACCOUNTS_KEY, {"acc_1": True})
    await _settle()

    assert recorder.events == []


@pytest.mark.asyncio
async def test_incognito_subscription_lifecycle() -> None:
    bus = EventBus()
    storage = SyncStorage(LocalSyncStore(), bus)
    recorder = _TopicRecorder(bus)

    assert await storage.add_incognito_subscription(SubscriptionType.CHANNEL, "UC_1") is True
    assert await storage.add_incognito_subscription(SubscriptionType.CHANNEL, "UC_1") is False
    assert await storage.add_incognito_subscription(SubscriptionType.PLAYLIST, "PL_1") is True
    await storage.disable_incognito_subscriptions([(SubscriptionType.PLAYLIST, "PL_1")])
    await storage.enable_incognito_subscriptions([(SubscriptionType.PLAYLIST, "PL_1")])
    await storage.remove_incognito_subscriptions([(SubscriptionType.CHANNEL, "UC_1")])
    await _settle()

    assert recorder.events == [
        ("CHANNEL_ADDED", "UC_1"),
        ("PLAYLIST_ADDED", "PL_1"),
        ("PLAYLIST_DISABLED", "PL_1"),
        ("PLAYLIST_ENABLED", "PL_1"),
        ("CHANNEL_REMOVED", "UC_1"),
    ]
    assert await storage.get_incognito_subscription(SubscriptionType.CHANNEL, "UC_1") is None
    assert await storage.get_incognito_subscription(
        SubscriptionType.PLAYLIST, "PL_1"
    ) == SyncedResource("PL_1", True)


@pytest.mark.asyncio
async def test_quota_usage_and_close() -> None:
    bus = EventBus()
    storage = SyncStorage(
        LocalSyncStore(quota_bytes=1000, quota_bytes_per_item=100),
        bus,
        quota_bytes=1000,
        quota_bytes_per_item=100,
    )
    await storage.add_account("acc_1")
    await storage.add_incognito_subscription(SubscriptionType.PLAYLIST, "PL_1")

    usage = await storage.get_quota_usage()

    assert usage.accounts == len(ACCOUNTS_KEY) + len('["acc_1",1]')
    assert usage.channels == 0
    assert usage.playlists == len(SUBSCRIBED_PLAYLISTS_KEY) + len('["PL_1",1]')
    assert usage.total == usage.accounts + usage.playlists
    assert (usage.item_maximum, usage.total_maximum) == (100, 1000)

    await _settle()
    recorder = _TopicRecorder(bus)
    storage.close()
    await storage.add_account("acc_2")
    await _settle()
    assert recorder.events == []


def test_event_topics_follow_the_storage_prefix() -> None:
    assert SyncStorageEvents.ACCOUNT_ADDED == (
        "background.storage.SyncStorage.EVENTS.ACCOUNT_ADDED"
    )
    assert SyncStorageEvents.PLAYLIST_REMOVED.endswith(".PLAYLIST_REMOVED")
