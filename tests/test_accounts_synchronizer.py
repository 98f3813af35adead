from __future__ import annotations

from typing import Any, cast

import pytest

from backend.feedsync.errors import EntityConsistencyError
from backend.feedsync.event_bus.bus import EventBus, Reply
from backend.feedsync.models.entities import (
    Account,
    AccountState,
    Channel,
    Playlist,
    Subscription,
    Video,
)
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services.accounts_synchronizer import AccountsSynchronizer
from backend.feedsync.services.events import SynchronizationEvents
from backend.feedsync.storage.sync_storage import ACCOUNTS_KEY, SyncStorage
from backend.feedsync.storage.sync_store import LocalSyncStore
from backend.feedsync.youtube.client import YouTubeAuthorizationError
from tests.factories import (
    FakeClientFactory,
    FakeIdentity,
    FakeYouTubeClient,
    make_account,
    make_channel,
    make_playlist,
    make_remote_subscription,
    make_video,
)


def _build(
    database: Database,
    client_factory: FakeClientFactory,
    *,
    current_account_id: str | None = "acc_1",
) -> tuple[EventBus, LocalSyncStore, SyncStorage, AccountsSynchronizer]:
    bus = EventBus()
    store = LocalSyncStore()
    sync_storage = SyncStorage(store, bus)
    synchronizer = AccountsSynchronizer(
        event_bus=bus,
        sync_storage=sync_storage,
        database=database,
        client_factory=cast(Any, client_factory),
        identity=FakeIdentity(current_account_id),
        authorization_retry_attempts=3,
        authorization_retry_backoff_seconds=0,
    )
    return bus, store, sync_storage, synchronizer


def _record_topics(bus: EventBus) -> list[tuple[str, Any]]:
    events: list[tuple[str, Any]] = []

    def _listener(topic: str, data: Any, _reply: Reply | None) -> None:
        events.append((topic.rsplit(".", 1)[-1], data))

    bus.add_listener("background.storage.synchronization.EVENTS.*", _listener)
    return events


@pytest.mark.asyncio
async def test_added_account_is_fetched_and_announced(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.accounts["acc_1"] = make_account("acc_1", title="Signed in")
    bus, _, sync_storage, synchronizer = _build(database, client_factory)
    synchronizer.start()
    completion = bus.await_once(SynchronizationEvents.ACCOUNT_ADDED, timeout=1.0)

    await sync_storage.add_account("acc_1")
    account = await completion
    await bus.drain()

    assert isinstance(account, Account)
    assert account.id == "acc_1"
    stored = await EntityManager(database).find(Account, "acc_1")
    assert stored is not None
    assert stored.title == "Signed in"
    assert stored.state is AccountState.ACTIVE


@pytest.mark.asyncio
async def test_account_added_disabled_is_stored_disabled(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.accounts["acc_1"] = make_account("acc_1")
    bus, store, _, synchronizer = _build(database, client_factory)
    synchronizer.start()

    await store.set(ACCOUNTS_KEY, ["acc_1", 0])
    await bus.drain()

    stored = await EntityManager(database).find(Account, "acc_1")
    assert stored is not None
    assert stored.state is AccountState.DISABLED


@pytest.mark.asyncio
async def test_authorization_errors_are_retried(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.accounts["acc_1"] = make_account("acc_1")
    youtube.account_info_errors = [
        YouTubeAuthorizationError("expired"),
        YouTubeAuthorizationError("expired"),
    ]
    _, _, sync_storage, synchronizer = _build(database, client_factory)
    await sync_storage.add_account("acc_1")

    account = await synchronizer.add_account("acc_1")

    assert account is not None
    assert account.state is AccountState.ACTIVE
    assert youtube.calls.count("get_account_info:acc_1") == 3


@pytest.mark.asyncio
async def test_rejected_authorization_stores_a_placeholder(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.account_info_errors = [YouTubeAuthorizationError("revoked")] * 3
    bus, _, sync_storage, synchronizer = _build(database, client_factory)
    events = _record_topics(bus)
    await sync_storage.add_account("acc_1")

    account = await synchronizer.add_account("acc_1")

    assert account is not None
    assert account.state is AccountState.UNAUTHORIZED
    assert account.last_error == "revoked"
    assert events == []


@pytest.mark.asyncio
async def test_account_of_another_identity_becomes_a_placeholder(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    _, _, sync_storage, synchronizer = _build(
        database, client_factory, current_account_id="acc_other"
    )
    await sync_storage.add_account("acc_1")

    account = await synchronizer.add_account("acc_1")

    assert account is not None
    assert account.state is AccountState.UNAUTHORIZED
    assert youtube.calls == []


@pytest.mark.asyncio
async def test_stale_addition_is_ignored(
    database: Database, client_factory: FakeClientFactory
) -> None:
    _, _, _, synchronizer = _build(database, client_factory)

    assert await synchronizer.add_account("acc_ghost") is None
    assert await EntityManager(database).find(Account, "acc_ghost") is None


@pytest.mark.asyncio
async def test_disabling_an_account_disables_only_its_exclusive_videos(
    database: Database, client_factory: FakeClientFactory
) -> None:
    em = EntityManager(database)
    await em.persist(make_account("acc_1"))
    await em.persist(make_account("acc_2"))
    await em.persist(make_video("exclusive", account_ids=["acc_1"]))
    await em.persist(make_video("shared", account_ids=["acc_1", "acc_2"]))
    bus, _, _, synchronizer = _build(database, client_factory)
    events = _record_topics(bus)

    await synchronizer.set_account_state("acc_1", AccountState.DISABLED)

    exclusive = await em.find(Video, "exclusive")
    shared = await em.find(Video, "shared")
    assert exclusive is not None and exclusive.is_enabled == 0
    assert shared is not None and shared.is_enabled == 1
    assert [name for name, _ in events] == ["ACCOUNT_DISABLED"]

    await synchronizer.set_account_state("acc_1", AccountState.ACTIVE)

    exclusive = await em.find(Video, "exclusive")
    assert exclusive is not None and exclusive.is_enabled == 1
    assert [name for name, _ in events] == ["ACCOUNT_DISABLED", "ACCOUNT_ENABLED"]


@pytest.mark.asyncio
async def test_state_change_of_unknown_account_is_a_consistency_error(
    database: Database, client_factory: FakeClientFactory
) -> None:
    _, _, _, synchronizer = _build(database, client_factory)

    with pytest.raises(EntityConsistencyError):
        await synchronizer.set_account_state("acc_ghost", AccountState.DISABLED)


@pytest.mark.asyncio
async def test_removing_an_account_cascades_through_the_graph(
    database: Database, client_factory: FakeClientFactory
) -> None:
    em = EntityManager(database)
    await em.persist(make_account("acc_1"))
    await em.persist(make_account("acc_2"))
    await em.persist(make_remote_subscription("UC_own", "acc_1"))
    await em.persist(make_channel("UC_own", account_ids=["acc_1"]))
    await em.persist(make_channel("UC_shared", account_ids=["acc_1", "acc_2"]))
    await em.persist(make_playlist("UU_own", channel_id="UC_own", account_ids=["acc_1"]))
    await em.persist(make_video("own", channel_id="UC_own", account_ids=["acc_1"]))
    await em.persist(make_video("shared", channel_id="UC_shared", account_ids=["acc_1", "acc_2"]))
    bus, _, _, synchronizer = _build(database, client_factory)
    events = _record_topics(bus)

    assert await synchronizer.remove_account("acc_1") is True

    assert await em.find(Account, "acc_1") is None
    assert await em.query(Subscription, {"account_id": "acc_1"}) == []
    assert await em.find(Channel, "UC_own") is None
    assert await em.find(Playlist, "UU_own") is None
    assert await em.find(Video, "own") is None
    shared_channel = await em.find(Channel, "UC_shared")
    shared_video = await em.find(Video, "shared")
    assert shared_channel is not None and shared_channel.account_ids == ["acc_2"]
    assert shared_video is not None and shared_video.account_ids == ["acc_2"]
    assert client_factory.forgotten == ["acc_1"]
    assert events == [("ACCOUNT_REMOVED", {"id": "acc_1"})]

    assert await synchronizer.remove_account("acc_1") is False


@pytest.mark.asyncio
async def test_stopped_synchronizer_ignores_storage_topics(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.accounts["acc_1"] = make_account("acc_1")
    bus, _, sync_storage, synchronizer = _build(database, client_factory)
    synchronizer.start()
    synchronizer.stop()

    await sync_storage.add_account("acc_1")
    await bus.drain()

    assert await EntityManager(database).find(Account, "acc_1") is None
