from __future__ import annotations

from typing import Any, cast

import pytest

from backend.feedsync.errors import EntityConsistencyError
from backend.feedsync.event_bus.bus import EventBus
from backend.feedsync.models.entities import (
    AccountState,
    Channel,
    Playlist,
    Subscription,
    SubscriptionState,
    SubscriptionType,
    Video,
)
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services.events import SynchronizationEvents
from backend.feedsync.services.incognito_synchronizer import IncognitoSubscriptionsSynchronizer
from backend.feedsync.storage.sync_storage import SyncStorage
from backend.feedsync.storage.sync_store import LocalSyncStore
from tests.factories import (
    FakeClientFactory,
    FakeYouTubeClient,
    make_account,
    make_channel,
    make_playlist,
    make_video,
)

CHANNEL_SUBSCRIPTION_ID = "incognito:channel:UC_a"


def _build(
    database: Database, client_factory: FakeClientFactory
) -> tuple[EventBus, SyncStorage, IncognitoSubscriptionsSynchronizer]:
    bus = EventBus()
    sync_storage = SyncStorage(LocalSyncStore(), bus)
    synchronizer = IncognitoSubscriptionsSynchronizer(
        event_bus=bus,
        sync_storage=sync_storage,
        database=database,
        client_factory=cast(Any, client_factory),
    )
    return bus, sync_storage, synchronizer


@pytest.mark.asyncio
async def test_channel_subscription_added_through_the_store(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.channels["UC_a"] = make_channel("UC_a")
    youtube.playlists["UU_UC_a"] = make_playlist("UU_UC_a")
    em = EntityManager(database)
    await em.persist(make_video("old_upload", channel_id="UC_a", account_ids=["acc_1"]))
    bus, sync_storage, synchronizer = _build(database, client_factory)
    synchronizer.start()
    completion = bus.await_once(SynchronizationEvents.INCOGNITO_SUBSCRIPTION_ADDED, timeout=1.0)

    await sync_storage.add_incognito_subscription(SubscriptionType.CHANNEL, "UC_a")
    subscription = await completion
    await bus.drain()

    assert isinstance(subscription, Subscription)
    assert subscription.id == CHANNEL_SUBSCRIPTION_ID
    assert subscription.is_incognito == 1
    assert subscription.playlist_id == "UU_UC_a"
    channel = await em.find(Channel, "UC_a")
    playlist = await em.find(Playlist, "UU_UC_a")
    video = await em.find(Video, "old_upload")
    assert channel is not None and channel.incognito_subscription_ids == [CHANNEL_SUBSCRIPTION_ID]
    assert playlist is not None
    assert playlist.incognito_subscription_ids == [CHANNEL_SUBSCRIPTION_ID]
    assert playlist.channel_id == "UC_a"
    assert video is not None
    assert video.incognito_subscription_ids == [CHANNEL_SUBSCRIPTION_ID]


@pytest.mark.asyncio
async def test_channel_added_while_disabled_still_follows_its_videos(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.channels["UC_a"] = make_channel("UC_a")
    youtube.playlists["UU_UC_a"] = make_playlist("UU_UC_a")
    em = EntityManager(database)
    await em.persist(make_account("acc_1", state=AccountState.DISABLED))
    await em.persist(
        make_video("old_upload", channel_id="UC_a", account_ids=["acc_1"], is_enabled=0)
    )
    _, sync_storage, synchronizer = _build(database, client_factory)
    await sync_storage.add_incognito_subscription(SubscriptionType.CHANNEL, "UC_a")
    await sync_storage.disable_incognito_subscriptions([(SubscriptionType.CHANNEL, "UC_a")])

    subscription = await synchronizer.add_subscription(SubscriptionType.CHANNEL, "UC_a")

    assert subscription is not None and subscription.state is SubscriptionState.DISABLED
    video = await em.find(Video, "old_upload")
    assert video is not None
    assert video.incognito_subscription_ids == [CHANNEL_SUBSCRIPTION_ID]
    assert video.is_enabled == 0

    await synchronizer.set_subscription_state(
        SubscriptionType.CHANNEL, "UC_a", SubscriptionState.ACTIVE
    )

    video = await em.find(Video, "old_upload")
    assert video is not None and video.is_enabled == 1


@pytest.mark.asyncio
async def test_playlist_subscription_takes_the_owner_channel_from_the_playlist(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.playlists["PL_1"] = make_playlist("PL_1", channel_id="UC_owner")
    _, sync_storage, synchronizer = _build(database, client_factory)
    await sync_storage.add_incognito_subscription(SubscriptionType.PLAYLIST, "PL_1")

    subscription = await synchronizer.add_subscription(SubscriptionType.PLAYLIST, "PL_1")

    assert subscription is not None
    assert subscription.id == "incognito:playlist:PL_1"
    assert subscription.channel_id == "UC_owner"
    assert "get_channel:UC_owner" not in youtube.calls
    assert await EntityManager(database).find(Channel, "UC_owner") is None


@pytest.mark.asyncio
async def test_repeated_addition_returns_the_stored_subscription(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.channels["UC_a"] = make_channel("UC_a")
    youtube.playlists["UU_UC_a"] = make_playlist("UU_UC_a")
    _, sync_storage, synchronizer = _build(database, client_factory)
    await sync_storage.add_incognito_subscription(SubscriptionType.CHANNEL, "UC_a")

    first = await synchronizer.add_subscription(SubscriptionType.CHANNEL, "UC_a")
    second = await synchronizer.add_subscription(SubscriptionType.CHANNEL, "UC_a")

    assert first == second
    assert len(await EntityManager(database).query(Subscription, {"is_incognito": 1})) == 1


@pytest.mark.asyncio
async def test_stale_addition_is_ignored(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    _, _, synchronizer = _build(database, client_factory)

    assert await synchronizer.add_subscription(SubscriptionType.CHANNEL, "UC_gone") is None
    assert youtube.calls == []


@pytest.mark.asyncio
async def test_disabling_and_removing_a_subscription(
    database: Database, client_factory: FakeClientFactory
) -> None:
    em = EntityManager(database)
    await em.persist(
        Subscription(
            id=CHANNEL_SUBSCRIPTION_ID,
            type=SubscriptionType.CHANNEL,
            channel_id="UC_a",
            playlist_id="UU_UC_a",
            is_incognito=1,
        )
    )
    await em.persist(make_channel("UC_a", incognito_subscription_ids=[CHANNEL_SUBSCRIPTION_ID]))
    await em.persist(
        make_playlist("UU_UC_a", incognito_subscription_ids=[CHANNEL_SUBSCRIPTION_ID])
    )
    await em.persist(
        make_video("v1", channel_id="UC_a", incognito_subscription_ids=[CHANNEL_SUBSCRIPTION_ID])
    )
    _, _, synchronizer = _build(database, client_factory)

    disabled = await synchronizer.set_subscription_state(
        SubscriptionType.CHANNEL, "UC_a", SubscriptionState.DISABLED
    )

    assert disabled.state is SubscriptionState.DISABLED
    video = await em.find(Video, "v1")
    assert video is not None and video.is_enabled == 0

    assert await synchronizer.remove_subscription(SubscriptionType.CHANNEL, "UC_a") is True
    assert await em.find(Subscription, CHANNEL_SUBSCRIPTION_ID) is None
    assert await em.find(Channel, "UC_a") is None
    assert await em.find(Playlist, "UU_UC_a") is None
    assert await em.find(Video, "v1") is None
    assert await synchronizer.remove_subscription(SubscriptionType.CHANNEL, "UC_a") is False


@pytest.mark.asyncio
async def test_state_change_of_unknown_subscription_is_a_consistency_error(
    database: Database, client_factory: FakeClientFactory
) -> None:
    _, _, synchronizer = _build(database, client_factory)

    with pytest.raises(EntityConsistencyError):
        await synchronizer.set_subscription_state(
            SubscriptionType.PLAYLIST, "PL_ghost", SubscriptionState.ACTIVE
        )
