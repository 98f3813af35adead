from __future__ import annotations

from collections.abc import Mapping
from typing import Any, cast

import pytest

from backend.feedsync.models.entities import Channel, Playlist, Subscription, Video
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services.subscriptions_fetcher import SubscriptionsFetcher
from backend.feedsync.telemetry import TelemetryClient
from backend.feedsync.youtube.client import YouTubeApiError
from tests.factories import (
    FakeClientFactory,
    FakeYouTubeClient,
    make_account,
    make_channel,
    make_playlist,
    make_remote_subscription,
    make_video,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def _follow(youtube: FakeYouTubeClient, account_id: str, *channel_ids: str) -> None:
    youtube.subscriptions = [
        (make_remote_subscription(channel_id, account_id), make_channel(channel_id))
        for channel_id in channel_ids
    ]
    for channel_id in channel_ids:
        youtube.playlists.setdefault(f"UU_{channel_id}", make_playlist(f"UU_{channel_id}"))


@pytest.mark.asyncio
async def test_first_fetch_builds_the_subscription_graph(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    sink = _CaptureSink()
    fetcher = SubscriptionsFetcher(
        database=database,
        client_factory=cast(Any, client_factory),
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )
    _follow(youtube, "acc_1", "UC_a", "UC_b")

    update = await fetcher.update_subscriptions(make_account("acc_1"))

    assert (update.added, update.removed, update.total) == (2, 0, 2)
    em = EntityManager(database)
    subscriptions = await em.query(Subscription, {"account_id": "acc_1"})
    assert sorted(s.channel_id or "" for s in subscriptions) == ["UC_a", "UC_b"]
    channel = await em.find(Channel, "UC_a")
    playlist = await em.find(Playlist, "UU_UC_a")
    assert channel is not None and channel.account_ids == ["acc_1"]
    assert playlist is not None
    assert playlist.account_ids == ["acc_1"]
    assert playlist.channel_id == "UC_a"
    assert [name for name, _ in sink.events] == [
        "subscriptions.fetch.start",
        "subscriptions.fetch.finish",
    ]
    assert sink.events[1][1]["added"] == 2


@pytest.mark.asyncio
async def test_refetch_is_idempotent_and_drops_unfollowed_channels(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    fetcher = SubscriptionsFetcher(database=database, client_factory=cast(Any, client_factory))
    account = make_account("acc_1")
    _follow(youtube, "acc_1", "UC_a", "UC_b")
    await fetcher.update_subscriptions(account)

    again = await fetcher.update_subscriptions(account)
    assert (again.added, again.removed) == (0, 0)

    _follow(youtube, "acc_1", "UC_a")
    update = await fetcher.update_subscriptions(account)

    assert (update.added, update.removed, update.total) == (0, 1, 1)
    em = EntityManager(database)
    assert [s.channel_id for s in await em.query(Subscription, {"account_id": "acc_1"})] == [
        "UC_a"
    ]
    assert await em.find(Channel, "UC_b") is None
    assert await em.find(Playlist, "UU_UC_b") is None
    channel = await em.find(Channel, "UC_a")
    assert channel is not None and channel.account_ids == ["acc_1"]


@pytest.mark.asyncio
async def test_channel_shared_with_an_incognito_subscription_survives_unfollow(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    em = EntityManager(database)
    incognito_id = "incognito:channel:UC_a"
    await em.persist(make_channel("UC_a", incognito_subscription_ids=[incognito_id]))
    await em.persist(
        make_playlist("UU_UC_a", channel_id="UC_a", incognito_subscription_ids=[incognito_id])
    )
    await em.persist(
        make_video("v1", channel_id="UC_a", incognito_subscription_ids=[incognito_id])
    )
    fetcher = SubscriptionsFetcher(database=database, client_factory=cast(Any, client_factory))
    account = make_account("acc_1")
    _follow(youtube, "acc_1", "UC_a")

    await fetcher.update_subscriptions(account)

    video = await em.find(Video, "v1")
    assert video is not None and video.account_ids == ["acc_1"]
    assert "get_uploads_playlists" not in youtube.calls

    _follow(youtube, "acc_1")
    await fetcher.update_subscriptions(account)

    channel = await em.find(Channel, "UC_a")
    video = await em.find(Video, "v1")
    assert channel is not None and channel.account_ids == []
    assert channel.incognito_subscription_ids == [incognito_id]
    assert video is not None and video.account_ids == []


@pytest.mark.asyncio
async def test_public_listing_failure_falls_back_to_authorized_request(
    database: Database,
    youtube: FakeYouTubeClient,
    client_factory: FakeClientFactory,
) -> None:
    youtube.unauthorized_subscriptions_error = YouTubeApiError("subscriptions are private")
    _follow(youtube, "acc_1", "UC_a")
    fetcher = SubscriptionsFetcher(database=database, client_factory=cast(Any, client_factory))

    update = await fetcher.update_subscriptions(make_account("acc_1"))

    assert update.added == 1
    assert youtube.calls[:2] == [
        "get_subscriptions:acc_1:authorized=False",
        "get_subscriptions:acc_1:authorized=True",
    ]


@pytest.mark.asyncio
async def test_account_without_channel_cannot_be_fetched(
    database: Database, client_factory: FakeClientFactory
) -> None:
    fetcher = SubscriptionsFetcher(database=database, client_factory=cast(Any, client_factory))

    with pytest.raises(ValueError):
        await fetcher.update_subscriptions(make_account("acc_1", channel_id=None))
