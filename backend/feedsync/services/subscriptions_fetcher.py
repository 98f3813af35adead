from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import cast

from backend.feedsync.models.entities import (
    Account,
    Channel,
    Playlist,
    Subscription,
    Video,
)
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services import video_storage
from backend.feedsync.services.entity_graph import (
    EnabledMembership,
    Member,
    add_member,
    detach_channel,
)
from backend.feedsync.telemetry import TelemetryClient
from backend.feedsync.youtube.client import YouTubeClient
from backend.feedsync.youtube.client_factory import ClientFactory
from backend.feedsync.youtube.retry import with_authorization_fallback

LOGGER = logging.getLogger("feedsync.services.subscriptions_fetcher")


@dataclass(frozen=True)
class SubscriptionsUpdate:
    account_id: str
    added: int
    removed: int
    total: int


class SubscriptionsFetcher:
    def __init__(
        self,
        *,
        database: Database,
        client_factory: ClientFactory,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._database = database
        self._client_factory = client_factory
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    async def update_subscriptions(self, account: Account) -> SubscriptionsUpdate:
        """
        Reconcile the stored subscriptions of `account` with its remote ones.

        The remote list is read publicly first; credentials are only used when
        that fails. The whole reconciliation is a single transaction.
        """
        if account.channel_id is None:
            raise ValueError(f"account {account.id} has no channel id; subscriptions are unknown")

        client = self._client_factory.get_client_for_user(account.id)
        with self._telemetry.operation("subscriptions.fetch", account_id=account.id) as results:
            remote = await with_authorization_fallback(
                lambda: client.get_subscriptions(account),
                lambda: client.get_subscriptions(account, authorized=True),
                description="subscriptions",
            )
            em = EntityManager(self._database)
            member = Member.account(account.id)

            async def _reconcile() -> SubscriptionsUpdate:
                membership = await video_storage.load_enabled_membership(em)
                known = {
                    subscription.channel_id: subscription
                    for subscription in await em.query(
                        Subscription, {"is_incognito": 0, "account_id": account.id}
                    )
                }
                added = 0
                for subscription, channel in remote:
                    if channel.id not in known:
                        await em.persist(subscription)
                        added += 1
                    await self._attach_channel(em, client, member, channel, membership)
                    known.pop(channel.id, None)

                for channel_id, subscription in known.items():
                    if channel_id is not None:
                        await detach_channel(em, member, channel_id, membership)
                    await em.remove(Subscription, cast(str, subscription.id))

                return SubscriptionsUpdate(
                    account_id=account.id,
                    added=added,
                    removed=len(known),
                    total=len(remote),
                )

            update = await em.run_transaction(_reconcile)
            results.update(added=update.added, removed=update.removed, total=update.total)

        LOGGER.info(
            "subscriptions updated account_id=%s added=%d removed=%d total=%d",
            account.id,
            update.added,
            update.removed,
            update.total,
        )
        return update

    async def _attach_channel(
        self,
        em: EntityManager,
        client: YouTubeClient,
        member: Member,
        remote_channel: Channel,
        membership: EnabledMembership,
    ) -> None:
        channel = await em.find(Channel, remote_channel.id)
        if channel is None:
            channel = remote_channel
            channel.account_ids = [member.member_id]
            await em.persist(channel)
        elif add_member(channel, member):
            await em.persist(channel)

        if channel.uploads_playlist_id is None:
            LOGGER.warning("channel without uploads playlist channel_id=%s", channel.id)
            return

        playlist = await em.find(Playlist, channel.uploads_playlist_id)
        if playlist is None:
            fetched = await client.get_uploads_playlists([channel])
            if not fetched:
                LOGGER.warning(
                    "uploads playlist unavailable channel_id=%s playlist_id=%s",
                    channel.id,
                    channel.uploads_playlist_id,
                )
                return
            playlist = fetched[0]

        if not add_member(playlist, member):
            return
        await em.persist(playlist)

        # First time this owner reaches the playlist: its known videos gain it too.
        for video in await em.query(Video, {"channel_id": channel.id}):
            if add_member(video, member):
                video.is_enabled = 1 if membership.enables(video) else 0
                await em.persist(video)
