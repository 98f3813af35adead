from __future__ import annotations

import logging
from typing import Any

from backend.feedsync.errors import EntityConsistencyError
from backend.feedsync.event_bus.bus import EventBus, Reply
from backend.feedsync.models.entities import (
    Account,
    Channel,
    Playlist,
    Subscription,
    SubscriptionState,
    SubscriptionType,
    Video,
    incognito_subscription_id,
)
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services import video_storage
from backend.feedsync.services.entity_graph import Member, add_member, detach_member
from backend.feedsync.services.events import SynchronizationEvents, event_resource_id
from backend.feedsync.storage.sync_storage import SyncStorage, SyncStorageEvents
from backend.feedsync.youtube.client_factory import ClientFactory

LOGGER = logging.getLogger("feedsync.services.incognito_synchronizer")


class IncognitoSubscriptionsSynchronizer:
    """Applies incognito channel and playlist changes of the synchronized store."""

    def __init__(
        self,
        *,
        event_bus: EventBus,
        sync_storage: SyncStorage,
        database: Database,
        client_factory: ClientFactory,
    ) -> None:
        self._event_bus = event_bus
        self._sync_storage = sync_storage
        self._database = database
        self._client_factory = client_factory
        self._listeners = (
            (SyncStorageEvents.CHANNEL_ADDED, SubscriptionType.CHANNEL, self._on_added),
            (SyncStorageEvents.CHANNEL_ENABLED, SubscriptionType.CHANNEL, self._on_enabled),
            (SyncStorageEvents.CHANNEL_DISABLED, SubscriptionType.CHANNEL, self._on_disabled),
            (SyncStorageEvents.CHANNEL_REMOVED, SubscriptionType.CHANNEL, self._on_removed),
            (SyncStorageEvents.PLAYLIST_ADDED, SubscriptionType.PLAYLIST, self._on_added),
            (SyncStorageEvents.PLAYLIST_ENABLED, SubscriptionType.PLAYLIST, self._on_enabled),
            (SyncStorageEvents.PLAYLIST_DISABLED, SubscriptionType.PLAYLIST, self._on_disabled),
            (SyncStorageEvents.PLAYLIST_REMOVED, SubscriptionType.PLAYLIST, self._on_removed),
        )

    def start(self) -> None:
        for topic, subscription_type, listener in self._listeners:
            self._event_bus.add_listener(topic, listener, subscription_type)

    def stop(self) -> None:
        for topic, subscription_type, listener in self._listeners:
            self._event_bus.remove_listener(listener, subscription_type, topic=topic)

    async def _on_added(
        self, subscription_type: SubscriptionType, _topic: str, data: Any, _reply: Reply | None
    ) -> None:
        await self.add_subscription(subscription_type, event_resource_id(data))

    async def _on_enabled(
        self, subscription_type: SubscriptionType, _topic: str, data: Any, _reply: Reply | None
    ) -> None:
        await self.set_subscription_state(
            subscription_type, event_resource_id(data), SubscriptionState.ACTIVE
        )

    async def _on_disabled(
        self, subscription_type: SubscriptionType, _topic: str, data: Any, _reply: Reply | None
    ) -> None:
        await self.set_subscription_state(
            subscription_type, event_resource_id(data), SubscriptionState.DISABLED
        )

    async def _on_removed(
        self, subscription_type: SubscriptionType, _topic: str, data: Any, _reply: Reply | None
    ) -> None:
        await self.remove_subscription(subscription_type, event_resource_id(data))

    async def add_subscription(
        self, subscription_type: SubscriptionType, resource_id: str
    ) -> Subscription | None:
        record = await self._sync_storage.get_incognito_subscription(subscription_type, resource_id)
        if record is None:
            LOGGER.warning(
                "stale incognito subscription addition ignored type=%s id=%s",
                subscription_type.value,
                resource_id,
            )
            return None

        client = self._client_factory.get_anonymous_client()
        channel: Channel | None = None
        if subscription_type is SubscriptionType.CHANNEL:
            channel = await client.get_channel(resource_id)
            playlist_id = channel.uploads_playlist_id
            channel_id: str | None = channel.id
        else:
            playlist_id = resource_id
            channel_id = None
        remote_playlist = await client.get_playlist(playlist_id) if playlist_id else None
        if remote_playlist is not None and channel_id is None:
            channel_id = remote_playlist.channel_id

        subscription_id = incognito_subscription_id(subscription_type, resource_id)
        member = Member.incognito(subscription_id)
        em = EntityManager(self._database)

        async def _apply() -> Subscription:
            existing = await em.find(Subscription, subscription_id)
            if existing is not None:
                return existing
            subscription = await em.persist(
                Subscription(
                    id=subscription_id,
                    type=subscription_type,
                    playlist_id=playlist_id,
                    channel_id=channel_id,
                    state=SubscriptionState.ACTIVE
                    if record.enabled
                    else SubscriptionState.DISABLED,
                    is_incognito=1,
                )
            )
            if channel is not None:
                stored_channel = await em.find(Channel, channel.id) or channel
                if add_member(stored_channel, member):
                    await em.persist(stored_channel)
            if remote_playlist is not None:
                stored_playlist = await em.find(Playlist, remote_playlist.id) or remote_playlist
                if stored_playlist.channel_id is None:
                    stored_playlist.channel_id = channel_id
                if add_member(stored_playlist, member):
                    await em.persist(stored_playlist)
            if channel is not None:
                membership = await video_storage.load_enabled_membership(em)
                for video in await em.query(Video, {"channel_id": channel.id}):
                    if add_member(video, member):
                        video.is_enabled = 1 if membership.enables(video) else 0
                        await em.persist(video)
            return subscription

        subscription = await em.run_transaction(_apply)
        LOGGER.info(
            "incognito subscription synchronized type=%s id=%s",
            subscription_type.value,
            resource_id,
        )
        self._event_bus.fire(SynchronizationEvents.INCOGNITO_SUBSCRIPTION_ADDED, subscription)
        return subscription

    async def set_subscription_state(
        self,
        subscription_type: SubscriptionType,
        resource_id: str,
        state: SubscriptionState,
    ) -> Subscription:
        subscription_id = incognito_subscription_id(subscription_type, resource_id)
        em = EntityManager(self._database)

        async def _apply() -> Subscription:
            subscription = await em.find(Subscription, subscription_id)
            if subscription is None:
                raise EntityConsistencyError(
                    f"incognito subscription {subscription_id} changed state but is not stored"
                )
            subscription.state = state
            await em.persist(subscription)
            await video_storage.update_enabled_flag(
                em,
                modified_subscription=subscription,
                all_accounts=await em.query(Account),
                all_incognito_subscriptions=await em.query(Subscription, {"is_incognito": 1}),
            )
            return subscription

        subscription = await em.run_transaction(_apply)
        topic = (
            SynchronizationEvents.INCOGNITO_SUBSCRIPTION_DISABLED
            if state is SubscriptionState.DISABLED
            else SynchronizationEvents.INCOGNITO_SUBSCRIPTION_ENABLED
        )
        self._event_bus.fire(topic, subscription)
        return subscription

    async def remove_subscription(
        self, subscription_type: SubscriptionType, resource_id: str
    ) -> bool:
        subscription_id = incognito_subscription_id(subscription_type, resource_id)
        em = EntityManager(self._database)

        async def _apply() -> bool:
            if not await em.remove(Subscription, subscription_id):
                return False
            await detach_member(
                em,
                Member.incognito(subscription_id),
                await video_storage.load_enabled_membership(em),
            )
            return True

        if not await em.run_transaction(_apply):
            LOGGER.warning("stale incognito subscription removal ignored id=%s", subscription_id)
            return False
        self._event_bus.fire(
            SynchronizationEvents.INCOGNITO_SUBSCRIPTION_REMOVED, {"id": subscription_id}
        )
        return True

