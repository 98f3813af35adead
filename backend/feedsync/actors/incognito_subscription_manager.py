from __future__ import annotations

import logging
from typing import Any

from backend.feedsync.actors.actor import Actor, HandlerTable
from backend.feedsync.models.contracts import (
    AddIncognitoSubscriptionRequest,
    AddIncognitoSubscriptionResponse,
    AddIncognitoSubscriptionResult,
    IncognitoSubscriptionRef,
    IncognitoSubscriptionView,
    SetIncognitoSubscriptionEnabledRequest,
)
from backend.feedsync.storage.sync_storage import SyncStorage
from backend.feedsync.youtube.client_factory import ClientFactory

LOGGER = logging.getLogger("feedsync.actors.incognito_subscription_manager")

ADD_REQUESTED = "incognito-subscriptions.add-requested"
LIST_REQUESTED = "incognito-subscriptions.list-requested"
SET_ENABLED_REQUESTED = "incognito-subscriptions.set-enabled-requested"
REMOVE_REQUESTED = "incognito-subscriptions.remove-requested"


class IncognitoSubscriptionManager(Actor):
    """Manages channels and playlists followed without a YouTube account."""

    def __init__(self, *, sync_storage: SyncStorage, client_factory: ClientFactory) -> None:
        super().__init__()
        self._sync_storage = sync_storage
        self._client_factory = client_factory

    def handlers(self) -> HandlerTable:
        return (
            (ADD_REQUESTED, self.on_add_requested),
            (LIST_REQUESTED, self.on_list_requested),
            (SET_ENABLED_REQUESTED, self.on_set_enabled_requested),
            (REMOVE_REQUESTED, self.on_remove_requested),
        )

    async def on_add_requested(
        self, _topic: str, data: AddIncognitoSubscriptionRequest
    ) -> AddIncognitoSubscriptionResponse:
        resolved = await self._client_factory.get_anonymous_client().resolve_incognito_subscription(
            data.url
        )
        added = await self._sync_storage.add_incognito_subscription(
            resolved.type, resolved.resource_id
        )
        LOGGER.info(
            "incognito subscription add requested type=%s id=%s added=%s",
            resolved.type.value,
            resolved.resource_id,
            added,
        )
        return AddIncognitoSubscriptionResponse(
            type=resolved.type,
            resource_id=resolved.resource_id,
            result=AddIncognitoSubscriptionResult.ADDED
            if added
            else AddIncognitoSubscriptionResult.DUPLICATE,
        )

    async def on_list_requested(self, _topic: str, _data: Any) -> list[IncognitoSubscriptionView]:
        return [
            IncognitoSubscriptionView(
                type=record.type, resource_id=record.resource_id, enabled=record.enabled
            )
            for record in await self._sync_storage.get_incognito_subscriptions()
        ]

    async def on_set_enabled_requested(
        self, _topic: str, data: SetIncognitoSubscriptionEnabledRequest
    ) -> bool:
        if await self._sync_storage.get_incognito_subscription(data.type, data.resource_id) is None:
            return False
        subscriptions = [(data.type, data.resource_id)]
        if data.enabled:
            await self._sync_storage.enable_incognito_subscriptions(subscriptions)
        else:
            await self._sync_storage.disable_incognito_subscriptions(subscriptions)
        return True

    async def on_remove_requested(self, _topic: str, data: IncognitoSubscriptionRef) -> bool:
        if await self._sync_storage.get_incognito_subscription(data.type, data.resource_id) is None:
            return False
        await self._sync_storage.remove_incognito_subscriptions([(data.type, data.resource_id)])
        return True
