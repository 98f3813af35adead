from __future__ import annotations

import logging
from typing import Any, cast

from backend.feedsync.errors import EntityConsistencyError
from backend.feedsync.event_bus.bus import EventBus, Reply
from backend.feedsync.models.entities import Account, AccountState, Subscription
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services import video_storage
from backend.feedsync.services.entity_graph import Member, detach_member
from backend.feedsync.services.events import SynchronizationEvents, event_resource_id
from backend.feedsync.storage.sync_storage import SyncStorage, SyncStorageEvents
from backend.feedsync.youtube.client import YouTubeAuthorizationError
from backend.feedsync.youtube.client_factory import ClientFactory, IdentityProvider
from backend.feedsync.youtube.retry import retry_on_authorization_error

LOGGER = logging.getLogger("feedsync.services.accounts_synchronizer")


class AccountsSynchronizer:
    """Applies account changes of the synchronized store to the entity graph."""

    def __init__(
        self,
        *,
        event_bus: EventBus,
        sync_storage: SyncStorage,
        database: Database,
        client_factory: ClientFactory,
        identity: IdentityProvider,
        authorization_retry_attempts: int = 3,
        authorization_retry_backoff_seconds: float = 1.0,
    ) -> None:
        self._event_bus = event_bus
        self._sync_storage = sync_storage
        self._database = database
        self._client_factory = client_factory
        self._identity = identity
        self._retry_attempts = authorization_retry_attempts
        self._retry_backoff_seconds = authorization_retry_backoff_seconds
        self._listeners = (
            (SyncStorageEvents.ACCOUNT_ADDED, self._on_account_added),
            (SyncStorageEvents.ACCOUNT_ENABLED, self._on_account_enabled),
            (SyncStorageEvents.ACCOUNT_DISABLED, self._on_account_disabled),
            (SyncStorageEvents.ACCOUNT_REMOVED, self._on_account_removed),
        )

    def start(self) -> None:
        for topic, listener in self._listeners:
            self._event_bus.add_listener(topic, listener)

    def stop(self) -> None:
        for topic, listener in self._listeners:
            self._event_bus.remove_listener(listener, topic=topic)

    async def _on_account_added(self, _topic: str, data: Any, _reply: Reply | None) -> None:
        await self.add_account(event_resource_id(data))

    async def _on_account_enabled(self, _topic: str, data: Any, _reply: Reply | None) -> None:
        await self.set_account_state(event_resource_id(data), AccountState.ACTIVE)

    async def _on_account_disabled(self, _topic: str, data: Any, _reply: Reply | None) -> None:
        await self.set_account_state(event_resource_id(data), AccountState.DISABLED)

    async def _on_account_removed(self, _topic: str, data: Any, _reply: Reply | None) -> None:
        await self.remove_account(event_resource_id(data))

    async def add_account(self, account_id: str) -> Account | None:
        record = await self._sync_storage.get_account(account_id)
        if record is None:
            LOGGER.warning("stale account addition ignored account_id=%s", account_id)
            return None

        current_account_id = await self._identity.current_account_id()
        em = EntityManager(self._database)
        if current_account_id != account_id:
            LOGGER.info(
                "added account is not the signed-in identity; storing placeholder account_id=%s",
                account_id,
            )
            return await em.persist(_placeholder(account_id, enabled=record.enabled))

        client = self._client_factory.get_client_for_user(account_id)
        try:
            account = await retry_on_authorization_error(
                lambda: client.get_account_info(account_id),
                attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff_seconds,
                description="account_info",
            )
        except YouTubeAuthorizationError as exc:
            LOGGER.warning(
                "account info rejected; storing placeholder account_id=%s error=%s",
                account_id,
                exc,
            )
            placeholder = _placeholder(account_id, enabled=record.enabled)
            placeholder.last_error = str(exc)
            return await em.persist(placeholder)

        if not record.enabled:
            account.state = AccountState.DISABLED
        account = await em.persist(account)
        LOGGER.info("account synchronized account_id=%s channel_id=%s", account.id, account.channel_id)
        self._event_bus.fire(SynchronizationEvents.ACCOUNT_ADDED, account)
        return account

    async def set_account_state(self, account_id: str, state: AccountState) -> Account:
        em = EntityManager(self._database)

        async def _apply() -> Account:
            account = await em.find(Account, account_id)
            if account is None:
                raise EntityConsistencyError(
                    f"account {account_id} changed state but is not stored locally"
                )
            account.state = state
            await em.persist(account)
            await video_storage.update_enabled_flag(
                em,
                modified_account=account,
                all_accounts=await em.query(Account),
                all_incognito_subscriptions=await em.query(Subscription, {"is_incognito": 1}),
            )
            return account

        account = await em.run_transaction(_apply)
        LOGGER.info("account state changed account_id=%s state=%s", account_id, state.value)
        topic = (
            SynchronizationEvents.ACCOUNT_DISABLED
            if state is AccountState.DISABLED
            else SynchronizationEvents.ACCOUNT_ENABLED
        )
        self._event_bus.fire(topic, account)
        return account

    async def remove_account(self, account_id: str) -> bool:
        em = EntityManager(self._database)

        async def _apply() -> bool:
            account = await em.find(Account, account_id)
            if account is None:
                return False
            for subscription in await em.query(
                Subscription, {"is_incognito": 0, "account_id": account_id}
            ):
                await em.remove(Subscription, cast(str, subscription.id))
            await em.remove(Account, account_id)
            await detach_member(
                em,
                Member.account(account_id),
                await video_storage.load_enabled_membership(em),
            )
            return True

        if not await em.run_transaction(_apply):
            LOGGER.warning("stale account removal ignored account_id=%s", account_id)
            return False
        self._client_factory.forget(account_id)
        LOGGER.info("account removed account_id=%s", account_id)
        self._event_bus.fire(SynchronizationEvents.ACCOUNT_REMOVED, {"id": account_id})
        return True


def _placeholder(account_id: str, *, enabled: bool) -> Account:
    return Account(
        id=account_id,
        state=AccountState.UNAUTHORIZED if enabled else AccountState.DISABLED,
    )

