from __future__ import annotations

import asyncio
import logging
from typing import Any

from backend.feedsync.actors.actor import Actor, HandlerTable
from backend.feedsync.errors import BusTimeoutError
from backend.feedsync.models.contracts import (
    AddAccountResponse,
    AddAccountResult,
    SetAccountEnabledRequest,
)
from backend.feedsync.models.entities import Account
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services.events import SynchronizationEvents
from backend.feedsync.storage.sync_storage import SyncStorage
from backend.feedsync.youtube.client import YouTubeAuthorizationError
from backend.feedsync.youtube.client_factory import ClientFactory, IdentityProvider

LOGGER = logging.getLogger("feedsync.actors.accounts_manager")

LIST_REQUESTED = "accounts.list-requested"
ADD_REQUESTED = "accounts.add-requested"
SET_ENABLED_REQUESTED = "accounts.set-enabled-requested"
REMOVE_REQUESTED = "accounts.remove-requested"


class AccountsManager(Actor):
    def __init__(
        self,
        *,
        sync_storage: SyncStorage,
        database: Database,
        client_factory: ClientFactory,
        identity: IdentityProvider,
        add_account_timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__()
        self._sync_storage = sync_storage
        self._database = database
        self._client_factory = client_factory
        self._identity = identity
        self._add_account_timeout_seconds = add_account_timeout_seconds

    def handlers(self) -> HandlerTable:
        return (
            (LIST_REQUESTED, self.on_list_requested),
            (ADD_REQUESTED, self.on_add_requested),
            (SET_ENABLED_REQUESTED, self.on_set_enabled_requested),
            (REMOVE_REQUESTED, self.on_remove_requested),
        )

    async def on_list_requested(self, _topic: str, _data: Any) -> list[Account]:
        return await EntityManager(self._database).query(Account, order_by="title")

    async def on_add_requested(self, _topic: str, _data: Any) -> AddAccountResponse:
        """
        Add the signed-in identity to the synchronized accounts.

        The wait for the synchronizer's completion topic is armed before the
        synchronized store is written, so a fast synchronizer cannot be missed.
        """
        account_id = await self._identity.current_account_id()
        if account_id is None:
            return AddAccountResponse(result=AddAccountResult.NOT_SIGNED_IN)

        try:
            await self._client_factory.get_client_for_user(account_id).authorize()
        except YouTubeAuthorizationError as exc:
            LOGGER.warning("account authorization rejected account_id=%s error=%s", account_id, exc)
            return AddAccountResponse(result=AddAccountResult.AUTHORIZATION_REJECTED)

        if await self._sync_storage.get_account(account_id) is not None:
            return AddAccountResponse(result=AddAccountResult.DUPLICATE)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._add_account_timeout_seconds
        completion = self.event_bus.await_once(
            SynchronizationEvents.ACCOUNT_ADDED, self._add_account_timeout_seconds
        )
        try:
            added = await self._sync_storage.add_account(account_id)
        except Exception:
            completion.cancel()
            raise
        if not added:
            completion.cancel()
            return AddAccountResponse(result=AddAccountResult.DUPLICATE)

        try:
            account = await completion
            # Another account may complete first; keep waiting for ours.
            while not (isinstance(account, Account) and account.id == account_id):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise BusTimeoutError(
                        SynchronizationEvents.ACCOUNT_ADDED, self._add_account_timeout_seconds
                    )
                account = await self.event_bus.await_once(
                    SynchronizationEvents.ACCOUNT_ADDED, remaining
                )
        except BusTimeoutError:
            LOGGER.warning("account synchronization timed out account_id=%s", account_id)
            return AddAccountResponse(result=AddAccountResult.TIMED_OUT)

        LOGGER.info("account added account_id=%s", account_id)
        return AddAccountResponse(result=AddAccountResult.ADDED, account=account)

    async def on_set_enabled_requested(
        self, _topic: str, data: SetAccountEnabledRequest
    ) -> bool:
        if await self._sync_storage.get_account(data.account_id) is None:
            return False
        if data.enabled:
            await self._sync_storage.enable_accounts([data.account_id])
        else:
            await self._sync_storage.disable_accounts([data.account_id])
        return True

    async def on_remove_requested(self, _topic: str, account_id: str) -> bool:
        if await self._sync_storage.get_account(account_id) is None:
            return False
        await self._sync_storage.remove_accounts([account_id])
        return True
