from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.feedsync.actors.actor import Actor, HandlerTable
from backend.feedsync.actors.timer import HEARTBEAT_HOUR, HEARTBEAT_QUARTER_OF_HOUR
from backend.feedsync.models.contracts import SynchronizationReport
from backend.feedsync.models.entities import Account, AccountState
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.resource_lock import ResourceLock
from backend.feedsync.services.events import SynchronizationEvents
from backend.feedsync.services.subscriptions_fetcher import SubscriptionsFetcher
from backend.feedsync.services.videos_fetcher import VideosFetcher
from backend.feedsync.telemetry import TelemetryClient
from backend.feedsync.youtube.client import YouTubeApiError

LOGGER = logging.getLogger("feedsync.actors.synchronization")

RUN_REQUESTED = "synchronization.run-requested"


class Synchronization(Actor):
    """
    Periodic pull of remote subscriptions and uploads.

    Passes never overlap: a heartbeat arriving during a pass is skipped, an
    explicit run request waits for the running pass and then starts its own.
    """

    def __init__(
        self,
        *,
        database: Database,
        subscriptions_fetcher: SubscriptionsFetcher,
        videos_fetcher: VideosFetcher,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        super().__init__()
        self._database = database
        self._subscriptions_fetcher = subscriptions_fetcher
        self._videos_fetcher = videos_fetcher
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._pass_lock = ResourceLock()

    def handlers(self) -> HandlerTable:
        return (
            (HEARTBEAT_QUARTER_OF_HOUR, self.on_heartbeat),
            (RUN_REQUESTED, self.on_run_requested),
            (HEARTBEAT_HOUR, self.on_view_counts_due),
            (SynchronizationEvents.ACCOUNT_ADDED, self.on_account_added),
        )

    async def on_heartbeat(self, _topic: str, _data: Any) -> None:
        if self._pass_lock.locked():
            LOGGER.info("synchronization pass still running; heartbeat skipped")
            return
        await self._pass_lock.run(self.run_pass)

    async def on_run_requested(self, _topic: str, _data: Any) -> SynchronizationReport:
        return await self._pass_lock.run(self.run_pass)

    async def on_view_counts_due(self, _topic: str, _data: Any) -> None:
        try:
            await self._videos_fetcher.update_view_counts()
        except YouTubeApiError:
            LOGGER.warning("view count refresh failed", exc_info=True)

    async def on_account_added(self, _topic: str, account: Account) -> None:
        if account.channel_id is None or account.state is AccountState.DISABLED:
            return
        await self._subscriptions_fetcher.update_subscriptions(account)

    async def run_pass(self) -> SynchronizationReport:
        pass_id = uuid4().hex
        tokens = bind_contextvars(synchronization_pass_id=pass_id)
        report = SynchronizationReport(pass_id=pass_id)
        try:
            with self._telemetry.operation("synchronization.pass", pass_id=pass_id) as results:
                accounts = await EntityManager(self._database).query(Account)
                for account in accounts:
                    if account.state is AccountState.DISABLED or account.channel_id is None:
                        continue
                    try:
                        await self._subscriptions_fetcher.update_subscriptions(account)
                    except Exception:
                        LOGGER.warning(
                            "subscriptions synchronization failed account_id=%s",
                            account.id,
                            exc_info=True,
                        )
                        report.accounts_failed.append(account.id)
                    else:
                        report.accounts_synchronized += 1

                try:
                    update = await self._videos_fetcher.update_videos()
                except YouTubeApiError:
                    LOGGER.warning("videos synchronization failed", exc_info=True)
                else:
                    report.videos_added = update.videos_added
                    report.playlists_failed = list(update.failed_playlist_ids)

                results.update(
                    accounts=report.accounts_synchronized,
                    accounts_failed=len(report.accounts_failed),
                    videos_added=report.videos_added,
                )
        finally:
            reset_contextvars(**tokens)

        LOGGER.info(
            "synchronization pass finished accounts=%d failed=%d videos_added=%d",
            report.accounts_synchronized,
            len(report.accounts_failed),
            report.videos_added,
        )
        return report
