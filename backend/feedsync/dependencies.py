from __future__ import annotations

from functools import lru_cache

from backend.feedsync.actors.accounts_manager import AccountsManager
from backend.feedsync.actors.api_connector import ApiConnector
from backend.feedsync.actors.feed import Feed
from backend.feedsync.actors.incognito_subscription_manager import IncognitoSubscriptionManager
from backend.feedsync.actors.synchronization import Synchronization
from backend.feedsync.actors.timer import Timer
from backend.feedsync.config import AppSettings, load_settings
from backend.feedsync.daemon import Daemon
from backend.feedsync.event_bus.actor_bus import ActorEventBus
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.sync_store_repository import SyncStoreRepository
from backend.feedsync.services.accounts_synchronizer import AccountsSynchronizer
from backend.feedsync.services.incognito_synchronizer import IncognitoSubscriptionsSynchronizer
from backend.feedsync.services.subscriptions_fetcher import SubscriptionsFetcher
from backend.feedsync.services.videos_fetcher import VideosFetcher
from backend.feedsync.storage.sync_storage import SyncStorage
from backend.feedsync.storage.sync_store import LocalSyncStore
from backend.feedsync.telemetry import TelemetryClient, build_telemetry_client
from backend.feedsync.youtube.client_factory import ClientFactory, ConfiguredIdentityProvider


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_sync_store() -> LocalSyncStore:
    settings = get_settings()
    # Separate file: store writes must not queue behind entity transactions.
    store_database = Database(settings.sync_store_path)
    store_database.initialize()
    return LocalSyncStore(
        SyncStoreRepository(store_database),
        quota_bytes=settings.sync_store_quota_bytes,
        quota_bytes_per_item=settings.sync_store_quota_bytes_per_item,
    )


@lru_cache(maxsize=1)
def get_event_bus() -> ActorEventBus:
    return ActorEventBus()


@lru_cache(maxsize=1)
def get_sync_storage() -> SyncStorage:
    settings = get_settings()
    return SyncStorage(
        get_sync_store(),
        get_event_bus(),
        quota_bytes=settings.sync_store_quota_bytes,
        quota_bytes_per_item=settings.sync_store_quota_bytes_per_item,
    )


@lru_cache(maxsize=1)
def get_client_factory() -> ClientFactory:
    settings = get_settings()
    return ClientFactory(
        api_key=settings.youtube_api_key,
        token_dir=settings.token_dir,
        client_secret_path=settings.youtube_client_secret_path,
        request_timeout_seconds=settings.youtube_request_timeout_seconds,
        authorization_timeout_seconds=settings.youtube_authorization_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_connector() -> ApiConnector:
    return ApiConnector()


@lru_cache(maxsize=1)
def get_daemon() -> Daemon:
    settings = get_settings()
    database = get_database()
    event_bus = get_event_bus()
    sync_storage = get_sync_storage()
    client_factory = get_client_factory()
    telemetry = get_telemetry()
    identity = ConfiguredIdentityProvider(settings.current_account_id)

    return Daemon(
        event_bus=event_bus,
        actors=[
            Timer(
                minute_seconds=settings.heartbeat_minute_seconds,
                quarter_of_hour_seconds=settings.heartbeat_quarter_of_hour_seconds,
                hour_seconds=settings.heartbeat_hour_seconds,
            ),
            AccountsManager(
                sync_storage=sync_storage,
                database=database,
                client_factory=client_factory,
                identity=identity,
                add_account_timeout_seconds=settings.add_account_timeout_seconds,
            ),
            IncognitoSubscriptionManager(
                sync_storage=sync_storage,
                client_factory=client_factory,
            ),
            Synchronization(
                database=database,
                subscriptions_fetcher=SubscriptionsFetcher(
                    database=database,
                    client_factory=client_factory,
                    telemetry=telemetry,
                ),
                videos_fetcher=VideosFetcher(
                    database=database,
                    client_factory=client_factory,
                    telemetry=telemetry,
                ),
                telemetry=telemetry,
            ),
            Feed(database=database),
            get_connector(),
        ],
        synchronizers=[
            AccountsSynchronizer(
                event_bus=event_bus,
                sync_storage=sync_storage,
                database=database,
                client_factory=client_factory,
                identity=identity,
                authorization_retry_attempts=settings.authorization_retry_attempts,
                authorization_retry_backoff_seconds=settings.authorization_retry_backoff_seconds,
            ),
            IncognitoSubscriptionsSynchronizer(
                event_bus=event_bus,
                sync_storage=sync_storage,
                database=database,
                client_factory=client_factory,
            ),
        ],
    )


def reset_cached_dependencies() -> None:
    get_daemon.cache_clear()
    get_connector.cache_clear()
    get_client_factory.cache_clear()
    get_sync_storage.cache_clear()
    get_event_bus.cache_clear()
    get_sync_store.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
