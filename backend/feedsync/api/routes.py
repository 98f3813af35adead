from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.feedsync.actors import accounts_manager, feed, incognito_subscription_manager
from backend.feedsync.actors.api_connector import ApiConnector
from backend.feedsync.actors.synchronization import RUN_REQUESTED
from backend.feedsync.config import AppSettings
from backend.feedsync.dependencies import get_connector, get_settings, get_sync_storage
from backend.feedsync.errors import BusTimeoutError
from backend.feedsync.models.contracts import (
    AcknowledgedResponse,
    AddAccountResponse,
    AddIncognitoSubscriptionRequest,
    AddIncognitoSubscriptionResponse,
    IncognitoSubscriptionRef,
    IncognitoSubscriptionView,
    ListVideosRequest,
    QuotaUsageResponse,
    SetAccountEnabledRequest,
    SetIncognitoSubscriptionEnabledRequest,
    SynchronizationReport,
)
from backend.feedsync.models.entities import Account, SubscriptionType, Video
from backend.feedsync.storage.sync_storage import SyncStorage

LOGGER = logging.getLogger("feedsync.api")

router = APIRouter()

ConnectorDep = Annotated[ApiConnector, Depends(get_connector)]
SettingsDep = Annotated[AppSettings, Depends(get_settings)]


async def _ask(
    connector: ApiConnector,
    topic: str,
    data: Any = None,
    *,
    timeout: float,
) -> Any:
    context_tokens = bind_contextvars(bus_topic=topic)
    try:
        return await connector.ask(topic, data, timeout=timeout)
    except BusTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        LOGGER.warning("bus request failed topic=%s", topic, exc_info=True)
        raise HTTPException(
            status_code=502,
            detail=f"{type(exc).__name__}: {exc}",
        ) from exc
    finally:
        reset_contextvars(**context_tokens)


def _acknowledge(found: bool, detail: str) -> AcknowledgedResponse:
    if not found:
        raise HTTPException(status_code=404, detail=detail)
    return AcknowledgedResponse()


@router.get("/accounts", response_model=list[Account], tags=["accounts"], operation_id="list_accounts")
async def list_accounts(connector: ConnectorDep, settings: SettingsDep) -> list[Account]:
    return await _ask(
        connector, accounts_manager.LIST_REQUESTED, timeout=settings.ask_timeout_seconds
    )


@router.post(
    "/accounts", response_model=AddAccountResponse, tags=["accounts"], operation_id="add_account"
)
async def add_account(connector: ConnectorDep, settings: SettingsDep) -> AddAccountResponse:
    return await _ask(
        connector,
        accounts_manager.ADD_REQUESTED,
        timeout=settings.add_account_timeout_seconds + settings.ask_timeout_seconds,
    )


@router.patch(
    "/accounts",
    response_model=AcknowledgedResponse,
    tags=["accounts"],
    operation_id="set_account_enabled",
)
async def set_account_enabled(
    request: SetAccountEnabledRequest,
    connector: ConnectorDep,
    settings: SettingsDep,
) -> AcknowledgedResponse:
    found = await _ask(
        connector,
        accounts_manager.SET_ENABLED_REQUESTED,
        request,
        timeout=settings.ask_timeout_seconds,
    )
    return _acknowledge(found, f"account {request.account_id} is not synchronized")


@router.delete(
    "/accounts/{account_id}",
    response_model=AcknowledgedResponse,
    tags=["accounts"],
    operation_id="remove_account",
)
async def remove_account(
    account_id: str,
    connector: ConnectorDep,
    settings: SettingsDep,
) -> AcknowledgedResponse:
    found = await _ask(
        connector,
        accounts_manager.REMOVE_REQUESTED,
        account_id,
        timeout=settings.ask_timeout_seconds,
    )
    return _acknowledge(found, f"account {account_id} is not synchronized")


@router.get(
    "/incognito-subscriptions",
    response_model=list[IncognitoSubscriptionView],
    tags=["incognito-subscriptions"],
    operation_id="list_incognito_subscriptions",
)
async def list_incognito_subscriptions(
    connector: ConnectorDep, settings: SettingsDep
) -> list[IncognitoSubscriptionView]:
    return await _ask(
        connector,
        incognito_subscription_manager.LIST_REQUESTED,
        timeout=settings.ask_timeout_seconds,
    )


@router.post(
    "/incognito-subscriptions",
    response_model=AddIncognitoSubscriptionResponse,
    tags=["incognito-subscriptions"],
    operation_id="add_incognito_subscription",
)
async def add_incognito_subscription(
    request: AddIncognitoSubscriptionRequest,
    connector: ConnectorDep,
    settings: SettingsDep,
) -> AddIncognitoSubscriptionResponse:
    return await _ask(
        connector,
        incognito_subscription_manager.ADD_REQUESTED,
        request,
        timeout=settings.ask_timeout_seconds,
    )


@router.patch(
    "/incognito-subscriptions",
    response_model=AcknowledgedResponse,
    tags=["incognito-subscriptions"],
    operation_id="set_incognito_subscription_enabled",
)
async def set_incognito_subscription_enabled(
    request: SetIncognitoSubscriptionEnabledRequest,
    connector: ConnectorDep,
    settings: SettingsDep,
) -> AcknowledgedResponse:
    found = await _ask(
        connector,
        incognito_subscription_manager.SET_ENABLED_REQUESTED,
        request,
        timeout=settings.ask_timeout_seconds,
    )
    return _acknowledge(found, f"incognito subscription {request.resource_id} does not exist")


@router.delete(
    "/incognito-subscriptions",
    response_model=AcknowledgedResponse,
    tags=["incognito-subscriptions"],
    operation_id="remove_incognito_subscription",
)
async def remove_incognito_subscription(
    subscription_type: Annotated[SubscriptionType, Query(alias="type")],
    resource_id: Annotated[str, Query(min_length=1, max_length=255)],
    connector: ConnectorDep,
    settings: SettingsDep,
) -> AcknowledgedResponse:
    found = await _ask(
        connector,
        incognito_subscription_manager.REMOVE_REQUESTED,
        IncognitoSubscriptionRef(type=subscription_type, resource_id=resource_id),
        timeout=settings.ask_timeout_seconds,
    )
    return _acknowledge(found, f"incognito subscription {resource_id} does not exist")


@router.get("/videos", response_model=list[Video], tags=["videos"], operation_id="list_videos")
async def list_videos(
    connector: ConnectorDep,
    settings: SettingsDep,
    include_watched: bool = False,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[Video]:
    return await _ask(
        connector,
        feed.LIST_REQUESTED,
        ListVideosRequest(include_watched=include_watched, limit=limit),
        timeout=settings.ask_timeout_seconds,
    )


@router.post(
    "/videos/{video_id}/watched",
    response_model=AcknowledgedResponse,
    tags=["videos"],
    operation_id="mark_video_watched",
)
async def mark_video_watched(
    video_id: str,
    connector: ConnectorDep,
    settings: SettingsDep,
) -> AcknowledgedResponse:
    found = await _ask(
        connector,
        feed.MARK_WATCHED_REQUESTED,
        video_id,
        timeout=settings.ask_timeout_seconds,
    )
    return _acknowledge(found, f"video {video_id} is not stored")


@router.post(
    "/synchronization",
    response_model=SynchronizationReport,
    tags=["synchronization"],
    operation_id="run_synchronization",
)
async def run_synchronization(
    connector: ConnectorDep, settings: SettingsDep
) -> SynchronizationReport:
    return await _ask(connector, RUN_REQUESTED, timeout=settings.synchronization_timeout_seconds)


@router.get(
    "/sync-storage/quota",
    response_model=QuotaUsageResponse,
    tags=["synchronization"],
    operation_id="sync_storage_quota",
)
async def sync_storage_quota(
    sync_storage: Annotated[SyncStorage, Depends(get_sync_storage)],
) -> QuotaUsageResponse:
    usage = await sync_storage.get_quota_usage()
    return QuotaUsageResponse(
        accounts=usage.accounts,
        channels=usage.channels,
        playlists=usage.playlists,
        total=usage.total,
        item_maximum=usage.item_maximum,
        total_maximum=usage.total_maximum,
    )
