from __future__ import annotations

import logging
from typing import assert_never

from backend.feedsync.models.entities import (
    Account,
    AccountState,
    Subscription,
    SubscriptionState,
    Video,
)
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services.entity_graph import EnabledMembership

LOGGER = logging.getLogger("feedsync.services.video_storage")


def account_enables_videos(state: AccountState) -> bool:
    match state:
        case AccountState.DISABLED:
            return False
        case AccountState.ACTIVE | AccountState.UNAUTHORIZED | AccountState.ERROR:
            return True
        case _:
            assert_never(state)


def subscription_enables_videos(state: SubscriptionState) -> bool:
    match state:
        case SubscriptionState.DISABLED:
            return False
        case SubscriptionState.ACTIVE | SubscriptionState.ERROR:
            return True
        case _:
            assert_never(state)


def enabled_membership(
    accounts: list[Account],
    incognito_subscriptions: list[Subscription],
) -> EnabledMembership:
    return EnabledMembership(
        account_ids=frozenset(
            account.id for account in accounts if account_enables_videos(account.state)
        ),
        incognito_subscription_ids=frozenset(
            subscription.id
            for subscription in incognito_subscriptions
            if subscription.id is not None and subscription_enables_videos(subscription.state)
        ),
    )


async def load_enabled_membership(em: EntityManager) -> EnabledMembership:
    return enabled_membership(
        await em.query(Account),
        await em.query(Subscription, {"is_incognito": 1}),
    )


async def update_enabled_flag(
    em: EntityManager,
    *,
    modified_account: Account | None = None,
    modified_subscription: Subscription | None = None,
    all_accounts: list[Account],
    all_incognito_subscriptions: list[Subscription],
) -> int:
    """
    Recompute `is_enabled` for every video reachable from the modified owner.

    A video is enabled when the modified owner is enabled, or otherwise when
    any other enabled account or incognito subscription still lists it.
    Returns the number of videos whose flag changed.
    """
    if modified_account is not None and modified_subscription is None:
        videos = await em.query(Video, {"account_ids": modified_account.id})
        owner_enabled = account_enables_videos(modified_account.state)
    elif modified_subscription is not None and modified_account is None:
        if modified_subscription.id is None:
            raise ValueError("modified_subscription must be persisted")
        videos = await em.query(
            Video, {"incognito_subscription_ids": modified_subscription.id}
        )
        owner_enabled = subscription_enables_videos(modified_subscription.state)
    else:
        raise ValueError("exactly one of modified_account or modified_subscription is required")

    membership = enabled_membership(all_accounts, all_incognito_subscriptions)
    changed = 0
    for video in videos:
        is_enabled = 1 if owner_enabled or membership.enables(video) else 0
        if video.is_enabled == is_enabled:
            continue
        video.is_enabled = is_enabled
        await em.persist(video)
        changed += 1

    LOGGER.debug("video enabled flags recomputed videos=%d changed=%d", len(videos), changed)
    return changed
