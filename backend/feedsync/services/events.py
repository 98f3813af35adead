from __future__ import annotations

from typing import Any

SYNCHRONIZATION_EVENT_PREFIX = "background.storage.synchronization.EVENTS."


class SynchronizationEvents:
    """Completion topics fired once a synchronized change reached the entity graph."""

    ACCOUNT_ADDED = f"{SYNCHRONIZATION_EVENT_PREFIX}ACCOUNT_ADDED"
    ACCOUNT_ENABLED = f"{SYNCHRONIZATION_EVENT_PREFIX}ACCOUNT_ENABLED"
    ACCOUNT_DISABLED = f"{SYNCHRONIZATION_EVENT_PREFIX}ACCOUNT_DISABLED"
    ACCOUNT_REMOVED = f"{SYNCHRONIZATION_EVENT_PREFIX}ACCOUNT_REMOVED"
    INCOGNITO_SUBSCRIPTION_ADDED = f"{SYNCHRONIZATION_EVENT_PREFIX}INCOGNITO_SUBSCRIPTION_ADDED"
    INCOGNITO_SUBSCRIPTION_ENABLED = f"{SYNCHRONIZATION_EVENT_PREFIX}INCOGNITO_SUBSCRIPTION_ENABLED"
    INCOGNITO_SUBSCRIPTION_DISABLED = (
        f"{SYNCHRONIZATION_EVENT_PREFIX}INCOGNITO_SUBSCRIPTION_DISABLED"
    )
    INCOGNITO_SUBSCRIPTION_REMOVED = f"{SYNCHRONIZATION_EVENT_PREFIX}INCOGNITO_SUBSCRIPTION_REMOVED"


def event_resource_id(data: Any) -> str:
    if isinstance(data, dict) and isinstance(data.get("id"), str):
        return str(data["id"])
    raise ValueError(f"synchronized change event without a resource id: {data!r}")
