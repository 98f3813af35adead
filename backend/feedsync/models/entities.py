from __future__ import annotations

from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field


class AccountState(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    UNAUTHORIZED = "UNAUTHORIZED"
    ERROR = "ERROR"


class SubscriptionState(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ERROR = "ERROR"


class SubscriptionType(str, Enum):
    CHANNEL = "CHANNEL"
    PLAYLIST = "PLAYLIST"


def _empty_ids() -> list[str]:
    return []


def _empty_thumbnails() -> dict[str, str]:
    return {}


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=True)


class Account(_Entity):
    id: str
    channel_id: str | None = None
    title: str | None = None
    state: AccountState = AccountState.ACTIVE
    last_error: str | None = None
    watch_history_playlist_id: str | None = None
    watch_later_playlist_id: str | None = None


class Channel(_Entity):
    id: str
    title: str = ""
    thumbnails: dict[str, str] = Field(default_factory=_empty_thumbnails)
    uploads_playlist_id: str | None = None
    account_ids: list[str] = Field(default_factory=_empty_ids)
    incognito_subscription_ids: list[str] = Field(default_factory=_empty_ids)
    last_update: str | None = None


class Playlist(_Entity):
    id: str
    channel_id: str | None = None
    title: str = ""
    description: str = ""
    video_count: int = 0
    thumbnails: dict[str, str] = Field(default_factory=_empty_thumbnails)
    account_ids: list[str] = Field(default_factory=_empty_ids)
    incognito_subscription_ids: list[str] = Field(default_factory=_empty_ids)
    last_update: str | None = None


class Subscription(_Entity):
    id: str | None = None
    type: SubscriptionType
    playlist_id: str | None = None
    channel_id: str | None = None
    state: SubscriptionState = SubscriptionState.ACTIVE
    last_error: str | None = None
    account_id: str | None = None
    is_incognito: int = Field(default=0, ge=0, le=1)


class Video(_Entity):
    id: str
    title: str = ""
    description: str = ""
    published_at: str = ""
    thumbnails: dict[str, str] = Field(default_factory=_empty_thumbnails)
    duration: int = -1
    view_count: int = -1
    channel_id: str | None = None
    account_ids: list[str] = Field(default_factory=_empty_ids)
    incognito_subscription_ids: list[str] = Field(default_factory=_empty_ids)
    watched: int = Field(default=0, ge=0, le=1)
    is_enabled: int = Field(default=1, ge=0, le=1)
    last_update: str | None = None


Entity = Account | Channel | Playlist | Subscription | Video
EntityT = TypeVar("EntityT", Account, Channel, Playlist, Subscription, Video)
MemberEntity = Channel | Playlist | Video

# Persistence store per entity type; list fields are matched by membership.
ENTITY_STORES: dict[type[BaseModel], str] = {
    Account: "accounts",
    Channel: "channels",
    Playlist: "playlists",
    Subscription: "subscriptions",
    Video: "videos",
}
MEMBERSHIP_FIELDS: frozenset[str] = frozenset({"account_ids", "incognito_subscription_ids"})


def incognito_subscription_id(subscription_type: SubscriptionType, resource_id: str) -> str:
    return f"incognito:{subscription_type.value.lower()}:{resource_id}"
