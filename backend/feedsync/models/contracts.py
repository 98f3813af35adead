from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.feedsync.models.entities import Account, SubscriptionType


def _normalize_identifier(value: object) -> object:
    if not isinstance(value, str):
        return value
    return value.strip()


class AddAccountResult(str, Enum):
    ADDED = "ADDED"
    DUPLICATE = "DUPLICATE"
    NOT_SIGNED_IN = "NOT_SIGNED_IN"
    AUTHORIZATION_REJECTED = "AUTHORIZATION_REJECTED"
    TIMED_OUT = "TIMED_OUT"


class AddAccountResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    result: AddAccountResult
    account: Account | None = None


class SetAccountEnabledRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str = Field(min_length=1, max_length=255)
    enabled: bool

    @field_validator("account_id", mode="before")
    @classmethod
    def _normalize_account_id(cls, value: object) -> object:
        return _normalize_identifier(value)


class AddIncognitoSubscriptionResult(str, Enum):
    ADDED = "ADDED"
    DUPLICATE = "DUPLICATE"


class AddIncognitoSubscriptionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1, max_length=2048)

    @field_validator("url", mode="before")
    @classmethod
    def _normalize_url(cls, value: object) -> object:
        return _normalize_identifier(value)


class IncognitoSubscriptionRef(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: SubscriptionType
    resource_id: str = Field(min_length=1, max_length=255)

    @field_validator("resource_id", mode="before")
    @classmethod
    def _normalize_resource_id(cls, value: object) -> object:
        return _normalize_identifier(value)


class AddIncognitoSubscriptionResponse(IncognitoSubscriptionRef):
    result: AddIncognitoSubscriptionResult


class IncognitoSubscriptionView(IncognitoSubscriptionRef):
    enabled: bool


class SetIncognitoSubscriptionEnabledRequest(IncognitoSubscriptionRef):
    enabled: bool


class ListVideosRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    include_watched: bool = False
    limit: int = Field(default=50, ge=1, le=500)


class SynchronizationReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pass_id: str
    accounts_synchronized: int = 0
    accounts_failed: list[str] = Field(default_factory=list)
    videos_added: int = 0
    playlists_failed: list[str] = Field(default_factory=list)


class QuotaUsageResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    accounts: int
    channels: int
    playlists: int
    total: int
    item_maximum: int
    total_maximum: int


class AcknowledgedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool = True
