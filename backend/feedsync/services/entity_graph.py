from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from backend.feedsync.models.entities import Channel, MemberEntity, Playlist, Video
from backend.feedsync.repositories.entity_manager import EntityManager

LOGGER = logging.getLogger("feedsync.services.entity_graph")

MemberKind = Literal["account", "incognito"]


@dataclass(frozen=True)
class Member:
    """An account or an incognito subscription listed in entity membership sets."""

    kind: MemberKind
    member_id: str

    @classmethod
    def account(cls, account_id: str) -> Member:
        return cls(kind="account", member_id=account_id)

    @classmethod
    def incognito(cls, subscription_id: str) -> Member:
        return cls(kind="incognito", member_id=subscription_id)

    @property
    def field_name(self) -> str:
        return "account_ids" if self.kind == "account" else "incognito_subscription_ids"


@dataclass(frozen=True)
class EnabledMembership:
    account_ids: frozenset[str] = frozenset()
    incognito_subscription_ids: frozenset[str] = frozenset()

    def enables(self, entity: MemberEntity) -> bool:
        return any(account_id in self.account_ids for account_id in entity.account_ids) or any(
            subscription_id in self.incognito_subscription_ids
            for subscription_id in entity.incognito_subscription_ids
        )


@dataclass
class DetachResult:
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


def _members_of(entity: MemberEntity, member: Member) -> list[str]:
    if member.kind == "account":
        return entity.account_ids
    return entity.incognito_subscription_ids


def add_member(entity: MemberEntity, member: Member) -> bool:
    members = _members_of(entity, member)
    if member.member_id in members:
        return False
    members.append(member.member_id)
    return True


def remove_member(entity: MemberEntity, member: Member) -> bool:
    members = _members_of(entity, member)
    if member.member_id not in members:
        return False
    members.remove(member.member_id)
    return True


def has_members(entity: MemberEntity) -> bool:
    return bool(entity.account_ids) or bool(entity.incognito_subscription_ids)


async def detach_member(
    em: EntityManager,
    member: Member,
    membership: EnabledMembership,
) -> DetachResult:
    """
    Remove `member` from every channel, playlist and video listing it.

    Entities left without members are deleted; surviving videos get their
    `is_enabled` flag recomputed against `membership`.
    """
    result = DetachResult()
    for entity_type in (Channel, Playlist, Video):
        for entity in await em.query(entity_type, {member.field_name: member.member_id}):
            await _detach(em, entity, member, membership, result)
    LOGGER.debug(
        "member detached kind=%s id=%s updated=%d deleted=%d",
        member.kind,
        member.member_id,
        len(result.updated),
        len(result.deleted),
    )
    return result


async def detach_channel(
    em: EntityManager,
    member: Member,
    channel_id: str,
    membership: EnabledMembership,
) -> DetachResult:
    """Remove `member` from one channel, its uploads playlist and the channel's videos."""
    result = DetachResult()
    channel = await em.find(Channel, channel_id)
    if channel is None:
        LOGGER.warning("channel missing while detaching member channel_id=%s", channel_id)
        return result

    await _detach(em, channel, member, membership, result)
    if channel.uploads_playlist_id is not None:
        playlist = await em.find(Playlist, channel.uploads_playlist_id)
        if playlist is not None:
            await _detach(em, playlist, member, membership, result)
    for video in await em.query(Video, {"channel_id": channel_id, member.field_name: member.member_id}):
        await _detach(em, video, member, membership, result)
    return result


async def _detach(
    em: EntityManager,
    entity: MemberEntity,
    member: Member,
    membership: EnabledMembership,
    result: DetachResult,
) -> None:
    if not remove_member(entity, member):
        return
    if not has_members(entity):
        await em.remove(type(entity), entity.id)
        result.deleted.append(entity.id)
        return
    if isinstance(entity, Video):
        entity.is_enabled = 1 if membership.enables(entity) else 0
    await em.persist(entity)
    result.updated.append(entity.id)
