from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, cast


class ModificationType(str, Enum):
    ADDED = "ADDED"
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    REMOVED = "REMOVED"


@dataclass(frozen=True)
class SyncedResource:
    resource_id: str
    enabled: bool


@dataclass(frozen=True)
class ListModification:
    type: ModificationType
    resource_id: str


def decode_resource_list(raw: Any) -> list[SyncedResource]:
    """
    Decode the flat `[id, flag, id, flag, ...]` wire list.

    A missing list decodes as empty; a trailing id without a flag is disabled.
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"synchronized resource list must be a list, got {type(raw).__name__}")
    items = cast(list[Any], raw)
    resources: list[SyncedResource] = []
    for index in range(0, len(items), 2):
        resource_id = items[index]
        if not isinstance(resource_id, str) or not resource_id:
            raise ValueError(f"invalid resource id at position {index}: {resource_id!r}")
        flag = items[index + 1] if index + 1 < len(items) else 0
        resources.append(SyncedResource(resource_id=resource_id, enabled=bool(flag)))
    return resources


def encode_resource_list(resources: Iterable[SyncedResource]) -> list[str | int]:
    encoded: list[str | int] = []
    for resource in resources:
        encoded.append(resource.resource_id)
        encoded.append(1 if resource.enabled else 0)
    return encoded


def diff_resource_lists(old_raw: Any, new_raw: Any) -> list[ListModification]:
    """
    Minimal modifications turning the old list into the new one.

    Ids are reported in new-list order (ADDED / ENABLED / DISABLED), followed
    by ids only present in the old list (REMOVED) in old-list order.
    """
    old_flags = {resource.resource_id: resource.enabled for resource in decode_resource_list(old_raw)}
    modifications: list[ListModification] = []
    seen: set[str] = set()

    for resource in decode_resource_list(new_raw):
        if resource.resource_id in seen:
            continue
        seen.add(resource.resource_id)
        if resource.resource_id not in old_flags:
            modifications.append(ListModification(ModificationType.ADDED, resource.resource_id))
        elif old_flags[resource.resource_id] != resource.enabled:
            modification_type = (
                ModificationType.ENABLED if resource.enabled else ModificationType.DISABLED
            )
            modifications.append(ListModification(modification_type, resource.resource_id))

    for resource_id in old_flags:
        if resource_id not in seen:
            modifications.append(ListModification(ModificationType.REMOVED, resource_id))
    return modifications


def find_resource(resources: Sequence[SyncedResource], resource_id: str) -> SyncedResource | None:
    for resource in resources:
        if resource.resource_id == resource_id:
            return resource
    return None
