from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from backend.feedsync.errors import TopicValidationError

WILDCARD = "*"
_SEGMENT_PATTERN = re.compile(r"^[^\s.*]+$")

Listener = Callable[..., Any]


@dataclass(frozen=True)
class Registration:
    listener: Listener
    context: Any = None

    def matches(self, listener: Listener, context: Any) -> bool:
        return self.listener == listener and self.context is context


@dataclass
class _TopicNode:
    registrations: list[Registration] = field(default_factory=list)
    children: dict[str, _TopicNode] = field(default_factory=dict)


def split_topic(topic: str, *, allow_wildcard: bool) -> list[str]:
    """
    Validate a dot-separated topic and return its segments.

    A wildcard may only appear as the last segment of a registration topic.
    Published topics never contain one.
    """
    if not isinstance(topic, str) or not topic:
        raise TopicValidationError(f"invalid topic {topic!r}: must be a non-empty string")

    segments = topic.split(".")
    for index, segment in enumerate(segments):
        if segment == WILDCARD:
            if not allow_wildcard:
                raise TopicValidationError(
                    f"invalid topic {topic!r}: wildcards are only allowed in registrations"
                )
            if index != len(segments) - 1:
                raise TopicValidationError(
                    f"invalid topic {topic!r}: the wildcard must be the last segment"
                )
            continue
        if not _SEGMENT_PATTERN.match(segment):
            raise TopicValidationError(f"invalid topic {topic!r}: bad segment {segment!r}")
    return segments


class TopicRouter:
    """Hierarchical listener registry keyed by dot-separated topics."""

    def __init__(self) -> None:
        self._root = _TopicNode()

    def add_listener(self, topic: str, listener: Listener, context: Any = None) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        node = self._root
        for segment in split_topic(topic, allow_wildcard=True):
            node = node.children.setdefault(segment, _TopicNode())
        if any(existing.matches(listener, context) for existing in node.registrations):
            return
        node.registrations.append(Registration(listener=listener, context=context))

    def remove_listener(
        self,
        listener: Listener,
        context: Any = None,
        *,
        topic: str | None = None,
    ) -> int:
        """Remove a registration from one topic, or from every topic if none is given."""
        if topic is None:
            removed = self._remove_everywhere(self._root, listener, context)
        else:
            node: _TopicNode | None = self._root
            for segment in split_topic(topic, allow_wildcard=True):
                node = node.children.get(segment) if node is not None else None
            removed = 0 if node is None else _remove_from_node(node, listener, context)
        self._prune(self._root)
        return removed

    def resolve(self, topic: str) -> list[Registration]:
        """
        Subscriptions matching a published topic.

        Exact registrations come first, then wildcard registrations from the
        deepest ancestor to the root, each group in registration order.
        """
        segments = split_topic(topic, allow_wildcard=False)
        exact = self._find(segments)
        matched = list(exact.registrations) if exact is not None else []
        for depth in range(len(segments) - 1, -1, -1):
            wildcard_node = self._find([*segments[:depth], WILDCARD])
            if wildcard_node is not None:
                matched.extend(wildcard_node.registrations)
        return matched

    def topics(self) -> Iterator[str]:
        yield from self._walk(self._root, [])

    def _find(self, segments: list[str]) -> _TopicNode | None:
        node = self._root
        for segment in segments:
            child = node.children.get(segment)
            if child is None:
                return None
            node = child
        return node

    def _walk(self, node: _TopicNode, path: list[str]) -> Iterator[str]:
        if node.registrations:
            yield ".".join(path)
        for segment, child in node.children.items():
            yield from self._walk(child, [*path, segment])

    def _remove_everywhere(self, node: _TopicNode, listener: Listener, context: Any) -> int:
        removed = _remove_from_node(node, listener, context)
        for child in node.children.values():
            removed += self._remove_everywhere(child, listener, context)
        return removed

    def _prune(self, node: _TopicNode) -> bool:
        for segment in list(node.children):
            if self._prune(node.children[segment]):
                del node.children[segment]
        return not node.registrations and not node.children


def _remove_from_node(node: _TopicNode, listener: Listener, context: Any) -> int:
    kept = [entry for entry in node.registrations if not entry.matches(listener, context)]
    removed = len(node.registrations) - len(kept)
    node.registrations = kept
    return removed
