from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from backend.feedsync.errors import ActorBindingError, BusTimeoutError
from backend.feedsync.event_bus.bus import EventBus
from backend.feedsync.event_bus.router import split_topic

DEFAULT_ASK_TIMEOUT_SECONDS = 15.0
HANDLER_NAME_PREFIX = "on"

Handler = Callable[[str, Any], Any | Awaitable[Any]]
HandlerTable = Sequence[tuple[str, Handler]]


def topic_from_handler_name(name: str) -> str:
    """
    Map a conventionally named handler to its topic.

    `onFoo_barBaz` handles `foo-bar.baz`: the `on` prefix is dropped, the first
    letter lower-cased, `_` becomes `-` and each further upper-case letter
    starts a new lower-case segment.
    """
    if not name.startswith(HANDLER_NAME_PREFIX) or len(name) <= len(HANDLER_NAME_PREFIX):
        raise ValueError(f"handler name {name!r} does not follow the on<Topic> convention")

    remainder = name[len(HANDLER_NAME_PREFIX):]
    parts = [remainder[0].lower()]
    for character in remainder[1:]:
        if character == "_":
            parts.append("-")
        elif character.isupper():
            parts.append("." + character.lower())
        else:
            parts.append(character)
    return "".join(parts)


def by_convention(*handlers: Handler) -> list[tuple[str, Handler]]:
    return [(topic_from_handler_name(handler.__name__), handler) for handler in handlers]


class Actor:
    """
    Bus participant with a fixed table of topic handlers.

    Subclasses override `handlers()`; the actor bus registers every entry when
    the actor is registered and binds the actor so it can `tell` and `ask`.
    """

    def __init__(self) -> None:
        self._event_bus: EventBus | None = None

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def event_bus(self) -> EventBus:
        if self._event_bus is None:
            raise ActorBindingError(f"actor {self.name} is not bound to an event bus")
        return self._event_bus

    @property
    def is_bound(self) -> bool:
        return self._event_bus is not None

    def handlers(self) -> HandlerTable:
        return ()

    def bind_to_event_bus(self, event_bus: EventBus | None) -> None:
        if event_bus is not None and self._event_bus is not None:
            raise ActorBindingError(f"actor {self.name} is already bound to an event bus")
        if event_bus is None and self._event_bus is None:
            raise ActorBindingError(f"actor {self.name} is not bound to an event bus")
        self._event_bus = event_bus

    def tell(self, topic: str, data: Any = None) -> None:
        """Fire-and-forget publication, delivered on a later loop iteration."""
        event_bus = self.event_bus
        split_topic(topic, allow_wildcard=False)
        asyncio.get_running_loop().call_soon(event_bus.fire, topic, data)

    async def ask(
        self,
        topic: str,
        data: Any = None,
        timeout: float = DEFAULT_ASK_TIMEOUT_SECONDS,
    ) -> Any:
        """
        Publish `topic` and wait for the first reply.

        An exception sent as the reply is raised here. Without a reply before
        `timeout` seconds, `BusTimeoutError` is raised and late replies are
        dropped.
        """
        if timeout <= 0:
            raise ValueError(f"ask timeout must be positive, got {timeout!r}")
        event_bus = self.event_bus
        split_topic(topic, allow_wildcard=False)
        loop = asyncio.get_running_loop()
        response: asyncio.Future[Any] = loop.create_future()

        def _on_reply(*reply: Any) -> None:
            if response.done():
                return
            value = reply[0] if reply else None
            if isinstance(value, BaseException):
                response.set_exception(value)
            else:
                response.set_result(value)

        loop.call_soon(event_bus.dispatch, topic, data, _on_reply)
        try:
            return await asyncio.wait_for(response, timeout)
        except TimeoutError as exc:
            raise BusTimeoutError(topic, timeout) from exc
