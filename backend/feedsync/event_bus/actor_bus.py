from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any

from backend.feedsync.event_bus.bus import INTERNAL_TOPIC_PREFIX, EventBus, Reply
from backend.feedsync.event_bus.router import Listener

if TYPE_CHECKING:
    from backend.feedsync.actors.actor import Actor, Handler

LOGGER = logging.getLogger("feedsync.event_bus.actors")

ACTOR_REGISTERED = f"{INTERNAL_TOPIC_PREFIX}actor-registered"
ACTOR_UNREGISTERED = f"{INTERNAL_TOPIC_PREFIX}actor-unregistered"


class ActorEventBus(EventBus):
    """Event bus that also hosts actors and turns handler outcomes into replies."""

    def __init__(self) -> None:
        super().__init__()
        self._actor_listeners: dict[int, tuple[Actor, list[tuple[str, Listener]]]] = {}

    def register_actor(self, actor: Actor) -> None:
        if id(actor) in self._actor_listeners:
            return
        actor.bind_to_event_bus(self)

        listeners: list[tuple[str, Listener]] = []
        for topic, handler in actor.handlers():
            listener = _reply_forwarding_listener(actor, handler)
            self.add_listener(topic, listener)
            listeners.append((topic, listener))
        self._actor_listeners[id(actor)] = (actor, listeners)
        LOGGER.debug("actor registered actor=%s topics=%d", actor.name, len(listeners))
        self.fire(ACTOR_REGISTERED, actor)

    def unregister_actor(self, actor: Actor) -> None:
        entry = self._actor_listeners.pop(id(actor), None)
        if entry is None:
            return
        _, listeners = entry
        for topic, listener in listeners:
            self.remove_listener(listener, topic=topic)
        actor.bind_to_event_bus(None)
        LOGGER.debug("actor unregistered actor=%s", actor.name)
        self.fire(ACTOR_UNREGISTERED, actor)

    def is_registered(self, actor: Actor) -> bool:
        return id(actor) in self._actor_listeners


def _reply_forwarding_listener(actor: Actor, handler: Handler) -> Listener:
    async def _listener(topic: str, data: Any, reply: Reply | None) -> None:
        try:
            response = handler(topic, data)
            if inspect.isawaitable(response):
                response = await response
        except Exception as exc:
            if reply is None:
                LOGGER.error(
                    "actor handler failed actor=%s topic=%s",
                    actor.name,
                    topic,
                    exc_info=True,
                )
            else:
                LOGGER.info(
                    "actor handler replied with error actor=%s topic=%s error=%s",
                    actor.name,
                    topic,
                    type(exc).__name__,
                )
                reply(exc)
            return
        if reply is not None and response is not None:
            reply(response)

    return _listener
