from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

from backend.feedsync.actors.actor import Actor
from backend.feedsync.actors.timer import BACKGROUND_END, BACKGROUND_START
from backend.feedsync.event_bus.actor_bus import ActorEventBus

LOGGER = logging.getLogger("feedsync.daemon")


class DaemonState(str, Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


class Synchronizer(Protocol):
    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class Daemon:
    """
    Background process owning the actors and the storage synchronizers.

    Actors are registered once at construction; `start()` and `stop()` only
    toggle the synchronizers and announce `background.start` / `background.end`.
    """

    def __init__(
        self,
        *,
        event_bus: ActorEventBus,
        actors: Sequence[Actor],
        synchronizers: Sequence[Synchronizer] = (),
    ) -> None:
        self._event_bus = event_bus
        self._actors = list(actors)
        self._synchronizers = list(synchronizers)
        self._state = DaemonState.STOPPED
        for actor in self._actors:
            event_bus.register_actor(actor)
        LOGGER.info("daemon initialized actors=%d", len(self._actors))

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def event_bus(self) -> ActorEventBus:
        return self._event_bus

    def start(self) -> None:
        if self._state is DaemonState.RUNNING:
            raise RuntimeError("The daemon is already running")
        for synchronizer in self._synchronizers:
            synchronizer.start()
        self._event_bus.fire(BACKGROUND_START)
        self._state = DaemonState.RUNNING
        LOGGER.info("daemon started")

    def stop(self) -> None:
        if self._state is DaemonState.STOPPED:
            raise RuntimeError("The daemon is already stopped")
        self._event_bus.fire(BACKGROUND_END)
        for synchronizer in self._synchronizers:
            synchronizer.stop()
        self._state = DaemonState.STOPPED
        LOGGER.info("daemon stopped")
