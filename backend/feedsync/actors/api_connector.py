from __future__ import annotations

from backend.feedsync.actors.actor import Actor


class ApiConnector(Actor):
    """Handler-less actor the HTTP layer uses to `ask` the other actors."""
