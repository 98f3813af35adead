from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from backend.feedsync.actors.actor import Actor, HandlerTable

LOGGER = logging.getLogger("feedsync.actors.timer")

BACKGROUND_START = "background.start"
BACKGROUND_END = "background.end"
HEARTBEAT_MINUTE = "heartbeat.minute"
HEARTBEAT_QUARTER_OF_HOUR = "heartbeat.quarter-of-hour"
HEARTBEAT_HOUR = "heartbeat.hour"


class Timer(Actor):
    """
    Generates the heartbeat topics while the background daemon runs.

    Each heartbeat carries the seconds elapsed since `background.start`.
    """

    def __init__(
        self,
        *,
        minute_seconds: float = 60.0,
        quarter_of_hour_seconds: float = 900.0,
        hour_seconds: float = 3600.0,
    ) -> None:
        super().__init__()
        self._periods = {
            HEARTBEAT_MINUTE: minute_seconds,
            HEARTBEAT_QUARTER_OF_HOUR: quarter_of_hour_seconds,
            HEARTBEAT_HOUR: hour_seconds,
        }
        for topic, period in self._periods.items():
            if period <= 0:
                raise ValueError(f"{topic} period must be positive, got {period!r}")
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def handlers(self) -> HandlerTable:
        return (
            (BACKGROUND_START, self.on_background_start),
            (BACKGROUND_END, self.on_background_end),
        )

    def on_background_start(self, _topic: str, _data: Any) -> None:
        if self._tasks:
            LOGGER.warning("timer already running; background.start ignored")
            return
        started_at = time.monotonic()
        self._tasks = [
            asyncio.create_task(self._beat(topic, period, started_at), name=f"timer:{topic}")
            for topic, period in self._periods.items()
        ]
        LOGGER.info("timer started")

    def on_background_end(self, _topic: str, _data: Any) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        LOGGER.info("timer stopped")

    async def _beat(self, topic: str, period: float, started_at: float) -> None:
        while True:
            await asyncio.sleep(period)
            self.tell(topic, time.monotonic() - started_at)
