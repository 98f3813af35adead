from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from backend.feedsync.errors import BusTimeoutError
from backend.feedsync.event_bus.bus import EventBus, Reply


@pytest.mark.asyncio
async def test_fire_delivers_to_every_matching_listener() -> None:
    bus = EventBus()
    received: list[tuple[Any, ...]] = []

    bus.add_listener("accounts.changed", lambda *args: received.append(("exact", *args)))
    bus.add_listener("accounts.*", lambda *args: received.append(("wildcard", *args)))
    bus.add_listener(
        "accounts.changed",
        lambda context, *args: received.append(("context", context, *args)),
        "ctx",
    )

    bus.fire("accounts.changed", {"id": "acc_1"})

    assert received == [
        ("exact", "accounts.changed", {"id": "acc_1"}, None),
        ("context", "ctx", "accounts.changed", {"id": "acc_1"}, None),
        ("wildcard", "accounts.changed", {"id": "acc_1"}, None),
    ]


@pytest.mark.asyncio
async def test_fire_without_listeners_logs_a_warning(
    caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(logging.getLogger("feedsync.event_bus"), "propagate", True)
    monkeypatch.setattr(logging.getLogger("feedsync"), "propagate", True)
    bus = EventBus()

    with caplog.at_level(logging.DEBUG, logger="feedsync.event_bus"):
        bus.fire("nobody.listens", 1)
        bus.fire("event-bus.actor-registered", None)

    assert bus.has_listeners("nobody.listens") is False
    unheard = [r for r in caplog.records if r.name == "feedsync.event_bus"]
    assert [(r.levelno, r.getMessage()) for r in unheard] == [
        (logging.WARNING, "event published without listeners topic=nobody.listens")
    ]


@pytest.mark.asyncio
async def test_dispatch_reply_runs_on_a_later_loop_iteration() -> None:
    bus = EventBus()
    replies: list[Any] = []

    def _answer(_topic: str, data: Any, reply: Reply | None) -> None:
        assert reply is not None
        reply(data * 2)

    bus.add_listener("math.double", _answer)
    bus.dispatch("math.double", 21, replies.append)

    assert replies == []
    await asyncio.sleep(0)
    assert replies == [42]


@pytest.mark.asyncio
async def test_failing_listener_does_not_affect_siblings() -> None:
    bus = EventBus()
    received: list[str] = []

    def _broken(*_args: Any) -> None:
        raise RuntimeError("listener bug")

    async def _broken_async(*_args: Any) -> None:
        raise RuntimeError("async listener bug")

    async def _working(_topic: str, data: Any, _reply: Reply | None) -> None:
        received.append(data)

    bus.add_listener("work.done", _broken)
    bus.add_listener("work.done", _broken_async)
    bus.add_listener("work.done", _working)

    bus.fire("work.done", "payload")
    await bus.drain()

    assert received == ["payload"]


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_spawned_by_listeners() -> None:
    bus = EventBus()
    finished: list[str] = []

    async def _first(*_args: Any) -> None:
        await asyncio.sleep(0.01)
        bus.fire("chain.second")

    async def _second(*_args: Any) -> None:
        await asyncio.sleep(0.01)
        finished.append("second")

    bus.add_listener("chain.first", _first)
    bus.add_listener("chain.second", _second)

    bus.fire("chain.first")
    await bus.drain()

    assert finished == ["second"]


@pytest.mark.asyncio
async def test_await_once_resolves_with_the_next_event() -> None:
    bus = EventBus()
    waiter = bus.await_once("accounts.added", timeout=1.0)

    assert bus.has_listeners("accounts.added") is True
    bus.fire("accounts.added", {"id": "acc_1"})
    bus.fire("accounts.added", {"id": "acc_2"})

    assert await waiter == {"id": "acc_1"}
    assert bus.has_listeners("accounts.added") is False


@pytest.mark.asyncio
async def test_await_once_times_out_and_unregisters() -> None:
    bus = EventBus()
    waiter = bus.await_once("accounts.added", timeout=0.02)

    with pytest.raises(BusTimeoutError) as exc_info:
        await waiter

    assert exc_info.value.topic == "accounts.added"
    assert bus.has_listeners("accounts.added") is False


@pytest.mark.asyncio
async def test_cancelled_await_once_unregisters() -> None:
    bus = EventBus()
    waiter = bus.await_once("accounts.added", timeout=1.0)

    waiter.cancel()
    await asyncio.sleep(0)

    assert bus.has_listeners("accounts.added") is False


@pytest.mark.asyncio
async def test_await_once_rejects_non_positive_timeout() -> None:
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.await_once("accounts.added", timeout=0)
