from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from backend.feedsync.errors import BusTimeoutError
from backend.feedsync.event_bus.router import Listener, Registration, TopicRouter, split_topic

LOGGER = logging.getLogger("feedsync.event_bus")

INTERNAL_TOPIC_PREFIX = "event-bus."

Reply = Callable[..., None]


class EventBus:
    """
    Topic-addressed publish/subscribe over a single asyncio event loop.

    Listeners are called as `listener(topic, data, reply)` (with the
    registration context prepended when one was given). `reply` is `None`
    for `fire` and a deferred completion function for `dispatch`.
    A listener returning an awaitable has it scheduled as a task; its failure
    is logged and never reaches the publisher or sibling listeners.
    """

    def __init__(self) -> None:
        self._router = TopicRouter()
        self._tasks: set[asyncio.Task[Any]] = set()

    def add_listener(self, topic: str, listener: Listener, context: Any = None) -> None:
        self._router.add_listener(topic, listener, context)

    def remove_listener(
        self,
        listener: Listener,
        context: Any = None,
        *,
        topic: str | None = None,
    ) -> None:
        self._router.remove_listener(listener, context, topic=topic)

    def has_listeners(self, topic: str) -> bool:
        return bool(self._router.resolve(topic))

    def fire(self, topic: str, data: Any = None) -> None:
        self._deliver(topic, data, None)

    def dispatch(self, topic: str, data: Any = None, callback: Reply | None = None) -> None:
        """
        Publish `topic` to every matching listener.

        Each listener may invoke the reply it receives; `callback` then runs on a
        later loop iteration, never inside the listener's own call stack.
        """
        reply: Reply | None = None
        if callback is not None:
            loop = asyncio.get_running_loop()
            reply_callback = callback

            def _reply(*response: Any) -> None:
                loop.call_soon(reply_callback, *response)

            reply = _reply

        self._deliver(topic, data, reply)

    def await_once(self, topic: str, timeout: float) -> asyncio.Future[Any]:
        """
        Future resolved with the data of the next event published on `topic`.

        The transient listener is registered before this returns, so the caller
        may arm the wait and then trigger the event. It is removed on the first
        event or when `timeout` elapses; the future then fails with
        `BusTimeoutError`.
        """
        if timeout <= 0:
            raise ValueError(f"await_once timeout must be positive, got {timeout!r}")
        split_topic(topic, allow_wildcard=True)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def _on_event(_topic: str, data: Any, _reply: Reply | None) -> None:
            self.remove_listener(_on_event, topic=topic)
            timer.cancel()
            if not future.done():
                future.set_result(data)

        def _on_timeout() -> None:
            self.remove_listener(_on_event, topic=topic)
            if not future.done():
                future.set_exception(BusTimeoutError(topic, timeout))

        def _cleanup(_future: asyncio.Future[Any]) -> None:
            timer.cancel()
            self.remove_listener(_on_event, topic=topic)

        timer = loop.call_later(timeout, _on_timeout)
        self.add_listener(topic, _on_event)
        future.add_done_callback(_cleanup)
        return future

    async def drain(self) -> None:
        """Wait until no listener task is pending, including tasks spawned meanwhile."""
        while True:
            for _ in range(3):
                await asyncio.sleep(0)
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _deliver(self, topic: str, data: Any, reply: Reply | None) -> None:
        registrations = self._router.resolve(topic)
        if not registrations:
            if not topic.startswith(INTERNAL_TOPIC_PREFIX):
                LOGGER.warning("event published without listeners topic=%s", topic)
            return
        for registration in registrations:
            self._invoke(registration, topic, data, reply)

    def _invoke(
        self,
        registration: Registration,
        topic: str,
        data: Any,
        reply: Reply | None,
    ) -> None:
        args: tuple[Any, ...] = (topic, data, reply)
        if registration.context is not None:
            args = (registration.context, *args)
        try:
            result = registration.listener(*args)
        except Exception:
            LOGGER.error("event listener failed topic=%s", topic, exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda finished: self._on_task_done(finished, topic))

    def _on_task_done(self, task: asyncio.Task[Any], topic: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("event listener failed topic=%s", topic, exc_info=exc)
