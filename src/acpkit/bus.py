"""
Named-channel bus between the agent manager and its presentation layer.

The manager publishes normalized response events and pending confirmations;
whatever renders the conversation subscribes to the channels it cares about.

Example:
    from acpkit.bus import ResponseBus, RESPONSE_STREAM

    bus = ResponseBus()

    @bus.on(RESPONSE_STREAM)
    def show(event):
        print(event.type, event.data)

    bus.emit(RESPONSE_STREAM, ResponseEvent(type="content", conversation_id="c1", data="hi"))
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from acpkit.logging import get_logger

logger = get_logger("bus")

# Channel names
RESPONSE_STREAM = "response_stream"
CONFIRMATION_ADD = "confirmation.add"
CONFIRMATION_REMOVE = "confirmation.remove"

Handler = Callable[[Any], Any]


@dataclass
class _HandlerEntry:
    channel: str
    handler: Handler
    priority: int = 0
    source: str = ""


class ResponseBus:
    """
    Publish/subscribe bus with named channels.

    Handlers are called in priority order (lower first) and may be sync or
    async. ``emit`` never blocks on async handlers: their coroutines are
    scheduled on the running loop. Handler errors are logged, never raised to
    the publisher.
    """

    def __init__(self) -> None:
        self._handlers: list[_HandlerEntry] = []
        self._tasks: set[asyncio.Task] = set()

    def on(
        self,
        channel: str,
        handler: Handler | None = None,
        priority: int = 0,
        source: str = "",
    ) -> Callable[[], None] | Callable[[Handler], Handler]:
        """
        Subscribe to a channel.

        Returns an unsubscribe function, or a decorator when ``handler`` is
        omitted.
        """
        if handler is not None:
            entry = _HandlerEntry(
                channel=channel, handler=handler, priority=priority, source=source
            )
            self._handlers.append(entry)

            def unsubscribe() -> None:
                try:
                    self._handlers.remove(entry)
                except ValueError:
                    pass

            return unsubscribe

        def decorator(fn: Handler) -> Handler:
            self.on(channel, fn, priority=priority, source=source)
            return fn

        return decorator

    def off(self, channel: str, handler: Handler) -> None:
        self._handlers = [
            h for h in self._handlers if not (h.channel == channel and h.handler is handler)
        ]

    def clear(self, channel: str | None = None) -> None:
        if channel is None:
            self._handlers.clear()
        else:
            self._handlers = [h for h in self._handlers if h.channel != channel]

    def _relevant(self, channel: str) -> list[_HandlerEntry]:
        return sorted(
            (h for h in self._handlers if h.channel == channel),
            key=lambda h: h.priority,
        )

    def emit(self, channel: str, data: Any = None) -> None:
        """Deliver ``data`` to every subscriber of ``channel``."""
        for entry in self._relevant(channel):
            try:
                result = entry.handler(data)
                if asyncio.iscoroutine(result):
                    self._schedule(result, channel, entry.source)
            except Exception as e:
                logger.warning(
                    "Bus handler error (channel=%s, source=%s): %s", channel, entry.source, e
                )

    async def emit_async(self, channel: str, data: Any = None) -> None:
        """Like ``emit`` but awaits async handlers in order."""
        for entry in self._relevant(channel):
            try:
                result = entry.handler(data)
                if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Bus handler error (channel=%s, source=%s): %s", channel, entry.source, e
                )

    def _schedule(self, coro: Any, channel: str, source: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning(
                "Async handler skipped outside event loop (channel=%s, source=%s)", channel, source
            )
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Async bus handler failed: %s", task.exception())

    def has_handlers(self, channel: str) -> bool:
        return any(h.channel == channel for h in self._handlers)

    @property
    def handler_count(self) -> int:
        return len(self._handlers)
