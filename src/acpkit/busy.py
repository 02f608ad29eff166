"""
Advisory per-conversation busy flag.

A conversation is "processing" while a turn is in flight. Background work
(scheduled prompts) checks the flag before injecting anything into the same
conversation. The flag is advisory: it does not serialize sends.
"""

from __future__ import annotations

import asyncio
import time

from acpkit.logging import get_logger

logger = get_logger("busy")


class BusyGuard:
    """Tracks which conversations currently have a turn in flight."""

    def __init__(self) -> None:
        self._busy: dict[str, float] = {}  # conversation id -> since (monotonic)
        self._idle_events: dict[str, asyncio.Event] = {}

    def set_processing(self, conversation_id: str, processing: bool) -> None:
        if processing:
            self._busy.setdefault(conversation_id, time.monotonic())
            event = self._idle_events.get(conversation_id)
            if event is not None:
                event.clear()
        else:
            self._busy.pop(conversation_id, None)
            event = self._idle_events.get(conversation_id)
            if event is not None:
                event.set()

    def is_processing(self, conversation_id: str) -> bool:
        return conversation_id in self._busy

    def busy_for(self, conversation_id: str) -> float | None:
        """Seconds the conversation has been busy, or ``None`` if idle."""
        since = self._busy.get(conversation_id)
        return None if since is None else time.monotonic() - since

    async def wait_for_idle(self, conversation_id: str, timeout: float | None = None) -> bool:
        """Wait until the conversation is idle. Returns False on timeout."""
        if not self.is_processing(conversation_id):
            return True
        event = self._idle_events.setdefault(conversation_id, asyncio.Event())
        event.clear()
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("Conversation %s still busy after %ss", conversation_id, timeout)
            return False
        return True

    def clear(self) -> None:
        self._busy.clear()
        for event in self._idle_events.values():
            event.set()
        self._idle_events.clear()


busy_guard = BusyGuard()
