"""
Protocol adapter: turns ``session/update`` notifications into chat messages.

Updates arrive as ``acp.schema`` models, already validated by the SDK. One
adapter belongs to one conversation. It keeps two pieces of state:

- the *current streaming message id*, a merge-key shared by consecutive text
  chunks of one reply and regenerated whenever any non-text update arrives;
- the *active tool calls*, keyed by tool call id, so that later updates can be
  merged field by field into the record already shown.

The adapter never concatenates text itself; consumers merge messages that
share a ``msg_id``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Union

from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    AvailableCommandsUpdate,
    CurrentModeUpdate,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
    UserMessageChunk,
)

from acpkit.logging import get_logger
from acpkit.models import Message, ToolCall
from acpkit.utils import new_id, now_ms

logger = get_logger("protocol.adapter")

SessionUpdate = Union[
    UserMessageChunk,
    AgentMessageChunk,
    AgentThoughtChunk,
    ToolCallStart,
    ToolCallProgress,
    AgentPlanUpdate,
    AvailableCommandsUpdate,
    CurrentModeUpdate,
]

# Seconds a finished tool call stays in memory to absorb trailing updates
DEFAULT_TOOL_CALL_RETENTION = 60.0


def _wire_fields(update: Any) -> dict[str, Any]:
    """The fields an update actually carries, under their protocol names."""
    return update.model_dump(mode="json", by_alias=True, exclude_none=True)


def _chunk_text(update: AgentMessageChunk | AgentThoughtChunk) -> str:
    content = update.content
    return content.text if isinstance(content, TextContentBlock) else ""


class AcpAdapter:
    """Converts protocol updates for one conversation into ``Message`` objects."""

    def __init__(
        self,
        conversation_id: str,
        backend: str = "",
        tool_call_retention: float = DEFAULT_TOOL_CALL_RETENTION,
    ) -> None:
        self.conversation_id = conversation_id
        self.backend = backend
        self.tool_call_retention = tool_call_retention
        self._active_tool_calls: dict[str, Message] = {}
        self._eviction_handles: dict[str, asyncio.TimerHandle] = {}
        self._current_message_id: str = new_id()

    # ------------------------------------------------------------------
    # Streaming merge-key
    # ------------------------------------------------------------------

    def reset_message_tracking(self) -> None:
        """Start a new mergeable unit for the next text chunk."""
        self._current_message_id = new_id()

    @property
    def current_message_id(self) -> str:
        return self._current_message_id

    @property
    def active_tool_calls(self) -> dict[str, Message]:
        return dict(self._active_tool_calls)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def convert_session_update(self, session_id: str, update: SessionUpdate) -> list[Message]:
        """Convert one ``session/update`` notification into zero or more messages."""
        kind = getattr(update, "session_update", None)
        message: Message | None = None

        if kind == "agent_message_chunk":
            message = self._convert_message_chunk(update)

        elif kind == "agent_thought_chunk":
            message = self._convert_thought_chunk(update)
            self.reset_message_tracking()

        elif kind == "tool_call":
            message = self._create_or_update_tool_call(session_id, update)
            self.reset_message_tracking()

        elif kind == "tool_call_update":
            message = self._update_tool_call(session_id, update)
            self.reset_message_tracking()

        elif kind == "plan":
            message = self._convert_plan(session_id, update)
            self.reset_message_tracking()

        elif kind == "available_commands_update":
            # Command announcements are not shown
            self.reset_message_tracking()

        elif kind in ("user_message_chunk", "current_mode_update"):
            logger.debug("Ignoring %s update", kind)

        else:
            logger.warning("Unknown session update type: %r", kind)

        return [message] if message is not None else []

    # ------------------------------------------------------------------
    # Converters
    # ------------------------------------------------------------------

    def _convert_message_chunk(self, update: AgentMessageChunk) -> Message | None:
        text = _chunk_text(update)
        if not text:
            return None
        return Message(
            type="text",
            conversation_id=self.conversation_id,
            msg_id=self._current_message_id,
            position="left",
            content={"content": text},
        )

    def _convert_thought_chunk(self, update: AgentThoughtChunk) -> Message | None:
        text = _chunk_text(update)
        if not text:
            return None
        return Message(
            type="tips",
            conversation_id=self.conversation_id,
            position="center",
            content={"content": text, "type": "warning"},
        )

    def _create_or_update_tool_call(
        self, session_id: str, update: ToolCallStart
    ) -> Message | None:
        tool_call_id = update.tool_call_id
        if not tool_call_id:
            logger.warning("tool_call update without toolCallId dropped")
            return None

        fields = _wire_fields(update)
        existing = self._active_tool_calls.get(tool_call_id)
        if existing is not None:
            merged = self._tool_call_of(existing).merge(fields)
            message = self._tool_call_message(existing, merged, session_id)
        else:
            record = ToolCall.from_update(fields)
            message = Message(
                type="acp_tool_call",
                conversation_id=self.conversation_id,
                msg_id=tool_call_id,
                position="left",
                content={"session_id": session_id, "tool_call": record.to_dict()},
            )

        self._active_tool_calls[tool_call_id] = message
        self._maybe_schedule_eviction(tool_call_id, message)
        return message

    def _update_tool_call(self, session_id: str, update: ToolCallProgress) -> Message | None:
        tool_call_id = update.tool_call_id
        existing = self._active_tool_calls.get(tool_call_id)
        if existing is None:
            logger.warning("No existing tool call found for ID: %s", tool_call_id)
            return None

        # Only status, content and raw output are taken from explicit updates
        wire = _wire_fields(update)
        fields = {key: wire[key] for key in ("status", "content", "rawOutput") if key in wire}
        merged = self._tool_call_of(existing).merge(fields)
        message = self._tool_call_message(existing, merged, session_id)
        self._active_tool_calls[tool_call_id] = message
        self._maybe_schedule_eviction(tool_call_id, message)
        return message

    def _convert_plan(self, session_id: str, update: AgentPlanUpdate) -> Message | None:
        if not update.entries:
            return None
        return Message(
            type="plan",
            conversation_id=self.conversation_id,
            position="left",
            content={
                "session_id": session_id,
                "entries": [_wire_fields(entry) for entry in update.entries],
            },
        )

    # ------------------------------------------------------------------
    # Tool call helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _tool_call_of(message: Message) -> ToolCall:
        return ToolCall.from_dict(message.content["tool_call"])

    def _tool_call_message(self, existing: Message, record: ToolCall, session_id: str) -> Message:
        return Message(
            type="acp_tool_call",
            conversation_id=self.conversation_id,
            id=existing.id,
            msg_id=record.tool_call_id,
            position=existing.position,
            created_at=now_ms(),
            content={
                "session_id": session_id or existing.content.get("session_id", ""),
                "tool_call": record.to_dict(),
            },
        )

    def _maybe_schedule_eviction(self, tool_call_id: str, message: Message) -> None:
        status = message.content["tool_call"]["status"]
        if status not in ("completed", "failed", "canceled"):
            return
        if tool_call_id in self._eviction_handles:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Without a loop the record lives until close()
            return
        self._eviction_handles[tool_call_id] = loop.call_later(
            self.tool_call_retention, self._evict, tool_call_id
        )

    def _evict(self, tool_call_id: str) -> None:
        self._eviction_handles.pop(tool_call_id, None)
        self._active_tool_calls.pop(tool_call_id, None)

    def close(self) -> None:
        """Cancel pending evictions and forget all tool calls."""
        for handle in self._eviction_handles.values():
            handle.cancel()
        self._eviction_handles.clear()
        self._active_tool_calls.clear()
