"""
Conversion between bus events and persisted messages, and merge-key merging.

``transform_message`` decides which response events become chat history and
in what shape; ``compose_message`` collapses a new message into an existing
one with the same merge-key.
"""

from __future__ import annotations

from typing import Any

from acpkit.models import Message, ResponseEvent

# Message types whose latest content replaces the previous one on merge
_REPLACING_TYPES = ("acp_tool_call", "plan", "tool_group", "tips")


def transform_message(event: ResponseEvent) -> Message | None:
    """
    Turn a response event into a persistable message.

    Signals (``start``, ``finish``, ``acp_permission``), echoes and thoughts
    return ``None``.
    """
    if event.type == "content":
        return Message(
            type="text",
            conversation_id=event.conversation_id,
            msg_id=event.msg_id,
            position="left",
            content={"content": _text_of(event.data)},
        )
    if event.type == "error":
        return Message(
            type="tips",
            conversation_id=event.conversation_id,
            msg_id=event.msg_id,
            position="center",
            content={"content": _text_of(event.data), "type": "error"},
        )
    if event.type == "acp_tool_call":
        return Message(
            type="acp_tool_call",
            conversation_id=event.conversation_id,
            msg_id=event.msg_id,
            position="left",
            content=dict(event.data or {}),
        )
    if event.type == "plan":
        return Message(
            type="plan",
            conversation_id=event.conversation_id,
            msg_id=event.msg_id,
            position="left",
            content=dict(event.data or {}),
        )
    return None


def _text_of(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        return str(data.get("content", ""))
    return "" if data is None else str(data)


def message_to_event(message: Message) -> ResponseEvent:
    """Wrap an adapter message as a response event for the bus."""
    if message.type == "text":
        return ResponseEvent(
            type="content",
            conversation_id=message.conversation_id,
            msg_id=message.msg_id,
            data=message.content.get("content", ""),
        )
    if message.type == "tips":
        return ResponseEvent(
            type="thought",
            conversation_id=message.conversation_id,
            msg_id=message.msg_id,
            data=message.content.get("content", ""),
        )
    return ResponseEvent(
        type=message.type,  # type: ignore[arg-type]
        conversation_id=message.conversation_id,
        msg_id=message.msg_id,
        data=message.content,
    )


def compose_message(existing: Message | None, incoming: Message) -> Message:
    """
    Merge ``incoming`` into ``existing`` when they share a merge-key.

    Text appends in arrival order; tool calls, plans, tool groups and tips
    take the incoming content. The existing record's ``id``, ``position`` and
    ``created_at`` are kept so the entry stays where it was first shown.
    """
    if (
        existing is None
        or existing.msg_id != incoming.msg_id
        or existing.conversation_id != incoming.conversation_id
        or existing.type != incoming.type
    ):
        return incoming

    if incoming.type == "text":
        content = dict(existing.content)
        content["content"] = existing.content.get("content", "") + incoming.content.get(
            "content", ""
        )
    elif incoming.type in _REPLACING_TYPES:
        content = dict(incoming.content)
    else:
        content = {**existing.content, **incoming.content}

    return Message(
        type=existing.type,
        conversation_id=existing.conversation_id,
        content=content,
        id=existing.id,
        msg_id=existing.msg_id,
        position=existing.position,
        created_at=existing.created_at,
        status=incoming.status or existing.status,
    )
