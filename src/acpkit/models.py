"""
Core data models.

These models describe conversations, the normalized chat messages produced
from agent protocol events, tool calls and permission requests. They are plain
dataclasses so that storage and the presentation bus can serialize them with
``dataclasses.asdict``. Permission requests wrap the protocol SDK's own
schema models instead of copying them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

from acp.schema import PermissionOption, ToolCallUpdate

from acpkit.utils import new_id, now_ms

Position = Literal["left", "right", "center"]

MessageType = Literal["text", "tips", "acp_tool_call", "tool_group", "plan"]

ResponseEventType = Literal[
    "content",
    "thought",
    "acp_tool_call",
    "plan",
    "system",
    "user_content",
    "error",
    "start",
    "finish",
    "acp_permission",
]


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass
class Conversation:
    """A chat conversation driven by one external agent."""

    id: str
    workspace: str = ""
    backend: str = "claude"
    additional_dirs: list[str] | None = None
    cli_path: str | None = None  # Explicit executable override
    custom_agent_id: str | None = None  # Required when backend == "custom"
    custom_args: list[str] | None = None
    custom_env: dict[str, str] | None = None
    preset_context: str | None = None  # Rules injected into the first message
    enabled_skills: list[str] | None = None  # None or [] means all skills
    yolo_mode: bool | None = None  # Auto-approve permission requests
    acp_session_id: str | None = None
    acp_session_updated_at: int | None = None
    type: str = "acp"
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Conversation:
        """Build a conversation from a storage record (``id``, ``type``, ``extra``)."""
        extra = dict(record.get("extra") or {})
        return cls(
            id=record["id"],
            workspace=extra.get("workspace", ""),
            backend=extra.get("backend", "claude"),
            additional_dirs=extra.get("additionalDirs"),
            cli_path=extra.get("cliPath"),
            custom_agent_id=extra.get("customAgentId"),
            custom_args=extra.get("customArgs"),
            custom_env=extra.get("customEnv"),
            preset_context=extra.get("presetContext"),
            enabled_skills=extra.get("enabledSkills"),
            yolo_mode=extra.get("yoloMode"),
            acp_session_id=extra.get("acpSessionId"),
            acp_session_updated_at=extra.get("acpSessionUpdatedAt"),
            type=record.get("type", "acp"),
            extra=extra,
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """
    A normalized chat message.

    ``msg_id`` is the merge-key: consumers collapse messages sharing the same
    ``msg_id`` and ``conversation_id`` into one evolving entry, in arrival
    order.
    """

    type: MessageType
    conversation_id: str
    content: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    msg_id: str = field(default_factory=new_id)
    position: Position = "left"
    created_at: int = field(default_factory=now_ms)
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            type=data["type"],
            conversation_id=data["conversation_id"],
            content=dict(data.get("content") or {}),
            id=data.get("id") or new_id(),
            msg_id=data.get("msg_id") or new_id(),
            position=data.get("position", "left"),
            created_at=data.get("created_at") or now_ms(),
            status=data.get("status"),
        )


@dataclass
class ResponseEvent:
    """A unit emitted on the presentation bus's response stream."""

    type: ResponseEventType
    conversation_id: str
    msg_id: str = field(default_factory=new_id)
    data: Any = None


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    """Lifecycle of a tool call."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED, ToolCallStatus.CANCELED)

    @property
    def rank(self) -> int:
        if self is ToolCallStatus.PENDING:
            return 0
        if self is ToolCallStatus.IN_PROGRESS:
            return 1
        return 2

    def can_transition_to(self, new: ToolCallStatus) -> bool:
        """Whether moving from this status to ``new`` keeps the lifecycle monotonic."""
        if self is new:
            return True
        if self.is_terminal:
            return False
        return new.rank > self.rank

    @classmethod
    def parse(cls, value: Any) -> ToolCallStatus | None:
        if isinstance(value, cls):
            return value
        if value == "cancelled":
            return cls.CANCELED
        try:
            return cls(value)
        except ValueError:
            return None


TOOL_KINDS = ("edit", "read", "execute", "other")

# Fields a tool_call / tool_call_update may carry, protocol name -> attribute
_TOOL_CALL_FIELDS = {
    "kind": "kind",
    "title": "title",
    "rawInput": "raw_input",
    "content": "content",
    "status": "status",
    "rawOutput": "raw_output",
    "locations": "locations",
}


@dataclass
class ToolCall:
    """A tool invocation reported by an agent, tracked for its whole lifetime."""

    tool_call_id: str
    kind: str = "other"
    title: str = ""
    raw_input: Any = None
    content: list[Any] = field(default_factory=list)
    status: ToolCallStatus = ToolCallStatus.PENDING
    raw_output: Any = None
    locations: list[Any] = field(default_factory=list)

    @classmethod
    def from_update(cls, update: dict[str, Any]) -> ToolCall:
        """Create a record from the first ``tool_call`` update for an id."""
        call = cls(tool_call_id=update["toolCallId"])
        return call.merge(update)

    def merge(self, update: dict[str, Any]) -> ToolCall:
        """
        Return a copy with the fields present in ``update`` applied.

        Absent keys never clobber prior values. A status that would move the
        lifecycle backwards is ignored while the rest of the update applies.
        """
        values = asdict(self)
        values["status"] = self.status
        for wire_name, attr in _TOOL_CALL_FIELDS.items():
            if wire_name not in update or update[wire_name] is None:
                continue
            value = update[wire_name]
            if attr == "status":
                status = ToolCallStatus.parse(value)
                if status is None or not self.status.can_transition_to(status):
                    continue
                value = status
            elif attr == "kind" and value not in TOOL_KINDS:
                value = "other"
            values[attr] = value
        return ToolCall(**values)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        values = dict(data)
        values["status"] = ToolCallStatus.parse(values.get("status")) or ToolCallStatus.PENDING
        return cls(**values)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@dataclass
class PermissionRequest:
    """
    A mid-stream request requiring a caller decision.

    ``tool_call`` and ``options`` are the protocol's own models; an option's
    ``kind`` is one of allow_once, allow_always, reject_once, reject_always.
    """

    session_id: str
    tool_call: ToolCallUpdate
    options: list[PermissionOption] = field(default_factory=list)

    @property
    def call_id(self) -> str:
        return self.tool_call.tool_call_id or ""

    @property
    def title(self) -> str:
        return self.tool_call.title or ""

    @property
    def description(self) -> str | None:
        raw_input = self.tool_call.raw_input
        if isinstance(raw_input, dict):
            return raw_input.get("description")
        return None


@dataclass
class ConfirmationOption:
    label: str
    value: PermissionOption


@dataclass
class Confirmation:
    """A pending permission request surfaced to the caller."""

    id: str
    call_id: str
    title: str
    description: str
    action: str = "command"
    options: list[ConfirmationOption] = field(default_factory=list)
