"""
acpkit - drive external coding agents over the Agent Client Protocol.

The package launches ACP-speaking CLIs (Claude Code, Gemini CLI, Codex, ...)
as subprocesses, normalizes their streamed session updates into mergeable
chat messages, and keeps each workspace's engine skill directory in sync
with a managed skill library.

Example:
    from acpkit import AcpAgentManager, Conversation, ResponseBus, load_config

    bus = ResponseBus()
    bus.on("response_stream", lambda event: print(event.type, event.data))

    manager = AcpAgentManager(
        Conversation(id="c1", workspace="/path/to/project", backend="claude"),
        config=load_config(),
        bus=bus,
    )
    await manager.send_message("Summarize the README", msg_id="m1")
"""

from acpkit.agent import AcpAgent
from acpkit.backends import (
    BACKENDS,
    BackendDefinition,
    LaunchSpec,
    available_backends,
    detect_backends,
    resolve_launch,
)
from acpkit.bus import CONFIRMATION_ADD, CONFIRMATION_REMOVE, RESPONSE_STREAM, ResponseBus
from acpkit.busy import BusyGuard, busy_guard
from acpkit.config import AgentsConfig, BackendConfig, CustomAgentConfig, load_config
from acpkit.directives import DirectiveContext, DirectiveRegistry, parse_directives
from acpkit.errors import (
    AcpError,
    AgentNotRunningError,
    AgentStartError,
    ConfigError,
    ProtocolError,
)
from acpkit.manager import AcpAgentManager, AgentState
from acpkit.messages import compose_message, transform_message
from acpkit.models import (
    Confirmation,
    Conversation,
    Message,
    PermissionOption,
    PermissionRequest,
    ResponseEvent,
    ToolCall,
    ToolCallStatus,
)
from acpkit.protocol import AcpAdapter, AcpConnection
from acpkit.skills import (
    DistributionResult,
    ManagedSkill,
    SkillDistributor,
    SkillLibrary,
    detect_global_skills,
)
from acpkit.storage import SqliteConversationStore

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Session management
    "AcpAgentManager",
    "AgentState",
    "AcpAgent",
    # Protocol
    "AcpAdapter",
    "AcpConnection",
    # Models
    "Conversation",
    "Message",
    "ResponseEvent",
    "ToolCall",
    "ToolCallStatus",
    "PermissionOption",
    "PermissionRequest",
    "Confirmation",
    "transform_message",
    "compose_message",
    # Backends
    "BACKENDS",
    "BackendDefinition",
    "LaunchSpec",
    "resolve_launch",
    "detect_backends",
    "available_backends",
    # Config
    "AgentsConfig",
    "BackendConfig",
    "CustomAgentConfig",
    "load_config",
    # Bus
    "ResponseBus",
    "RESPONSE_STREAM",
    "CONFIRMATION_ADD",
    "CONFIRMATION_REMOVE",
    # Busy flag
    "BusyGuard",
    "busy_guard",
    # Directives
    "DirectiveRegistry",
    "DirectiveContext",
    "parse_directives",
    # Skills
    "SkillLibrary",
    "SkillDistributor",
    "ManagedSkill",
    "DistributionResult",
    "detect_global_skills",
    # Storage
    "SqliteConversationStore",
    # Errors
    "AcpError",
    "ConfigError",
    "AgentStartError",
    "AgentNotRunningError",
    "ProtocolError",
]
