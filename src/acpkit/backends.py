"""
Built-in engine catalog and launch resolution.

Each engine is an external CLI that speaks ACP over stdio. The catalog holds
its default command, the arguments that switch it into ACP mode and the
engine family whose workspace skill directory it scans.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field

from acpkit.config import AgentsConfig
from acpkit.errors import ConfigError
from acpkit.logging import get_logger
from acpkit.models import Conversation

logger = get_logger("backends")

CUSTOM_BACKEND = "custom"


@dataclass(frozen=True)
class BackendDefinition:
    """A built-in engine."""

    id: str
    name: str
    cli_command: str | None = None
    acp_args: tuple[str, ...] = ()
    skill_engine: str | None = None  # Engine family whose skill directory it scans
    supports_yolo: bool = True


def get_default_backends() -> dict[str, BackendDefinition]:
    """Return the built-in engine definitions keyed by id."""
    backends = [
        BackendDefinition(
            id="claude",
            name="Claude Code",
            cli_command="claude-code-acp",
            skill_engine="claude",
        ),
        BackendDefinition(
            id="gemini",
            name="Gemini CLI",
            cli_command="gemini",
            acp_args=("--experimental-acp",),
            skill_engine="gemini",
        ),
        BackendDefinition(
            id="codex",
            name="Codex",
            cli_command="codex-acp",
            skill_engine="codex",
        ),
        BackendDefinition(
            id="qwen",
            name="Qwen Code",
            cli_command="qwen",
            acp_args=("--experimental-acp",),
        ),
        BackendDefinition(id="goose", name="Goose", cli_command="goose", acp_args=("acp",)),
        BackendDefinition(
            id="auggie", name="Augment Code", cli_command="auggie", acp_args=("--acp",)
        ),
        BackendDefinition(
            id="opencode", name="OpenCode", cli_command="opencode", acp_args=("acp",)
        ),
        # Custom engines share Claude's discovery directory
        BackendDefinition(id=CUSTOM_BACKEND, name="Custom Agent", skill_engine="claude"),
    ]
    return {b.id: b for b in backends}


BACKENDS = get_default_backends()


def get_backend(backend: str) -> BackendDefinition | None:
    return BACKENDS.get(backend)


def skill_engine_for(backend: str) -> str | None:
    """Engine family whose skill discovery directory ``backend`` reads, if any."""
    definition = BACKENDS.get(backend)
    return definition.skill_engine if definition else None


@dataclass
class LaunchSpec:
    """Everything needed to spawn one engine process."""

    backend: str
    cli_path: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    yolo_mode: bool = False


def split_command(command: str) -> tuple[str, list[str]]:
    """Split ``"goose acp --flag"`` into ``("goose", ["acp", "--flag"])``."""
    parts = command.strip().split()
    if not parts:
        return "", []
    return parts[0], parts[1:]


def resolve_launch(conversation: Conversation, config: AgentsConfig | None = None) -> LaunchSpec:
    """
    Work out the command line for a conversation's engine.

    Built-in engines: an explicit ``cli_path`` on the conversation wins, then
    the configured ``cli_path``, then the catalog default. Arguments come from
    the configured ``args`` or the catalog's ACP arguments. Yolo mode set on
    the conversation wins over the configured value.

    Custom engines: the command comes from the custom agent definition, where
    ``default_cli_path`` may hold "command plus arguments". Configured
    ``acp_args`` take precedence over the parsed trailing tokens. Arguments
    and environment set on the conversation are applied last.

    Raises:
        ConfigError: the engine is unknown, the custom agent cannot be found,
            or no executable could be determined.
    """
    config = config or AgentsConfig()
    backend = conversation.backend

    if backend == CUSTOM_BACKEND:
        if not conversation.custom_agent_id:
            raise ConfigError("Custom backend specified but custom_agent_id is missing")
        agent = config.get_custom_agent(conversation.custom_agent_id)
        if agent is None:
            raise ConfigError(f"Custom agent not found: {conversation.custom_agent_id}")
        cli_path, parsed_args = split_command(agent.default_cli_path)
        args = list(agent.acp_args) if agent.acp_args is not None else parsed_args
        env = dict(agent.env)
        if conversation.custom_args is not None:
            args = list(conversation.custom_args)
        if conversation.custom_env:
            env.update(conversation.custom_env)
        if not cli_path:
            raise ConfigError(f"Custom agent {agent.id} has no command")
        return LaunchSpec(
            backend=backend,
            cli_path=cli_path,
            args=args,
            env=env,
            yolo_mode=bool(conversation.yolo_mode),
        )

    definition = BACKENDS.get(backend)
    if definition is None:
        raise ConfigError(f"Unknown backend: {backend}")

    backend_config = config.get_backend_config(backend)
    cli_path = conversation.cli_path or backend_config.cli_path or definition.cli_command
    if not cli_path:
        raise ConfigError(f"No CLI command for backend: {backend}")

    if backend_config.args is not None:
        args = list(backend_config.args)
    else:
        args = list(definition.acp_args)
    # A configured cli_path may carry its own arguments
    command, extra_args = split_command(cli_path)
    if extra_args:
        cli_path = command
        args = extra_args + args

    yolo_mode = conversation.yolo_mode
    if yolo_mode is None:
        yolo_mode = backend_config.yolo_mode

    return LaunchSpec(
        backend=backend,
        cli_path=cli_path,
        args=args,
        env=dict(backend_config.env),
        yolo_mode=bool(yolo_mode),
    )


def detect_backends() -> list[str]:
    """Ids of built-in engines whose CLI is on ``PATH``."""
    detected = []
    for definition in BACKENDS.values():
        if definition.cli_command and shutil.which(definition.cli_command):
            detected.append(definition.id)
    logger.debug("Detected backends: %s", detected)
    return detected


def available_backends(detected: list[str], config: AgentsConfig | None = None) -> list[str]:
    """
    Filter detected engines by configuration.

    Disabled engines are dropped. ``custom`` is offered when at least one
    enabled custom agent is configured.
    """
    config = config or AgentsConfig()
    available = [b for b in detected if not config.is_disabled(b)]
    has_custom = any(agent.enabled for agent in config.custom_agents)
    if has_custom and CUSTOM_BACKEND not in available and not config.is_disabled(CUSTOM_BACKEND):
        available.append(CUSTOM_BACKEND)
    return available
