"""
Configuration models for acpkit.

Provides a configuration system that can be loaded from YAML/JSON files or
constructed programmatically. The configuration is consumed, not owned: it
describes per-engine launch overrides, disabled engines, custom engine
definitions and where the managed skill library lives.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from acpkit.logging import get_logger

logger = get_logger("config")

CONFIG_ENV_VAR = "ACPKIT_CONFIG"
SKILLS_DIR_ENV_VAR = "ACPKIT_SKILLS_DIR"


def get_default_skills_dir() -> Path:
    """Managed skill library root, from ``ACPKIT_SKILLS_DIR`` or ``~/.acpkit/skills``."""
    override = os.environ.get(SKILLS_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".acpkit" / "skills"


@dataclass
class BackendConfig:
    """Per-engine launch overrides."""

    cli_path: str | None = None  # Executable (may include trailing args)
    args: list[str] | None = None  # Replaces the built-in ACP args
    env: dict[str, str] = field(default_factory=dict)  # Environment overlay
    yolo_mode: bool = False  # Auto-approve permission requests


@dataclass
class CustomAgentConfig:
    """A user-defined engine, selected by ``backend="custom"`` plus its ``id``."""

    id: str
    name: str = ""
    default_cli_path: str = ""  # "command arg1 arg2" is split on whitespace
    acp_args: list[str] | None = None  # Takes precedence over parsed args
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class AgentsConfig:
    """
    Main configuration.

    Example YAML:
        skills_dir: ~/.acpkit/skills
        backends:
          claude:
            cli_path: /opt/bin/claude-code-acp
          gemini:
            yolo_mode: true
        disabled_backends:
          - qwen
        custom_agents:
          - id: 5f0c...
            name: Goose (dev)
            default_cli_path: goose acp
            env:
              GOOSE_PROVIDER: anthropic
        grace_period_seconds: 0.5
        hard_timeout_seconds: 1.5
    """

    skills_dir: Path = field(default_factory=get_default_skills_dir)
    backends: dict[str, BackendConfig] = field(default_factory=dict)
    disabled_backends: list[str] = field(default_factory=list)
    custom_agents: list[CustomAgentConfig] = field(default_factory=list)

    # Lifecycle timings (seconds)
    grace_period_seconds: float = 0.5  # Process-tree cleanup after stop()
    hard_timeout_seconds: float = 1.5  # Unconditional force kill
    tool_call_retention_seconds: float = 60.0  # Finished tool calls kept in memory
    request_timeout_seconds: float | None = None  # Handshake requests

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentsConfig:
        """Create config from a dictionary."""
        backends = {}
        for name, entry in (data.get("backends") or {}).items():
            entry = entry or {}
            backends[name] = BackendConfig(
                cli_path=entry.get("cli_path"),
                args=entry.get("args"),
                env=dict(entry.get("env") or {}),
                yolo_mode=bool(entry.get("yolo_mode", False)),
            )

        custom_agents = []
        for entry in data.get("custom_agents") or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("Ignoring custom agent without id: %r", entry)
                continue
            custom_agents.append(
                CustomAgentConfig(
                    id=str(entry["id"]),
                    name=entry.get("name", ""),
                    default_cli_path=entry.get("default_cli_path", ""),
                    acp_args=entry.get("acp_args"),
                    env=dict(entry.get("env") or {}),
                    enabled=entry.get("enabled", True),
                )
            )

        skills_dir = data.get("skills_dir")
        return cls(
            skills_dir=Path(skills_dir).expanduser() if skills_dir else get_default_skills_dir(),
            backends=backends,
            disabled_backends=list(data.get("disabled_backends") or []),
            custom_agents=custom_agents,
            grace_period_seconds=data.get("grace_period_seconds", 0.5),
            hard_timeout_seconds=data.get("hard_timeout_seconds", 1.5),
            tool_call_retention_seconds=data.get("tool_call_retention_seconds", 60.0),
            request_timeout_seconds=data.get("request_timeout_seconds"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> AgentsConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> AgentsConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return {
            "skills_dir": str(self.skills_dir),
            "backends": {
                name: {
                    "cli_path": entry.cli_path,
                    "args": entry.args,
                    "env": entry.env,
                    "yolo_mode": entry.yolo_mode,
                }
                for name, entry in self.backends.items()
            },
            "disabled_backends": self.disabled_backends,
            "custom_agents": [
                {
                    "id": agent.id,
                    "name": agent.name,
                    "default_cli_path": agent.default_cli_path,
                    "acp_args": agent.acp_args,
                    "env": agent.env,
                    "enabled": agent.enabled,
                }
                for agent in self.custom_agents
            ],
            "grace_period_seconds": self.grace_period_seconds,
            "hard_timeout_seconds": self.hard_timeout_seconds,
            "tool_call_retention_seconds": self.tool_call_retention_seconds,
            "request_timeout_seconds": self.request_timeout_seconds,
        }

    def get_backend_config(self, backend: str) -> BackendConfig:
        """Get overrides for a built-in backend, with defaults."""
        return self.backends.get(backend, BackendConfig())

    def get_custom_agent(self, agent_id: str) -> CustomAgentConfig | None:
        for agent in self.custom_agents:
            if agent.id == agent_id:
                return agent
        return None

    def is_disabled(self, backend: str) -> bool:
        return backend in self.disabled_backends


def config_search_paths() -> list[Path]:
    """Config file locations, highest priority first."""
    paths: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        paths.append(Path(explicit).expanduser())
    paths.append(Path.cwd() / "acpkit.yaml")
    paths.append(Path.home() / ".acpkit" / "config.yaml")
    return paths


def load_config(path: Path | None = None) -> AgentsConfig:
    """
    Load configuration from ``path`` or the first existing search path.

    A ``.env`` file in the working directory is loaded first so that engine
    environment overlays and ``ACPKIT_*`` variables can live there.
    """
    load_dotenv()
    candidates = [path] if path else config_search_paths()
    for candidate in candidates:
        if candidate is not None and candidate.is_file():
            logger.debug("Loading config from %s", candidate)
            return AgentsConfig.from_yaml(candidate)
    return AgentsConfig()
