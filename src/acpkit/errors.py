"""Exception types raised by acpkit."""

from __future__ import annotations

from typing import Any


class AcpError(Exception):
    """Base class for all acpkit errors."""


class ConfigError(AcpError):
    """Invalid or incomplete configuration."""


class AgentStartError(AcpError):
    """The agent subprocess could not be launched or failed its handshake."""


class AgentNotRunningError(AcpError):
    """An operation needs a live agent connection but there is none."""


class ProtocolError(AcpError):
    """The agent answered a request with a JSON-RPC error."""

    def __init__(self, message: str, code: int = -32603, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data
