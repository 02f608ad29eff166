"""Agent Client Protocol plumbing: the SDK-backed connection and the message adapter."""

from acpkit.protocol.adapter import AcpAdapter, SessionUpdate
from acpkit.protocol.connection import AcpConnection, WorkspaceClient

__all__ = [
    "AcpAdapter",
    "AcpConnection",
    "SessionUpdate",
    "WorkspaceClient",
]
