"""Connection collaborator: descriptors, protocols and the MCP-backed factory."""

from toolhub.connection.contract import (
    Connection,
    ConnectionFactory,
    ServerDescriptor,
    ServerStatus,
    StatusCallback,
    ToolCallResult,
    ToolSpec,
)

__all__ = [
    "Connection",
    "ConnectionFactory",
    "ServerDescriptor",
    "ServerStatus",
    "StatusCallback",
    "ToolCallResult",
    "ToolSpec",
]
