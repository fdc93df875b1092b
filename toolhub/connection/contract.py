"""Connection collaborator: server descriptors, tool specs and the connection protocols.

Discovery only depends on these protocols. How a downstream server is
spawned or reached is up to the ConnectionFactory implementation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Protocol, runtime_checkable


class ServerStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class ServerDescriptor:
    """Identity and connection parameters of one downstream server."""

    name: str
    transport: Literal["stdio", "streamable-http"] = "stdio"
    command: str = ""
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    origin: Literal["configured", "extension"] = "configured"


@dataclass(frozen=True)
class ToolSpec:
    """A tool as reported by a server's list_tools."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallResult:
    """Outcome of a tool invocation. Failures are results, not exceptions."""

    content: list[Any] = field(default_factory=list)
    is_error: bool = False
    structured_content: Any = None

    @classmethod
    def error(cls, message: str) -> "ToolCallResult":
        return cls(content=[{"type": "text", "text": message}], is_error=True)


StatusCallback = Callable[[str, ServerStatus], Awaitable[None] | None]


@runtime_checkable
class Connection(Protocol):
    """Live connection to one downstream server."""

    @property
    def status(self) -> ServerStatus: ...

    async def list_tools(self) -> list[ToolSpec]: ...

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolCallResult: ...

    async def close(self) -> None: ...


@runtime_checkable
class ConnectionFactory(Protocol):
    """Given a descriptor, return a live connection. Raises on failure."""

    async def connect(
        self, descriptor: ServerDescriptor, on_status: StatusCallback | None = None
    ) -> Connection: ...
