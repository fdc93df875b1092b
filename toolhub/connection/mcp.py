"""MCP connections built on the Agents SDK MCP clients (stdio and streamable-http)."""

import asyncio
import inspect
import logging
import os
from typing import Any

from agents.mcp import MCPServerStdio, MCPServerStreamableHttp

from toolhub.connection.contract import (
    ServerDescriptor,
    ServerStatus,
    StatusCallback,
    ToolCallResult,
    ToolSpec,
)
from toolhub.errors import ConnectivityError

logger = logging.getLogger(__name__)


def _build_server(descriptor: ServerDescriptor, session_timeout: float) -> Any:
    """Build MCPServerStdio or MCPServerStreamableHttp from a descriptor."""
    if descriptor.transport == "stdio":
        if not descriptor.command:
            raise ValueError(f"server {descriptor.name} (stdio) missing command")
        params: dict[str, Any] = {
            "command": descriptor.command,
            "args": list(descriptor.args),
        }
        if descriptor.env:
            # The child gets the hub's environment plus the descriptor overrides.
            params["env"] = {**os.environ, **descriptor.env}
        if descriptor.cwd:
            params["cwd"] = descriptor.cwd
        return MCPServerStdio(
            name=descriptor.name,
            params=params,
            cache_tools_list=False,
            client_session_timeout_seconds=session_timeout,
        )

    if descriptor.transport == "streamable-http":
        if not descriptor.url:
            raise ValueError(f"server {descriptor.name} (streamable-http) missing url")
        params = {"url": descriptor.url, "timeout": session_timeout}
        if descriptor.headers:
            params["headers"] = dict(descriptor.headers)
        return MCPServerStreamableHttp(
            name=descriptor.name,
            params=params,
            cache_tools_list=False,
            client_session_timeout_seconds=session_timeout,
        )

    raise ValueError(f"server {descriptor.name}: unsupported transport {descriptor.transport}")


def _content_to_dict(item: Any) -> Any:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json", exclude_none=True)
    return item


class McpConnection:
    """Connection over an agents.mcp server object. Tracks status and reports changes."""

    def __init__(
        self, descriptor: ServerDescriptor, server: Any, on_status: StatusCallback | None
    ) -> None:
        self._descriptor = descriptor
        self._server = server
        self._on_status = on_status
        self._status = ServerStatus.CONNECTING

    @property
    def status(self) -> ServerStatus:
        return self._status

    async def _set_status(self, status: ServerStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status is None:
            return
        try:
            result = self._on_status(self._descriptor.name, status)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception("status callback failed for %s: %s", self._descriptor.name, e)

    async def open(self) -> None:
        try:
            await self._server.connect()
        except asyncio.CancelledError:
            # A half-open stdio server still owns its child process.
            await self._release()
            raise
        except Exception as e:
            await self._release()
            await self._set_status(ServerStatus.ERROR)
            raise ConnectivityError(self._descriptor.name, f"connect failed: {e}") from e
        await self._set_status(ServerStatus.CONNECTED)

    async def list_tools(self) -> list[ToolSpec]:
        try:
            tools = await self._server.list_tools()
        except Exception as e:
            await self._set_status(ServerStatus.ERROR)
            raise ConnectivityError(self._descriptor.name, f"list_tools failed: {e}") from e
        return [
            ToolSpec(
                name=t.name,
                description=getattr(t, "description", None) or "",
                input_schema=dict(getattr(t, "inputSchema", None) or {}),
            )
            for t in tools
        ]

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        try:
            result = await self._server.call_tool(name, arguments)
        except Exception as e:
            await self._set_status(ServerStatus.ERROR)
            raise ConnectivityError(self._descriptor.name, f"call {name} failed: {e}") from e
        return ToolCallResult(
            content=[_content_to_dict(c) for c in getattr(result, "content", None) or []],
            is_error=bool(getattr(result, "isError", False)),
            structured_content=getattr(result, "structuredContent", None),
        )

    async def _release(self) -> None:
        try:
            await self._server.cleanup()
        except Exception as e:
            logger.debug("cleanup failed for %s: %s", self._descriptor.name, e)

    async def close(self) -> None:
        await self._release()
        await self._set_status(ServerStatus.DISCONNECTED)


class McpConnectionFactory:
    """ConnectionFactory that spawns stdio servers or dials streamable-http endpoints."""

    def __init__(self, session_timeout: float = 10.0) -> None:
        self._session_timeout = session_timeout

    async def connect(
        self, descriptor: ServerDescriptor, on_status: StatusCallback | None = None
    ) -> McpConnection:
        try:
            server = _build_server(descriptor, self._session_timeout)
        except ValueError as e:
            raise ConnectivityError(descriptor.name, str(e)) from e
        connection = McpConnection(descriptor, server, on_status)
        await connection.open()
        logger.info("connected to %s (%s)", descriptor.name, descriptor.transport)
        return connection
