"""Shared fixtures: an in-process fake of the connection collaborator."""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any

import pytest

from toolhub.connection.contract import (
    ServerDescriptor,
    ServerStatus,
    StatusCallback,
    ToolCallResult,
    ToolSpec,
)
from toolhub.errors import ConnectivityError
from toolhub.store import MemoryRecordStore


def spec(name: str, schema: dict[str, Any] | None = None, description: str = "") -> ToolSpec:
    return ToolSpec(
        name=name,
        description=description or f"{name} tool",
        input_schema=schema if schema is not None else {"type": "object", "properties": {}},
    )


def descriptor(name: str, origin: str = "configured") -> ServerDescriptor:
    return ServerDescriptor(name=name, command="fake", args=(name,), origin=origin)


@dataclass
class FakeBackend:
    """Behaviour of one fake downstream server."""

    tools: list[ToolSpec] = field(default_factory=list)
    refuse: bool = False
    delay: float = 0.0
    fail_calls: bool = False
    list_calls: int = 0
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)


class FakeConnection:
    def __init__(self, name: str, backend: FakeBackend, on_status: StatusCallback | None) -> None:
        self.name = name
        self.backend = backend
        self._on_status = on_status
        self._status = ServerStatus.CONNECTED
        self.closed = False

    @property
    def status(self) -> ServerStatus:
        return self._status

    async def _report(self, status: ServerStatus) -> None:
        self._status = status
        if self._on_status is not None:
            result = self._on_status(self.name, status)
            if inspect.isawaitable(result):
                await result

    async def drop(self) -> None:
        """Simulate the server going away."""
        await self._report(ServerStatus.DISCONNECTED)

    async def come_back(self) -> None:
        await self._report(ServerStatus.CONNECTED)

    async def list_tools(self) -> list[ToolSpec]:
        self.backend.list_calls += 1
        if self.backend.delay:
            await asyncio.sleep(self.backend.delay)
        if self.backend.refuse:
            raise ConnectivityError(self.name, "list_tools refused")
        return list(self.backend.tools)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        self.backend.calls.append((name, arguments))
        if self.backend.fail_calls:
            raise ConnectivityError(self.name, f"call {name} failed")
        return ToolCallResult(content=[{"type": "text", "text": f"{self.name}.{name} ok"}])

    async def close(self) -> None:
        self.closed = True
        self._status = ServerStatus.DISCONNECTED


class FakeConnectionFactory:
    """ConnectionFactory over a dict of FakeBackends keyed by server name."""

    def __init__(self, backends: dict[str, FakeBackend] | None = None) -> None:
        self.backends: dict[str, FakeBackend] = backends or {}
        self.connections: dict[str, FakeConnection] = {}
        self.connect_count = 0
        self.active = 0
        self.peak_active = 0

    def add(self, name: str, *tools: ToolSpec, **kwargs: Any) -> FakeBackend:
        backend = FakeBackend(tools=list(tools), **kwargs)
        self.backends[name] = backend
        return backend

    async def connect(
        self, descriptor: ServerDescriptor, on_status: StatusCallback | None = None
    ) -> FakeConnection:
        self.connect_count += 1
        backend = self.backends.get(descriptor.name)
        if backend is None:
            raise ConnectivityError(descriptor.name, "no such server")
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if backend.delay:
                await asyncio.sleep(backend.delay)
        finally:
            self.active -= 1
        if backend.refuse:
            raise ConnectivityError(descriptor.name, "connection refused")
        connection = FakeConnection(descriptor.name, backend, on_status)
        self.connections[descriptor.name] = connection
        return connection


@pytest.fixture
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


GIT_TOOLS = [
    spec("status", {"type": "object", "properties": {"path": {"type": "string"}}}),
    spec("diff", {"type": "object", "properties": {"staged": {"type": "boolean"}}}),
    spec("log", {"type": "object", "properties": {"limit": {"type": "integer"}}}),
]
LINEAR_TOOLS = [
    spec("create_issue", {"type": "object", "properties": {"title": {"type": "string"}}}),
    spec("list_issues", {"type": "object", "properties": {}}),
]


@pytest.fixture
def git_linear(factory: FakeConnectionFactory) -> FakeConnectionFactory:
    factory.add("git", *GIT_TOOLS)
    factory.add("linear", *LINEAR_TOOLS)
    return factory
