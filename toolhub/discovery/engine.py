"""Discovery engine: fan out to every server, collect tool lists, publish one snapshot."""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Sequence

from toolhub.connection.contract import (
    Connection,
    ConnectionFactory,
    ServerDescriptor,
    ServerStatus,
    ToolCallResult,
)
from toolhub.discovery.models import (
    Resolution,
    ServerState,
    Tool,
    ToolDirectory,
    ToolReference,
    resolve_reference,
)
from toolhub.errors import ConnectivityError

logger = logging.getLogger(__name__)

DescriptorSource = Callable[[], Awaitable[list[ServerDescriptor]]]
DirectoryListener = Callable[[ToolDirectory], Awaitable[None] | None]


class DiscoveryEngine:
    """Aggregates tool catalogs of N servers into one namespaced ToolDirectory.

    Readers get whichever snapshot was last published; a refresh builds the
    next one off to the side and swaps the reference when every server has
    answered or timed out. Refreshes are serialized: a caller arriving while
    one is in flight waits for it and then runs its own.
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        *,
        max_concurrency: int = 8,
        server_timeout: float = 10.0,
        call_timeout: float = 60.0,
        refresh_on_reconnect: bool = True,
        descriptor_source: DescriptorSource | None = None,
    ) -> None:
        self._factory = connection_factory
        self._max_concurrency = max(1, int(max_concurrency))
        self._server_timeout = server_timeout
        self._call_timeout = call_timeout
        self._refresh_on_reconnect = refresh_on_reconnect
        self._descriptor_source = descriptor_source
        self._directory = ToolDirectory()
        self._states: dict[str, ServerState] = {}
        self._connections: dict[str, Connection] = {}
        self._refresh_lock = asyncio.Lock()
        self._listeners: list[DirectoryListener] = []
        self._reconnect_task: asyncio.Task[Any] | None = None
        self._refresh_requested = False

    def set_descriptor_source(self, source: DescriptorSource) -> None:
        """Inject the callable that recomputes the server set before each refresh."""
        self._descriptor_source = source

    def subscribe(self, listener: DirectoryListener) -> None:
        """Called with the new snapshot after every swap."""
        self._listeners.append(listener)

    @property
    def directory(self) -> ToolDirectory:
        return self._directory

    async def refresh(
        self, descriptors: Sequence[ServerDescriptor] | None = None
    ) -> ToolDirectory:
        """Run one discovery cycle and publish its snapshot. Never raises for backend failures."""
        async with self._refresh_lock:
            if descriptors is None:
                if self._descriptor_source is not None:
                    descriptors = await self._descriptor_source()
                else:
                    descriptors = [s.descriptor for s in self._states.values()]
            unique = self._dedupe(descriptors)
            await self._forget_removed({d.name for d in unique})

            started = time.perf_counter()
            semaphore = asyncio.Semaphore(self._max_concurrency)
            results = await asyncio.gather(
                *(self._discover_bounded(semaphore, d) for d in unique)
            )
            directory = ToolDirectory(
                {name: tools for name, tools in results if tools is not None}
            )
            self._directory = directory
            logger.info(
                "discovery: %d tool(s) from %d/%d server(s) in %d ms",
                len(directory),
                len(directory.servers),
                len(unique),
                int((time.perf_counter() - started) * 1000),
            )
        await self._notify(directory)
        return directory

    def _dedupe(self, descriptors: Sequence[ServerDescriptor]) -> list[ServerDescriptor]:
        seen: dict[str, ServerDescriptor] = {}
        for d in descriptors:
            if d.name in seen:
                logger.warning(
                    "discovery: server name %s already used by a %s server, skipping %s entry",
                    d.name,
                    seen[d.name].origin,
                    d.origin,
                )
                continue
            seen[d.name] = d
        return list(seen.values())

    async def _forget_removed(self, keep: set[str]) -> None:
        for name in [n for n in self._states if n not in keep]:
            await self._discard_connection(name)
            del self._states[name]
            logger.info("discovery: server %s removed", name)

    async def _discover_bounded(
        self, semaphore: asyncio.Semaphore, descriptor: ServerDescriptor
    ) -> tuple[str, list[Tool] | None]:
        async with semaphore:
            return await self._discover_one(descriptor)

    async def _discover_one(self, descriptor: ServerDescriptor) -> tuple[str, list[Tool] | None]:
        """Query one server. Failure or timeout means zero tools for this cycle."""
        name = descriptor.name
        state = self._states.get(name)
        if state is None or state.descriptor != descriptor:
            if state is not None:
                await self._discard_connection(name)
            state = ServerState(descriptor=descriptor)
            self._states[name] = state
        try:
            tools = await asyncio.wait_for(self._query(descriptor), self._server_timeout)
        except asyncio.TimeoutError:
            logger.warning("discovery: %s timed out after %.1fs", name, self._server_timeout)
            await self._discard_connection(name)
            state.status = ServerStatus.DISCONNECTED
            state.tool_count = 0
            state.last_error = f"timed out after {self._server_timeout}s"
            return name, None
        except Exception as e:
            logger.warning("discovery: %s unavailable: %s", name, e)
            await self._discard_connection(name)
            state.status = ServerStatus.ERROR
            state.tool_count = 0
            state.last_error = str(e)
            return name, None
        state.status = ServerStatus.CONNECTED
        state.tool_count = len(tools)
        state.last_error = None
        state.last_discovery = time.time()
        return name, tools

    async def _query(self, descriptor: ServerDescriptor) -> list[Tool]:
        connection = self._connections.get(descriptor.name)
        if connection is None or connection.status != ServerStatus.CONNECTED:
            if connection is not None:
                await self._discard_connection(descriptor.name)
            self._states[descriptor.name].status = ServerStatus.CONNECTING
            connection = await self._factory.connect(descriptor, self._on_status)
            self._connections[descriptor.name] = connection
        specs = await connection.list_tools()
        return [Tool.from_spec(descriptor.name, spec) for spec in specs]

    async def _discard_connection(self, name: str) -> None:
        connection = self._connections.pop(name, None)
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.debug("discovery: closing %s failed: %s", name, e)

    async def _on_status(self, server_name: str, status: ServerStatus) -> None:
        self.set_server_status(server_name, status)

    def set_server_status(self, server_name: str, status: ServerStatus) -> None:
        """Record a connectivity change reported by a connection."""
        state = self._states.get(server_name)
        if state is None or state.status == status:
            return
        previous = state.status
        state.status = status
        logger.info("discovery: %s %s -> %s", server_name, previous.value, status.value)
        # CONNECTING -> CONNECTED is a refresh doing its own connect, not a reconnect.
        if (
            status == ServerStatus.CONNECTED
            and previous in (ServerStatus.DISCONNECTED, ServerStatus.ERROR)
            and self._refresh_on_reconnect
        ):
            self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        """Queue a refresh. Requests arriving while one runs are folded into one more pass."""
        self._refresh_requested = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._refresh_until_settled()
            )
        except RuntimeError:
            self._refresh_requested = False
            logger.debug("discovery: no running loop, reconnect refresh skipped")

    async def _refresh_until_settled(self) -> None:
        while self._refresh_requested:
            self._refresh_requested = False
            await self.refresh()

    async def _notify(self, directory: ToolDirectory) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(directory)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("discovery: directory listener failed: %s", e)

    def lookup(self, ref: str) -> Tool | None:
        return self._directory.lookup(ref)

    def resolve(self, reference: ToolReference) -> Resolution:
        return resolve_reference(self._directory, reference)

    def list_by_server(self) -> dict[str, list[Tool]]:
        return {name: list(tools) for name, tools in self._directory.by_server.items()}

    def list_servers(self) -> list[ServerState]:
        return [self._states[name] for name in sorted(self._states)]

    def server_status(self, server_name: str) -> ServerStatus:
        state = self._states.get(server_name)
        return state.status if state else ServerStatus.DISCONNECTED

    def get_server_state(self, server_name: str) -> ServerState | None:
        return self._states.get(server_name)

    async def call_tool(self, tool: Tool, arguments: dict[str, Any]) -> ToolCallResult:
        """Invoke on the owning server. Connectivity problems come back as error results."""
        connection = self._connections.get(tool.server_name)
        if connection is None or self.server_status(tool.server_name) != ServerStatus.CONNECTED:
            return ToolCallResult.error(f"Server '{tool.server_name}' is not connected")
        try:
            return await asyncio.wait_for(
                connection.invoke(tool.name, arguments), self._call_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("discovery: call %s timed out", tool.namespaced_name)
            return ToolCallResult.error(
                f"Tool '{tool.namespaced_name}' timed out after {self._call_timeout}s"
            )
        except ConnectivityError as e:
            logger.warning("discovery: call %s failed: %s", tool.namespaced_name, e)
            self.set_server_status(tool.server_name, ServerStatus.ERROR)
            return ToolCallResult.error(str(e))

    async def run_background(self, interval: float) -> None:
        """Refresh every `interval` seconds until cancelled."""
        if interval <= 0:
            return
        try:
            while True:
                await asyncio.sleep(interval)
                await self.refresh()
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        for name in list(self._connections):
            await self._discard_connection(name)
        for state in self._states.values():
            state.status = ServerStatus.DISCONNECTED
