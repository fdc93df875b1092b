"""Active surface: which tools are exposed right now, and routing of calls against it."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

from toolhub.connection.contract import ServerStatus, ToolCallResult
from toolhub.discovery.engine import DiscoveryEngine
from toolhub.discovery.models import Tool, ToolDirectory, resolve_reference
from toolhub.errors import NotExposedError, NotFoundError
from toolhub.toolsets.models import ToolsetDefinition, format_notes

logger = logging.getLogger(__name__)

SurfaceListener = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True)
class ActiveSurfaceState:
    """The equipped toolset, or None when the whole directory is exposed.

    In configuration mode no server tool is exposed at all.
    """

    toolset: ToolsetDefinition | None = None
    configuration_mode: bool = False

    @property
    def toolset_name(self) -> str | None:
        return self.toolset.name if self.toolset else None

    @property
    def equipped(self) -> bool:
        return self.toolset is not None


@dataclass(frozen=True)
class ExposedTool:
    """A tool as listed to protocol callers."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)
    tool: Tool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


def surface_tools(state: ActiveSurfaceState, directory: ToolDirectory) -> list[Tool]:
    """Tools the state selects from a directory, in toolset order. Unresolved references drop out."""
    if state.toolset is None:
        return directory.tools
    selected: list[Tool] = []
    seen: set[str] = set()
    for reference in state.toolset.tools:
        resolution = resolve_reference(directory, reference)
        if resolution.tool is None or resolution.tool.ref_id in seen:
            continue
        seen.add(resolution.tool.ref_id)
        selected.append(resolution.tool)
    return selected


class ActiveSurface:
    """Owns the ActiveSurfaceState. One writer at a time; readers never block.

    Each read captures the (state, directory) pair once so a concurrent equip
    or refresh cannot produce a mix of old and new.
    """

    def __init__(self, engine: DiscoveryEngine) -> None:
        self._engine = engine
        self._state = ActiveSurfaceState()
        self._lock = asyncio.Lock()
        self._listeners: list[SurfaceListener] = []
        engine.subscribe(self._on_directory_swapped)

    @property
    def state(self) -> ActiveSurfaceState:
        return self._state

    def snapshot(self) -> tuple[ActiveSurfaceState, ToolDirectory]:
        return self._state, self._engine.directory

    def subscribe(self, listener: SurfaceListener) -> None:
        """Listener gets the reason: 'toolset', 'mode' or 'directory' (after a refresh)."""
        self._listeners.append(listener)

    async def set_toolset(self, toolset: ToolsetDefinition | None) -> ActiveSurfaceState:
        async with self._lock:
            previous = self._state
            self._state = replace(previous, toolset=toolset)
            state = self._state
        if previous.toolset != toolset:
            logger.info(
                "surface: %s -> %s",
                previous.toolset_name or "<all>",
                state.toolset_name or "<all>",
            )
            await self._notify("toolset")
        return state

    async def set_configuration_mode(self, enabled: bool) -> ActiveSurfaceState:
        """Hide (or show again) every server tool. The equipped toolset is kept."""
        async with self._lock:
            previous = self._state
            self._state = replace(previous, configuration_mode=enabled)
            state = self._state
        if previous.configuration_mode != enabled:
            logger.info("surface: configuration mode %s", "on" if enabled else "off")
            await self._notify("mode")
        return state

    async def _on_directory_swapped(self, directory: ToolDirectory) -> None:
        await self._notify("directory")

    async def _notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(reason)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("surface: listener failed: %s", e)

    def list_tools(self) -> list[ExposedTool]:
        """Tools of the surface whose server is connected, under their exposed names."""
        state, directory = self.snapshot()
        if state.configuration_mode:
            return []
        exposed: list[ExposedTool] = []
        for tool in surface_tools(state, directory):
            if self._engine.server_status(tool.server_name) != ServerStatus.CONNECTED:
                continue
            description = tool.description or f"Tool from {tool.server_name} server"
            notes = state.toolset.notes_for(tool) if state.toolset else []
            if notes:
                description = f"{description}\n\n{format_notes(notes)}"
            exposed.append(
                ExposedTool(
                    name=directory.exposed_name(tool),
                    description=description,
                    input_schema=dict(tool.input_schema),
                    tool=tool,
                )
            )
        return exposed

    def find_exposed(self, name: str) -> Tool:
        """Map an exposed name, namespaced name or ref id to an exposed tool."""
        state, directory = self.snapshot()
        tool = directory.lookup(name)
        if tool is None:
            raise NotFoundError(f"Tool '{name}' not found")
        if state.configuration_mode:
            raise NotExposedError(
                f"Tool '{tool.namespaced_name}' is hidden in configuration mode; "
                "use exit-configuration-mode first"
            )
        if state.toolset is not None:
            if tool.ref_id not in {t.ref_id for t in surface_tools(state, directory)}:
                raise NotExposedError(
                    f"Tool '{tool.namespaced_name}' is not in the equipped toolset "
                    f"'{state.toolset_name}'"
                )
        return tool

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolCallResult:
        tool = self.find_exposed(name)
        return await self._engine.call_tool(tool, arguments or {})
