"""ToolHub: wires store, servers, extensions, discovery, toolsets and the active surface."""

import asyncio
import logging
from pathlib import Path
from typing import Any

from toolhub.connection.contract import ConnectionFactory, ServerDescriptor, ToolCallResult
from toolhub.connection.mcp import McpConnectionFactory
from toolhub.discovery.engine import DiscoveryEngine
from toolhub.discovery.models import ToolDirectory
from toolhub.discovery.servers import ServerConfigStore, load_configured_servers
from toolhub.errors import NotExposedError
from toolhub.extensions.manager import ExtensionManager
from toolhub.settings import get_setting
from toolhub.store import RecordStore, SqliteRecordStore
from toolhub.surface.controller import ActiveSurface, ExposedTool, SurfaceListener
from toolhub.surface.management import (
    ManagementTool,
    call_management_tool,
    make_management_tools,
)
from toolhub.toolsets.manager import ToolsetManager

logger = logging.getLogger(__name__)


class ToolHub:
    """One endpoint in front of many servers, with a switchable tool surface."""

    def __init__(
        self,
        settings: dict[str, Any],
        project_root: Path,
        *,
        store: RecordStore | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._settings = settings
        self._project_root = project_root
        if store is None:
            db_path = Path(get_setting(settings, "store.db_path", "data/toolhub.db"))
            store = SqliteRecordStore(
                db_path if db_path.is_absolute() else project_root / db_path,
                busy_timeout=int(get_setting(settings, "store.busy_timeout", 5000)),
            )
        self.store = store
        self.servers = ServerConfigStore(store)
        self.extensions = ExtensionManager.from_settings(store, settings, project_root)
        self.engine = DiscoveryEngine(
            connection_factory
            or McpConnectionFactory(float(get_setting(settings, "discovery.server_timeout", 10.0))),
            max_concurrency=int(get_setting(settings, "discovery.max_concurrency", 8)),
            server_timeout=float(get_setting(settings, "discovery.server_timeout", 10.0)),
            call_timeout=float(get_setting(settings, "discovery.call_timeout", 60.0)),
            refresh_on_reconnect=bool(get_setting(settings, "discovery.refresh_on_reconnect", True)),
            descriptor_source=self._descriptors_for_refresh,
        )
        self.surface = ActiveSurface(self.engine)
        self.toolsets = ToolsetManager(
            store, self.engine, self.surface, disabled_servers=self.extensions.disabled_names
        )
        self._management: dict[str, ManagementTool] = {
            t.name: t for t in make_management_tools(self.toolsets, self.surface)
        }
        self._background: asyncio.Task[None] | None = None

    async def server_descriptors(self) -> list[ServerDescriptor]:
        """Configured servers first, then enabled and valid extensions. Configured wins a name clash."""
        configured = await load_configured_servers(self._settings, self.store)
        names = {d.name for d in configured}
        extension_descriptors: list[ServerDescriptor] = []
        for descriptor in self.extensions.server_descriptors():
            if descriptor.name in names:
                logger.warning(
                    "hub: extension %s shadowed by configured server of the same name",
                    descriptor.name,
                )
                continue
            extension_descriptors.append(descriptor)
        return configured + extension_descriptors

    async def _descriptors_for_refresh(self) -> list[ServerDescriptor]:
        await self.extensions.refresh_extensions()
        return await self.server_descriptors()

    def subscribe(self, listener: SurfaceListener) -> None:
        """Notified whenever the exposed tool list may have changed."""
        self.surface.subscribe(listener)

    async def start(self) -> None:
        await self.extensions.initialize()
        await self.engine.refresh()
        if get_setting(self._settings, "toolsets.restore_last_equipped", True):
            if await self.toolsets.restore_last_equipped():
                logger.info("hub: restored toolset %s", self.surface.state.toolset_name)
        interval = float(get_setting(self._settings, "discovery.refresh_interval", 0) or 0)
        if interval > 0:
            self._background = asyncio.create_task(self.engine.run_background(interval))
        logger.info("hub: started with %d tool(s)", len(self.engine.directory))

    async def refresh(self) -> ToolDirectory:
        """Pick up extension changes, then rediscover every server."""
        return await self.engine.refresh()

    def list_tools(self) -> list[ExposedTool]:
        """Management tools for the current mode, then the server tools of the surface."""
        configuring = self.surface.state.configuration_mode
        management = [t.to_exposed() for t in self._management.values() if t.visible(configuring)]
        return management + self.surface.list_tools()

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolCallResult:
        management = self._management.get(name)
        if management is not None:
            if not management.visible(self.surface.state.configuration_mode):
                raise NotExposedError(f"Tool '{name}' is not available in the current mode")
            return await call_management_tool(management, arguments)
        return await self.surface.call_tool(name, arguments)

    async def stop(self) -> None:
        if self._background is not None:
            self._background.cancel()
            try:
                await self._background
            except asyncio.CancelledError:
                pass
            self._background = None
        await self.engine.close()
        await self.store.close()
        logger.info("hub: stopped")
