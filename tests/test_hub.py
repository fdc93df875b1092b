"""Tests for ToolHub wiring: configured servers, extensions, restore and routing."""

import json
from pathlib import Path

import pytest

from conftest import LINEAR_TOOLS, FakeConnectionFactory, spec
from toolhub.errors import NotExposedError, NotFoundError
from toolhub.hub import ToolHub
from toolhub.settings import get_default_settings
from toolhub.store import MemoryRecordStore


def _settings(tmp_path: Path) -> dict:
    settings = get_default_settings()
    settings["extensions"]["dir"] = str(tmp_path / "extensions")
    settings["extensions"]["installed_dir"] = str(tmp_path / "extensions" / "installed")
    settings["discovery"]["refresh_interval"] = 0
    settings["servers"] = [
        {"alias": "git", "command": "uvx", "args": ["mcp-server-git"]},
        {"alias": "linear", "command": "linear-mcp"},
    ]
    return settings


def _write_extension(tmp_path: Path, name: str) -> None:
    root = tmp_path / "extensions" / name
    root.mkdir(parents=True)
    (root / "manifest.json").write_text(
        json.dumps(
            {
                "name": name,
                "server": {
                    "entry_point": "server.py",
                    "mcp_config": {"command": "python", "args": ["server.py"]},
                },
            }
        ),
        encoding="utf-8",
    )
    (root / "server.py").write_text("", encoding="utf-8")


@pytest.fixture
def hub_factory(git_linear: FakeConnectionFactory) -> FakeConnectionFactory:
    git_linear.add("weather", spec("forecast"))
    return git_linear


@pytest.fixture
async def hub(tmp_path: Path, hub_factory: FakeConnectionFactory, store: MemoryRecordStore) -> ToolHub:
    _write_extension(tmp_path, "weather")
    hub = ToolHub(_settings(tmp_path), tmp_path, store=store, connection_factory=hub_factory)
    await hub.start()
    yield hub
    await hub.stop()


class TestToolHub:
    """End-to-end wiring with fake connections."""

    @pytest.mark.asyncio
    async def test_start_discovers_configured_and_extension_servers(self, hub: ToolHub) -> None:
        names = [t.name for t in hub.list_tools()]
        assert "build-toolset" in names
        assert "git_status" in names
        assert "weather_forecast" in names
        assert hub.engine.get_server_state("weather").descriptor.origin == "extension"

    @pytest.mark.asyncio
    async def test_configured_server_wins_name_clash(
        self, tmp_path: Path, hub_factory: FakeConnectionFactory, store: MemoryRecordStore
    ) -> None:
        _write_extension(tmp_path, "linear")
        hub = ToolHub(_settings(tmp_path), tmp_path, store=store, connection_factory=hub_factory)
        await hub.start()
        try:
            state = hub.engine.get_server_state("linear")
            assert state.descriptor.origin == "configured"
            assert state.tool_count == len(LINEAR_TOOLS)
        finally:
            await hub.stop()

    @pytest.mark.asyncio
    async def test_disabling_extension_removes_its_tools(self, hub: ToolHub) -> None:
        await hub.extensions.disable("weather")
        await hub.refresh()
        assert "weather_forecast" not in [t.name for t in hub.list_tools()]

    @pytest.mark.asyncio
    async def test_call_routes_management_and_server_tools(self, hub: ToolHub) -> None:
        built = await hub.call_tool(
            "build-toolset", {"name": "dev", "tools": ["git.status"], "auto_equip": True}
        )
        assert not built.is_error
        assert [t.name for t in hub.list_tools() if "_" in t.name] == ["git_status"]
        assert not (await hub.call_tool("git_status", {"path": "."})).is_error
        with pytest.raises(NotFoundError):
            await hub.call_tool("nope_nope", {})

    @pytest.mark.asyncio
    async def test_restart_restores_last_equipped(
        self,
        tmp_path: Path,
        hub: ToolHub,
        hub_factory: FakeConnectionFactory,
        store: MemoryRecordStore,
    ) -> None:
        await hub.toolsets.build("dev", ["git.status"], auto_equip=True)
        again = ToolHub(_settings(tmp_path), tmp_path, store=store, connection_factory=hub_factory)
        await again.start()
        try:
            assert again.surface.state.toolset_name == "dev"
        finally:
            await again.engine.close()

    @pytest.mark.asyncio
    async def test_runtime_added_server_picked_up_on_refresh(
        self, hub: ToolHub, hub_factory: FakeConnectionFactory
    ) -> None:
        hub_factory.add("fs", spec("read_file"))
        await hub.servers.add({"alias": "fs", "command": "fs-mcp"})
        await hub.refresh()
        assert hub.engine.lookup("fs_read_file") is not None

    @pytest.mark.asyncio
    async def test_configuration_mode_hides_server_tools(self, hub: ToolHub) -> None:
        names = [t.name for t in hub.list_tools()]
        assert "enter-configuration-mode" in names
        assert "exit-configuration-mode" not in names

        await hub.call_tool("enter-configuration-mode", {})
        names = [t.name for t in hub.list_tools()]
        assert "exit-configuration-mode" in names
        assert "enter-configuration-mode" not in names
        assert "build-toolset" in names
        assert "git_status" not in names
        with pytest.raises(NotExposedError):
            await hub.call_tool("git_status", {})
        with pytest.raises(NotExposedError):
            await hub.call_tool("enter-configuration-mode", {})

        await hub.call_tool("exit-configuration-mode", {})
        assert "git_status" in [t.name for t in hub.list_tools()]
