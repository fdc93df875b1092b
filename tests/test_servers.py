"""Tests for configured servers: settings entries and the runtime server store."""

import pytest

from toolhub.discovery import ServerConfigStore, load_configured_servers
from toolhub.errors import NotFoundError, ValidationError
from toolhub.store import MemoryRecordStore


class TestLoadConfiguredServers:
    """Descriptors from settings and the store."""

    @pytest.mark.asyncio
    async def test_settings_entries(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LINEAR_TOKEN", "secret")
        settings = {
            "servers": [
                {"alias": "git", "command": "uvx", "args": ["mcp-server-git"]},
                {
                    "alias": "linear",
                    "transport": "streamable-http",
                    "url": "https://mcp.example/linear",
                    "headers": {"Authorization": "Bearer ${LINEAR_TOKEN}"},
                },
            ]
        }
        git, linear = await load_configured_servers(settings)
        assert git.transport == "stdio"
        assert git.args == ("mcp-server-git",)
        assert git.origin == "configured"
        assert linear.headers == {"Authorization": "Bearer secret"}

    @pytest.mark.asyncio
    async def test_invalid_entries_skipped(self) -> None:
        settings = {
            "servers": [
                {"alias": "nocmd", "transport": "stdio"},
                {"alias": "nourl", "transport": "streamable-http"},
                {"alias": "bad transport", "command": "x"},
                "not-a-mapping",
                {"alias": "ok", "command": "run"},
            ]
        }
        descriptors = await load_configured_servers(settings)
        assert [d.name for d in descriptors] == ["ok"]

    @pytest.mark.asyncio
    async def test_store_entries_added_after_settings(self) -> None:
        store = MemoryRecordStore()
        servers = ServerConfigStore(store)
        await servers.add({"alias": "git", "command": "other"})
        await servers.add({"alias": "fs", "command": "fs-mcp"})
        settings = {"servers": [{"alias": "git", "command": "uvx"}]}
        descriptors = await load_configured_servers(settings, store)
        assert [(d.name, d.command) for d in descriptors] == [("git", "uvx"), ("fs", "fs-mcp")]


class TestServerConfigStore:
    """add / list / remove."""

    @pytest.mark.asyncio
    async def test_add_list_remove(self) -> None:
        servers = ServerConfigStore(MemoryRecordStore())
        await servers.add({"alias": "git", "command": "uvx", "args": ["mcp-server-git"]})
        assert [e.alias for e in await servers.list()] == ["git"]
        await servers.remove("git")
        assert await servers.list() == []
        with pytest.raises(NotFoundError):
            await servers.remove("git")

    @pytest.mark.asyncio
    async def test_add_invalid_raises(self) -> None:
        servers = ServerConfigStore(MemoryRecordStore())
        with pytest.raises(ValidationError) as exc:
            await servers.add({"alias": "web", "transport": "streamable-http"})
        assert exc.value.errors
