"""Tests for ActiveSurface notifications and the management tools."""

import json

import pytest

from conftest import FakeConnectionFactory, descriptor, spec
from toolhub.discovery import DiscoveryEngine, Tool, ToolDirectory
from toolhub.errors import NotExposedError, PreconditionError, ValidationError
from toolhub.store import MemoryRecordStore
from toolhub.surface import ActiveSurface, call_management_tool, make_management_tools
from toolhub.toolsets import ToolsetManager


@pytest.fixture
async def engine(git_linear: FakeConnectionFactory) -> DiscoveryEngine:
    engine = DiscoveryEngine(git_linear, server_timeout=1.0, refresh_on_reconnect=False)
    await engine.refresh([descriptor("git"), descriptor("linear")])
    yield engine
    await engine.close()


@pytest.fixture
def surface(engine: DiscoveryEngine) -> ActiveSurface:
    return ActiveSurface(engine)


@pytest.fixture
def toolsets(store: MemoryRecordStore, engine: DiscoveryEngine, surface: ActiveSurface) -> ToolsetManager:
    return ToolsetManager(store, engine, surface)


@pytest.fixture
def tools(toolsets: ToolsetManager, surface: ActiveSurface) -> dict:
    return {t.name: t for t in make_management_tools(toolsets, surface)}


def _payload(result) -> dict:
    return json.loads(result.content[0]["text"])


class TestSurfaceNotifications:
    """Listeners fire on equip changes and directory swaps."""

    @pytest.mark.asyncio
    async def test_equip_unequip_and_refresh_notify(
        self, engine: DiscoveryEngine, surface: ActiveSurface, toolsets: ToolsetManager
    ) -> None:
        reasons: list[str] = []

        async def listener(reason: str) -> None:
            reasons.append(reason)

        surface.subscribe(listener)
        await toolsets.build("dev", ["git.status"], auto_equip=True)
        await toolsets.equip("dev")
        await toolsets.unequip()
        await engine.refresh([descriptor("git")])
        assert reasons == ["toolset", "toolset", "directory"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_equip(
        self, surface: ActiveSurface, toolsets: ToolsetManager
    ) -> None:
        def broken(reason: str) -> None:
            raise RuntimeError("boom")

        surface.subscribe(broken)
        await toolsets.build("dev", ["git.status"], auto_equip=True)
        assert surface.state.toolset_name == "dev"

    @pytest.mark.asyncio
    async def test_equipped_reference_lost_after_refresh(
        self, engine: DiscoveryEngine, surface: ActiveSurface, toolsets: ToolsetManager
    ) -> None:
        await toolsets.build("dev", ["git.status", "linear.list_issues"], auto_equip=True)
        await engine.refresh([descriptor("git")])
        assert [t.name for t in surface.list_tools()] == ["git_status"]
        report = toolsets.get_active_toolset()
        assert report.counts.unavailable == 1

    @pytest.mark.asyncio
    async def test_exposed_tool_shape(self, surface: ActiveSurface) -> None:
        exposed = {t.name: t for t in surface.list_tools()}
        entry = exposed["git_status"].to_dict()
        assert entry["description"] == "status tool"
        assert entry["inputSchema"]["properties"] == {"path": {"type": "string"}}


class TestManagementTools:
    """Protocol-facing toolset management."""

    def test_all_tools_have_object_schemas(self, tools: dict) -> None:
        assert sorted(tools) == [
            "add-tool-annotation",
            "build-toolset",
            "delete-toolset",
            "enter-configuration-mode",
            "equip-toolset",
            "exit-configuration-mode",
            "get-active-toolset",
            "list-available-tools",
            "list-saved-toolsets",
            "unequip-toolset",
        ]
        for tool in tools.values():
            assert tool.input_schema["type"] == "object"

    @pytest.mark.asyncio
    async def test_build_equip_and_report(self, tools: dict) -> None:
        built = await call_management_tool(
            tools["build-toolset"],
            {"name": "dev", "tools": ["git.status", {"namespacedName": "linear.create_issue"}]},
        )
        assert not built.is_error
        assert _payload(built)["toolset"]["toolCount"] == 2

        equipped = _payload(await call_management_tool(tools["equip-toolset"], {"name": "dev"}))
        assert equipped["success"] is True
        assert equipped["toolset"] == "dev"
        assert equipped["counts"]["available"] == 2

        saved = _payload(await call_management_tool(tools["list-saved-toolsets"], {}))
        assert saved["toolsets"][0]["active"] is True

        unequipped = _payload(await call_management_tool(tools["unequip-toolset"], None))
        assert unequipped == {"success": True, "equipped": False}

    @pytest.mark.asyncio
    async def test_errors_returned_not_raised(self, tools: dict) -> None:
        bad_args = await call_management_tool(tools["build-toolset"], {"name": "dev"})
        assert bad_args.is_error
        assert _payload(bad_args)["success"] is False

        unresolved = _payload(
            await call_management_tool(tools["build-toolset"], {"name": "dev", "tools": ["git.nope"]})
        )
        assert unresolved["success"] is False
        assert unresolved["details"]

        missing = _payload(await call_management_tool(tools["equip-toolset"], {"name": "ghost"}))
        assert "not found" in missing["error"]

    @pytest.mark.asyncio
    async def test_delete_requires_confirm(self, tools: dict, toolsets: ToolsetManager) -> None:
        await toolsets.build("dev", ["git.status"])
        refused = _payload(await call_management_tool(tools["delete-toolset"], {"name": "dev"}))
        assert refused["success"] is False
        assert [d.name for d in await toolsets.list()] == ["dev"]
        deleted = _payload(
            await call_management_tool(tools["delete-toolset"], {"name": "dev", "confirm": True})
        )
        assert deleted == {"success": True, "deleted": "dev"}

    @pytest.mark.asyncio
    async def test_list_available_tools(self, tools: dict) -> None:
        listing = _payload(await call_management_tool(tools["list-available-tools"], {}))
        assert listing["totalTools"] == 5
        assert listing["servers"][1]["name"] == "linear"


class TestExposedNames:
    """Distinct tools never share an exposed name."""

    @pytest.mark.asyncio
    async def test_colliding_flat_names_get_unique_names(self, factory: FakeConnectionFactory) -> None:
        factory.add("a_b", spec("c"))
        factory.add("a", spec("b_c"))
        engine = DiscoveryEngine(factory, server_timeout=1.0, refresh_on_reconnect=False)
        directory = await engine.refresh([descriptor("a_b"), descriptor("a")])
        surface = ActiveSurface(engine)

        listed = {t.name: t.tool.namespaced_name for t in surface.list_tools()}
        assert len(listed) == 2
        assert listed["a_b_c"] == "a.b_c"
        other = next(name for name, ns in listed.items() if ns == "a_b.c")
        assert other.startswith("a_b_c_")
        assert other[len("a_b_c_"):] == directory.get_by_name("a_b.c").ref_id[:8]

        await surface.call_tool("a_b_c")
        await surface.call_tool(other)
        assert factory.backends["a"].calls == [("b_c", {})]
        assert factory.backends["a_b"].calls == [("c", {})]
        await engine.close()

    def test_suffix_never_takes_a_plain_name(self) -> None:
        first = Tool.from_spec("a", spec("b_c"))
        second = Tool.from_spec("a_b", spec("c"))
        clash = Tool(
            name="placeholder",
            server_name="a_b_c",
            namespaced_name=f"a_b_c.{second.ref_id[:8]}",
            ref_id="f" * 64,
        )
        directory = ToolDirectory({"a": [first], "a_b": [second], "a_b_c": [clash]})
        names = [directory.exposed_name(t) for t in directory.tools]
        assert len(set(names)) == len(names)
        assert directory.exposed_name(second) == f"a_b_c_{second.ref_id[:12]}"


class TestToolNotes:
    """Per-toolset notes appended to exposed descriptions."""

    @pytest.mark.asyncio
    async def test_notes_shown_in_description_and_persisted(
        self, surface: ActiveSurface, toolsets: ToolsetManager
    ) -> None:
        await toolsets.build("dev", ["git.status", "linear.create_issue"], auto_equip=True)
        reasons: list[str] = []
        surface.subscribe(reasons.append)

        result = await toolsets.add_tool_notes(
            "linear.create_issue",
            [{"name": "team-selection", "note": "Always confirm the team first"}],
        )
        assert result["toolset"] == "dev"
        assert result["tool"]["server"] == "linear"
        assert [n["name"] for n in result["addedNotes"]] == ["team-selection"]
        assert reasons == ["toolset"]

        exposed = {t.name: t.description for t in surface.list_tools()}
        assert exposed["git_status"] == "status tool"
        assert exposed["linear_create_issue"] == (
            "create_issue tool\n\n### Additional Tool Notes\n\n"
            "• **team-selection**: Always confirm the team first"
        )
        saved = await toolsets.get("dev")
        assert saved.notes_for(surface.find_exposed("linear_create_issue"))[0].name == "team-selection"
        assert saved.last_modified is not None

    @pytest.mark.asyncio
    async def test_duplicate_note_names_skipped(self, toolsets: ToolsetManager) -> None:
        await toolsets.build("dev", ["git.status"], auto_equip=True)
        note = {"name": "usage", "note": "Pass the repo path"}
        await toolsets.add_tool_notes("git.status", [note])
        again = await toolsets.add_tool_notes(
            {"namespacedName": "git.status"}, [note, {"name": "other", "note": "x"}]
        )
        assert again["skippedNotes"] == ["usage"]
        assert [n["name"] for n in again["addedNotes"]] == ["other"]

    @pytest.mark.asyncio
    async def test_notes_need_equipped_toolset_containing_the_tool(
        self, toolsets: ToolsetManager
    ) -> None:
        note = [{"name": "usage", "note": "n"}]
        with pytest.raises(PreconditionError, match="No toolset is currently equipped"):
            await toolsets.add_tool_notes("git.status", note)
        await toolsets.build("dev", ["git.status"], auto_equip=True)
        with pytest.raises(ValidationError, match="not in the current toolset"):
            await toolsets.add_tool_notes("git.diff", note)
        with pytest.raises(ValidationError) as exc:
            await toolsets.add_tool_notes("git.status", [{"name": "Bad Name", "note": ""}])
        assert len(exc.value.errors) == 1

    @pytest.mark.asyncio
    async def test_add_tool_annotation_tool(self, tools: dict, toolsets: ToolsetManager) -> None:
        await toolsets.build("dev", ["git.status"], auto_equip=True)
        ok = _payload(
            await call_management_tool(
                tools["add-tool-annotation"],
                {
                    "toolRef": {"namespacedName": "git.status"},
                    "notes": [{"name": "tip", "note": "hi"}],
                },
            )
        )
        assert ok["success"] is True
        assert ok["tool"]["namespacedName"] == "git.status"

        empty = await call_management_tool(
            tools["add-tool-annotation"], {"toolRef": {"namespacedName": "git.status"}, "notes": []}
        )
        assert empty.is_error


class TestConfigurationMode:
    """Server tools hidden while configuring."""

    @pytest.mark.asyncio
    async def test_enter_and_exit(
        self, surface: ActiveSurface, tools: dict, toolsets: ToolsetManager
    ) -> None:
        await toolsets.build("dev", ["git.status"], auto_equip=True)
        reasons: list[str] = []
        surface.subscribe(reasons.append)

        entered = _payload(await call_management_tool(tools["enter-configuration-mode"], {}))
        assert entered["success"] is True
        assert "exit-configuration-mode" in entered["availableTools"]
        assert surface.list_tools() == []
        with pytest.raises(NotExposedError, match="configuration mode"):
            await surface.call_tool("git_status")
        assert surface.state.toolset_name == "dev"

        await call_management_tool(tools["exit-configuration-mode"], {})
        assert [t.name for t in surface.list_tools()] == ["git_status"]
        assert reasons == ["mode", "mode"]

    def test_mode_visibility(self, tools: dict) -> None:
        assert tools["enter-configuration-mode"].visible(False)
        assert not tools["enter-configuration-mode"].visible(True)
        assert tools["exit-configuration-mode"].visible(True)
        assert not tools["exit-configuration-mode"].visible(False)
        assert tools["build-toolset"].visible(True) and tools["build-toolset"].visible(False)
