"""The hub's own tools: browse the directory and manage toolsets from the protocol side."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from toolhub.connection.contract import ToolCallResult
from toolhub.errors import HubError, ValidationError
from toolhub.surface.controller import ActiveSurface, ExposedTool
from toolhub.toolsets.manager import MAX_TOOLS, ToolsetManager
from toolhub.toolsets.models import ToolNote

logger = logging.getLogger(__name__)


class NoParams(BaseModel):
    pass


class BuildToolsetParams(BaseModel):
    name: str = Field(description="Toolset name: lowercase letters, numbers and hyphens (2-50 chars)")
    tools: list[str | dict[str, str]] = Field(
        description="Tool references: 'server.tool', a refId, or {namespacedName, refId}",
        max_length=MAX_TOOLS,
    )
    display_name: str | None = None
    description: str = ""
    auto_equip: bool = Field(default=False, description="Equip the toolset right after building it")


class ToolsetNameParams(BaseModel):
    name: str = Field(description="Name of a saved toolset")


class DeleteToolsetParams(ToolsetNameParams):
    confirm: bool = Field(default=False, description="Must be true to actually delete")


class ToolRefParams(BaseModel):
    namespacedName: str | None = Field(default=None, description="e.g. 'linear.create_issue'")
    refId: str | None = Field(default=None, description="Hash identifier from list-available-tools")


class AddToolAnnotationParams(BaseModel):
    toolRef: ToolRefParams = Field(description="Tool of the equipped toolset to annotate")
    notes: list[ToolNote] = Field(
        description="Named notes shown with the tool description", min_length=1, max_length=20
    )


Handler = Callable[[Any], Awaitable[dict[str, Any]]]
Mode = Literal["normal", "configuration", "both"]


@dataclass(frozen=True)
class ManagementTool:
    name: str
    description: str
    params: type[BaseModel]
    handler: Handler
    mode: Mode = "both"

    def visible(self, configuration_mode: bool) -> bool:
        if self.mode == "both":
            return True
        return (self.mode == "configuration") == configuration_mode

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.params.model_json_schema()

    def to_exposed(self) -> ExposedTool:
        return ExposedTool(name=self.name, description=self.description, input_schema=self.input_schema)


def make_management_tools(
    toolsets: ToolsetManager, surface: ActiveSurface | None = None
) -> list[ManagementTool]:
    """Create the toolset management tools. Mode switching needs the surface."""

    async def list_available_tools(_: NoParams) -> dict[str, Any]:
        return {"success": True, **toolsets.format_available_tools()}

    async def build_toolset(p: BuildToolsetParams) -> dict[str, Any]:
        definition = await toolsets.build(
            p.name,
            p.tools,
            display_name=p.display_name,
            description=p.description,
            auto_equip=p.auto_equip,
        )
        return {"success": True, "toolset": definition.summary(), "equipped": p.auto_equip}

    async def list_saved_toolsets(_: NoParams) -> dict[str, Any]:
        active = toolsets.get_active_toolset().name
        items = []
        for definition in await toolsets.list():
            items.append({**definition.summary(), "active": definition.name == active})
        return {"success": True, "toolsets": items}

    async def equip_toolset(p: ToolsetNameParams) -> dict[str, Any]:
        await toolsets.equip(p.name)
        return {"success": True, **toolsets.get_active_toolset().to_dict()}

    async def unequip_toolset(_: NoParams) -> dict[str, Any]:
        await toolsets.unequip()
        return {"success": True, "equipped": False}

    async def delete_toolset(p: DeleteToolsetParams) -> dict[str, Any]:
        await toolsets.delete(p.name, confirm=p.confirm)
        return {"success": True, "deleted": p.name}

    async def get_active_toolset(_: NoParams) -> dict[str, Any]:
        return {"success": True, **toolsets.get_active_toolset().to_dict()}

    async def add_tool_annotation(p: AddToolAnnotationParams) -> dict[str, Any]:
        result = await toolsets.add_tool_notes(
            p.toolRef.model_dump(exclude_none=True), p.notes
        )
        return {"success": True, **result}

    tools = [
        ManagementTool(
            "list-available-tools",
            "List every tool discovered on connected servers, grouped by server.",
            NoParams,
            list_available_tools,
        ),
        ManagementTool(
            "build-toolset",
            "Save a named toolset from a list of tool references. Optionally equip it.",
            BuildToolsetParams,
            build_toolset,
        ),
        ManagementTool(
            "list-saved-toolsets",
            "List saved toolsets and which one is equipped.",
            NoParams,
            list_saved_toolsets,
        ),
        ManagementTool(
            "equip-toolset",
            "Expose only the tools of the named toolset.",
            ToolsetNameParams,
            equip_toolset,
        ),
        ManagementTool(
            "unequip-toolset",
            "Clear the equipped toolset and expose every discovered tool again.",
            NoParams,
            unequip_toolset,
        ),
        ManagementTool(
            "delete-toolset",
            "Delete a saved toolset. Requires confirm=true.",
            DeleteToolsetParams,
            delete_toolset,
        ),
        ManagementTool(
            "get-active-toolset",
            "Show the equipped toolset and the availability of each of its tools.",
            NoParams,
            get_active_toolset,
        ),
        ManagementTool(
            "add-tool-annotation",
            "Attach named usage notes to a tool of the equipped toolset. "
            "The notes are shown with the tool's description.",
            AddToolAnnotationParams,
            add_tool_annotation,
        ),
    ]
    if surface is None:
        return tools

    async def enter_configuration_mode(_: NoParams) -> dict[str, Any]:
        await surface.set_configuration_mode(True)
        return {
            "success": True,
            "message": "Configuration mode on. Server tools are hidden until exit-configuration-mode.",
            "availableTools": [t.name for t in tools] + ["exit-configuration-mode"],
        }

    async def exit_configuration_mode(_: NoParams) -> dict[str, Any]:
        await surface.set_configuration_mode(False)
        return {"success": True, "message": "Back to normal mode.", "currentMode": "normal"}

    return tools + [
        ManagementTool(
            "enter-configuration-mode",
            "Hide every server tool and keep only the toolset management tools.",
            NoParams,
            enter_configuration_mode,
            mode="normal",
        ),
        ManagementTool(
            "exit-configuration-mode",
            "Leave configuration mode and expose the server tools again.",
            NoParams,
            exit_configuration_mode,
            mode="configuration",
        ),
    ]


def _result(payload: dict[str, Any]) -> ToolCallResult:
    return ToolCallResult(
        content=[{"type": "text", "text": json.dumps(payload, ensure_ascii=False)}],
        is_error=not payload.get("success", False),
        structured_content=payload,
    )


async def call_management_tool(tool: ManagementTool, arguments: dict[str, Any] | None) -> ToolCallResult:
    """Run a management tool. Failures come back as {"success": false, "error": ...}."""
    try:
        params = tool.params.model_validate(arguments or {})
    except PydanticValidationError as e:
        return _result(
            {
                "success": False,
                "error": f"Invalid arguments for {tool.name}",
                "details": [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                ],
            }
        )
    try:
        return _result(await tool.handler(params))
    except ValidationError as e:
        return _result({"success": False, "error": str(e), "details": e.errors})
    except HubError as e:
        return _result({"success": False, "error": str(e)})
    except Exception as e:
        logger.exception("management tool %s failed: %s", tool.name, e)
        return _result({"success": False, "error": str(e)})
