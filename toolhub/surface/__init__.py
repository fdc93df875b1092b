"""Active surface: the tools currently exposed to protocol callers."""

from toolhub.surface.controller import (
    ActiveSurface,
    ActiveSurfaceState,
    ExposedTool,
    surface_tools,
)
from toolhub.surface.management import (
    ManagementTool,
    call_management_tool,
    make_management_tools,
)

__all__ = [
    "ActiveSurface",
    "ActiveSurfaceState",
    "ExposedTool",
    "ManagementTool",
    "call_management_tool",
    "make_management_tools",
    "surface_tools",
]
