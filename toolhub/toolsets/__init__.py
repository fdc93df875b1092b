"""Toolsets: named, curated subsets of the tool directory."""

from toolhub.toolsets.manager import ToolsetManager
from toolhub.toolsets.models import (
    ActiveToolsetReport,
    ReferenceStatus,
    ToolCounts,
    ToolsetDefinition,
)

__all__ = [
    "ActiveToolsetReport",
    "ReferenceStatus",
    "ToolCounts",
    "ToolsetDefinition",
    "ToolsetManager",
]
