"""Toolset definitions and the active-toolset report."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from toolhub.discovery.models import NAMESPACE_SEPARATOR, Tool, ToolReference


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolNote(BaseModel):
    """A named piece of usage guidance attached to one tool of a toolset."""

    name: str = Field(pattern=r"^[a-z0-9-]+$", min_length=2, max_length=50)
    note: str = Field(min_length=1, max_length=500)


class ToolNotes(BaseModel):
    tool_ref: ToolReference
    notes: list[ToolNote] = Field(default_factory=list)

    def matches(self, tool: Tool) -> bool:
        return (
            self.tool_ref.namespaced_name == tool.namespaced_name
            or self.tool_ref.ref_id == tool.ref_id
        )


def format_notes(notes: list[ToolNote]) -> str:
    lines = "\n".join(f"\u2022 **{n.name}**: {n.note}" for n in notes)
    return f"### Additional Tool Notes\n\n{lines}"


class ToolsetDefinition(BaseModel):
    """A named, ordered list of tool references. Resolved lazily against the current directory."""

    name: str
    display_name: str = ""
    description: str = ""
    tools: list[ToolReference] = Field(default_factory=list)
    suggested: bool = False
    version: str = "1.0.0"
    created_at: str = Field(default_factory=_now_iso)
    last_modified: str | None = None
    tool_notes: list[ToolNotes] = Field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ToolsetDefinition":
        return cls.model_validate(record)

    def with_tool_notes(self, entries: list[ToolNotes]) -> "ToolsetDefinition":
        return self.model_copy(update={"tool_notes": entries, "last_modified": _now_iso()})

    def notes_for(self, tool: Tool) -> list[ToolNote]:
        for entry in self.tool_notes:
            if entry.matches(tool):
                return list(entry.notes)
        return []

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name or self.name,
            "description": self.description,
            "toolCount": len(self.tools),
            "suggested": self.suggested,
            "version": self.version,
            "createdAt": self.created_at,
            "annotatedTools": len([e for e in self.tool_notes if e.notes]),
        }


def reference_server(reference: ToolReference, tool: Tool | None = None) -> str | None:
    """Owning server of a reference: from the resolved tool, else the namespaced name prefix."""
    if tool is not None:
        return tool.server_name
    if reference.namespaced_name and NAMESPACE_SEPARATOR in reference.namespaced_name:
        return reference.namespaced_name.split(NAMESPACE_SEPARATOR, 1)[0]
    return None


@dataclass
class ReferenceStatus:
    ref: str
    status: Literal["available", "unavailable"]
    tool: Tool | None = None
    server_name: str | None = None
    reason: str | None = None
    disabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ref": self.ref, "status": self.status}
        if self.server_name:
            out["serverName"] = self.server_name
        if self.tool is not None:
            out["tool"] = self.tool.summary()
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass
class ToolCounts:
    available: int = 0
    unavailable: int = 0
    disabled: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "available": self.available,
            "unavailable": self.unavailable,
            "disabled": self.disabled,
            "total": self.total,
        }


@dataclass
class ActiveToolsetReport:
    """Availability of every reference of the equipped toolset, computed on request."""

    name: str | None = None
    tools: list[ReferenceStatus] = field(default_factory=list)
    counts: ToolCounts = field(default_factory=ToolCounts)

    @property
    def equipped(self) -> bool:
        return self.name is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "equipped": self.equipped,
            "toolset": self.name,
            "tools": [t.to_dict() for t in self.tools],
            "counts": self.counts.to_dict(),
        }
