"""Discovered tools, their stable identities and the immutable tool directory snapshot."""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from toolhub.connection.contract import ServerDescriptor, ServerStatus, ToolSpec

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "."
EXPOSED_SEPARATOR = "_"

_REF_ID_RE = re.compile(r"^[0-9a-f]{64}$")


def compute_ref_id(server_name: str, name: str, input_schema: Mapping[str, Any]) -> str:
    """sha256 over canonical JSON of (server, name, schema). Description is not part of identity."""
    payload = json.dumps(
        {"serverName": server_name, "name": name, "inputSchema": input_schema},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def namespaced(server_name: str, name: str) -> str:
    return f"{server_name}{NAMESPACE_SEPARATOR}{name}"


def flatten_name(namespaced_name: str) -> str:
    """git.status -> git_status (name exposed to protocol callers)."""
    return namespaced_name.replace(NAMESPACE_SEPARATOR, EXPOSED_SEPARATOR)


def looks_like_ref_id(value: str) -> bool:
    return bool(_REF_ID_RE.match(value))


@dataclass(frozen=True)
class Tool:
    """One tool of one server inside a discovery snapshot."""

    name: str
    server_name: str
    namespaced_name: str
    ref_id: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @property
    def flat_name(self) -> str:
        return flatten_name(self.namespaced_name)

    @classmethod
    def from_spec(cls, server_name: str, spec: ToolSpec) -> "Tool":
        return cls(
            name=spec.name,
            server_name=server_name,
            namespaced_name=namespaced(server_name, spec.name),
            ref_id=compute_ref_id(server_name, spec.name, spec.input_schema),
            description=spec.description,
            input_schema=dict(spec.input_schema),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "namespacedName": self.namespaced_name,
            "serverName": self.server_name,
            "refId": self.ref_id,
            "description": self.description,
        }


def _disambiguate(tool: Tool, plain: set[str], taken: Mapping[str, Tool]) -> str:
    for size in (8, 12, 16, 64):
        candidate = f"{tool.flat_name}{EXPOSED_SEPARATOR}{tool.ref_id[:size]}"
        if candidate not in plain and candidate not in taken:
            return candidate
    return f"{tool.flat_name}{EXPOSED_SEPARATOR}{tool.ref_id}"


class ToolDirectory:
    """Immutable snapshot: server -> tools, plus lookup indexes.

    Built wholesale by one discovery cycle and never patched afterwards.
    Every tool gets a unique exposed name: the flattened namespaced name, or,
    when two tools flatten to the same text (`a_b.c` and `a.b_c`), that name
    plus a short ref id suffix for all but the first in server order.
    """

    def __init__(
        self,
        by_server: Mapping[str, Sequence[Tool]] | None = None,
        built_at: float | None = None,
    ) -> None:
        grouped: dict[str, tuple[Tool, ...]] = {}
        by_name: dict[str, Tool] = {}
        by_ref: dict[str, Tool] = {}
        for server_name in sorted(by_server or {}):
            kept: list[Tool] = []
            for tool in (by_server or {})[server_name]:
                if tool.namespaced_name in by_name:
                    logger.warning("discovery: duplicate tool %s ignored", tool.namespaced_name)
                    continue
                by_name[tool.namespaced_name] = tool
                by_ref[tool.ref_id] = tool
                kept.append(tool)
            grouped[server_name] = tuple(kept)

        tools = [t for items in grouped.values() for t in items]
        by_exposed: dict[str, Tool] = {}
        exposed_of: dict[str, str] = {}
        plain = {t.flat_name for t in tools}
        for tool in tools:
            exposed = tool.flat_name
            if exposed in by_exposed:
                exposed = _disambiguate(tool, plain, by_exposed)
                logger.warning(
                    "discovery: %s collides with %s as %s, exposed as %s",
                    tool.namespaced_name,
                    by_exposed[tool.flat_name].namespaced_name,
                    tool.flat_name,
                    exposed,
                )
            by_exposed[exposed] = tool
            exposed_of[tool.ref_id] = exposed

        self._by_server = MappingProxyType(grouped)
        self._by_name = by_name
        self._by_ref = by_ref
        self._by_exposed = by_exposed
        self._exposed_of = exposed_of
        self.built_at = built_at if built_at is not None else time.time()

    @property
    def by_server(self) -> Mapping[str, tuple[Tool, ...]]:
        return self._by_server

    @property
    def servers(self) -> list[str]:
        return list(self._by_server)

    @property
    def tools(self) -> list[Tool]:
        return [t for tools in self._by_server.values() for t in tools]

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, ref: object) -> bool:
        return isinstance(ref, str) and self.lookup(ref) is not None

    def get_by_name(self, namespaced_name: str) -> Tool | None:
        return self._by_name.get(namespaced_name)

    def get_by_ref(self, ref_id: str) -> Tool | None:
        return self._by_ref.get(ref_id)

    def get_by_exposed_name(self, exposed_name: str) -> Tool | None:
        return self._by_exposed.get(exposed_name)

    def exposed_name(self, tool: Tool) -> str:
        """Name the tool is listed and called under in this snapshot."""
        return self._exposed_of.get(tool.ref_id, tool.flat_name)

    def lookup(self, ref: str) -> Tool | None:
        """Find a tool by namespaced name, ref id or exposed name."""
        return self._by_name.get(ref) or self._by_ref.get(ref) or self._by_exposed.get(ref)


class ToolReference(BaseModel):
    """Reference into the directory by namespaced name, ref id, or both."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    namespaced_name: str | None = Field(default=None, alias="namespacedName")
    ref_id: str | None = Field(default=None, alias="refId")

    @model_validator(mode="after")
    def _require_identifier(self) -> "ToolReference":
        if not self.namespaced_name and not self.ref_id:
            raise ValueError("tool reference needs namespacedName or refId")
        return self

    @classmethod
    def parse(cls, value: "str | Mapping[str, Any] | ToolReference") -> "ToolReference":
        """Accept 'git.status', a bare ref id, a {namespacedName, refId} mapping or a reference."""
        if isinstance(value, ToolReference):
            return value
        if isinstance(value, str):
            text = value.strip()
            if looks_like_ref_id(text):
                return cls(ref_id=text)
            return cls(namespaced_name=text)
        return cls.model_validate(value)

    @property
    def label(self) -> str:
        return self.namespaced_name or self.ref_id or ""


@dataclass(frozen=True)
class Resolution:
    reference: ToolReference
    tool: Tool | None = None
    reason: str = ""

    @property
    def resolved(self) -> bool:
        return self.tool is not None


def resolve_reference(directory: ToolDirectory, reference: ToolReference) -> Resolution:
    """Resolve against one snapshot. Both identifiers given must agree."""
    by_name = (
        directory.get_by_name(reference.namespaced_name) if reference.namespaced_name else None
    )
    by_ref = directory.get_by_ref(reference.ref_id) if reference.ref_id else None

    if reference.namespaced_name and reference.ref_id:
        if by_name is not None and by_ref is not None and by_name is by_ref:
            return Resolution(reference, by_name)
        if by_name is not None and by_ref is None:
            return Resolution(
                reference,
                reason=f"'{reference.namespaced_name}' found but its refId changed (schema updated)",
            )
        if by_ref is not None and by_name is None:
            return Resolution(
                reference,
                reason=f"refId found but tool was renamed to '{by_ref.namespaced_name}'",
            )
        if by_name is not None and by_ref is not None:
            return Resolution(
                reference,
                reason=f"refId points to '{by_ref.namespaced_name}', not '{reference.namespaced_name}'",
            )
        return Resolution(reference, reason=f"tool '{reference.label}' not found")

    tool = by_name or by_ref
    if tool is None:
        return Resolution(reference, reason=f"tool '{reference.label}' not found")
    return Resolution(reference, tool)


@dataclass
class ServerState:
    """Live view of one server known to discovery."""

    descriptor: ServerDescriptor
    status: ServerStatus = ServerStatus.DISCONNECTED
    tool_count: int = 0
    last_error: str | None = None
    last_discovery: float | None = None

    @property
    def name(self) -> str:
        return self.descriptor.name
