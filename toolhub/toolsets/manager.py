"""Toolset manager: build, list, delete, equip and report on named tool subsets."""

import logging
import re
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from pydantic import ValidationError as PydanticValidationError

from toolhub.connection.contract import ServerStatus
from toolhub.discovery.engine import DiscoveryEngine
from toolhub.discovery.models import ToolReference, resolve_reference
from toolhub.errors import NotFoundError, PreconditionError, ValidationError
from toolhub.store import RecordStore
from toolhub.toolsets.models import (
    ActiveToolsetReport,
    ReferenceStatus,
    ToolCounts,
    ToolNote,
    ToolNotes,
    ToolsetDefinition,
    reference_server,
)

if TYPE_CHECKING:
    from toolhub.surface.controller import ActiveSurface, ActiveSurfaceState

logger = logging.getLogger(__name__)

TOOLSETS_COLLECTION = "toolsets"
PREFERENCES_COLLECTION = "preferences"
LAST_EQUIPPED_KEY = "last_equipped_toolset"

NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
MAX_TOOLS = 100

RawReference = str | Mapping[str, Any] | ToolReference


def _name_errors(name: Any) -> list[str]:
    if not isinstance(name, str) or not name.strip():
        return ["Toolset name cannot be empty"]
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        return [f"Toolset name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"]
    if not NAME_PATTERN.match(name):
        return ["Toolset name must contain only lowercase letters, numbers, and hyphens"]
    return []


class ToolsetManager:
    """Persists toolset definitions and drives the active surface."""

    def __init__(
        self,
        store: RecordStore,
        engine: DiscoveryEngine,
        surface: "ActiveSurface",
        *,
        disabled_servers: Callable[[], set[str]] | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._surface = surface
        self._disabled_servers = disabled_servers or set

    def _parse_references(self, tools: Sequence[RawReference]) -> tuple[list[ToolReference], list[str]]:
        refs: list[ToolReference] = []
        errors: list[str] = []
        for i, raw in enumerate(tools):
            try:
                refs.append(ToolReference.parse(raw))
            except (PydanticValidationError, ValueError, TypeError) as e:
                errors.append(f"tools[{i}]: invalid reference: {e}")
        return refs, errors

    async def build(
        self,
        name: str,
        tools: Sequence[RawReference],
        *,
        display_name: str | None = None,
        description: str = "",
        suggested: bool = False,
        auto_equip: bool = False,
    ) -> ToolsetDefinition:
        """Validate every reference against the current directory, then persist.

        Raises ValidationError listing all problems found.
        """
        errors = _name_errors(name)
        tools = list(tools or [])
        if not tools:
            errors.append("Toolset must specify at least one tool")
        elif len(tools) > MAX_TOOLS:
            errors.append(f"Toolset cannot contain more than {MAX_TOOLS} tools (got {len(tools)})")
        refs, ref_errors = self._parse_references(tools)
        errors.extend(ref_errors)
        if errors:
            raise ValidationError(f"Invalid toolset '{name}'", errors)

        if await self._store.get(TOOLSETS_COLLECTION, name) is not None:
            raise ValidationError(f"Toolset '{name}' already exists")

        directory = self._engine.directory
        seen: dict[str, str] = {}
        for ref in refs:
            resolution = resolve_reference(directory, ref)
            if resolution.tool is None:
                errors.append(f"{ref.label}: {resolution.reason}")
                continue
            if resolution.tool.ref_id in seen:
                errors.append(
                    f"{ref.label}: duplicate of {seen[resolution.tool.ref_id]} "
                    f"(both resolve to {resolution.tool.namespaced_name})"
                )
                continue
            seen[resolution.tool.ref_id] = ref.label
        if errors:
            raise ValidationError(f"Invalid toolset '{name}'", errors)

        definition = ToolsetDefinition(
            name=name,
            display_name=display_name or name,
            description=description,
            tools=refs,
            suggested=suggested,
        )
        await self._store.set(TOOLSETS_COLLECTION, name, definition.to_record())
        logger.info("toolsets: built %s with %d tool(s)", name, len(refs))

        if auto_equip:
            await self.equip(name)
        return definition

    async def list(self) -> list[ToolsetDefinition]:
        result: list[ToolsetDefinition] = []
        for record in await self._store.list(TOOLSETS_COLLECTION):
            try:
                result.append(ToolsetDefinition.from_record(record))
            except PydanticValidationError as e:
                logger.warning("toolsets: skipping unreadable toolset %s: %s", record.get("name"), e)
        return result

    async def get(self, name: str) -> ToolsetDefinition:
        record = await self._store.get(TOOLSETS_COLLECTION, name)
        if record is None:
            raise NotFoundError(f"Toolset '{name}' not found")
        try:
            return ToolsetDefinition.from_record(record)
        except PydanticValidationError as e:
            raise ValidationError(f"Toolset '{name}' is unreadable", [str(e)]) from e

    async def delete(self, name: str, *, confirm: bool = False) -> None:
        """Delete a toolset. Requires confirm=True; the equipped toolset is unequipped first."""
        if await self._store.get(TOOLSETS_COLLECTION, name) is None:
            raise NotFoundError(f"Toolset '{name}' not found")
        if confirm is not True:
            raise PreconditionError(f"Deleting toolset '{name}' requires confirm=true")
        if self._surface.state.toolset_name == name:
            await self.unequip()
        await self._store.delete(TOOLSETS_COLLECTION, name)
        logger.info("toolsets: deleted %s", name)

    async def equip(self, name: str) -> "ActiveSurfaceState":
        definition = await self.get(name)
        state = await self._surface.set_toolset(definition)
        await self._store.set(PREFERENCES_COLLECTION, LAST_EQUIPPED_KEY, {"name": name})
        logger.info("toolsets: equipped %s", name)
        return state

    async def unequip(self) -> "ActiveSurfaceState":
        if not self._surface.state.equipped:
            return self._surface.state
        state = await self._surface.set_toolset(None)
        await self._store.delete(PREFERENCES_COLLECTION, LAST_EQUIPPED_KEY)
        logger.info("toolsets: unequipped")
        return state

    async def restore_last_equipped(self) -> bool:
        """Re-equip the toolset equipped at shutdown, if it still exists."""
        pref = await self._store.get(PREFERENCES_COLLECTION, LAST_EQUIPPED_KEY)
        name = (pref or {}).get("name")
        if not name:
            return False
        try:
            await self.equip(name)
        except NotFoundError:
            logger.warning("toolsets: last equipped toolset %s no longer exists", name)
            await self._store.delete(PREFERENCES_COLLECTION, LAST_EQUIPPED_KEY)
            return False
        return True

    async def add_tool_notes(
        self, reference: RawReference, notes: Sequence[ToolNote | Mapping[str, Any]]
    ) -> dict[str, Any]:
        """Attach notes to a tool of the equipped toolset. Notes whose name exists are skipped."""
        state, directory = self._surface.snapshot()
        if state.toolset is None:
            saved = [d.name for d in await self.list()]
            hint = f"Available toolsets: {', '.join(saved)}" if saved else "No saved toolsets"
            raise PreconditionError(f"No toolset is currently equipped. {hint}")

        errors: list[str] = []
        parsed: list[ToolNote] = []
        if not notes:
            errors.append("At least one note is required")
        for i, raw in enumerate(notes or []):
            try:
                parsed.append(raw if isinstance(raw, ToolNote) else ToolNote.model_validate(raw))
            except PydanticValidationError as e:
                errors.append(f"notes[{i}]: {e.errors()[0]['msg']}")
        try:
            ref = ToolReference.parse(reference)
        except (PydanticValidationError, ValueError, TypeError) as e:
            errors.append(f"invalid tool reference: {e}")
            ref = None
        if errors:
            raise ValidationError("Invalid tool notes", errors)

        resolution = resolve_reference(directory, ref)
        tool = resolution.tool
        if tool is None:
            raise NotFoundError(f"Tool '{ref.label}' not found: {resolution.reason}")
        toolset = state.toolset
        in_toolset = any(
            r.namespaced_name == tool.namespaced_name or r.ref_id == tool.ref_id
            for r in toolset.tools
        )
        if not in_toolset:
            raise ValidationError(
                f"Tool '{tool.namespaced_name}' is not in the current toolset '{toolset.name}'"
            )

        entries = [e.model_copy(deep=True) for e in toolset.tool_notes]
        entry = next((e for e in entries if e.matches(tool)), None)
        if entry is None:
            entry = ToolNotes(
                tool_ref=ToolReference(namespaced_name=tool.namespaced_name, ref_id=tool.ref_id)
            )
            entries.append(entry)
        existing = {n.name for n in entry.notes}
        added: list[ToolNote] = []
        skipped: list[str] = []
        for note in parsed:
            if note.name in existing:
                skipped.append(note.name)
                continue
            existing.add(note.name)
            entry.notes.append(note)
            added.append(note)

        if added:
            updated = toolset.with_tool_notes(entries)
            await self._store.set(TOOLSETS_COLLECTION, updated.name, updated.to_record())
            await self._surface.set_toolset(updated)
            logger.info(
                "toolsets: %d note(s) added to %s in %s",
                len(added),
                tool.namespaced_name,
                toolset.name,
            )
        return {
            "toolset": toolset.name,
            "tool": {
                "namespacedName": tool.namespaced_name,
                "refId": tool.ref_id,
                "server": tool.server_name,
            },
            "addedNotes": [n.model_dump() for n in added],
            "skippedNotes": skipped,
        }

    def get_active_toolset(self) -> ActiveToolsetReport:
        """Resolve each reference of the equipped toolset against the live directory."""
        state, directory = self._surface.snapshot()
        if state.toolset is None:
            return ActiveToolsetReport()

        disabled = self._disabled_servers()
        report = ActiveToolsetReport(name=state.toolset.name)
        for ref in state.toolset.tools:
            resolution = resolve_reference(directory, ref)
            server = reference_server(ref, resolution.tool)
            entry = ReferenceStatus(ref=ref.label, status="unavailable", server_name=server)
            if server is not None and server in disabled:
                entry.disabled = True
                entry.reason = f"extension '{server}' is disabled"
            elif resolution.tool is None:
                entry.reason = resolution.reason
            else:
                entry.tool = resolution.tool
                status = self._engine.server_status(resolution.tool.server_name)
                if status == ServerStatus.CONNECTED:
                    entry.status = "available"
                else:
                    entry.reason = f"server '{server}' is {status.value}"
            report.tools.append(entry)

        report.counts = ToolCounts(
            available=sum(1 for t in report.tools if t.status == "available"),
            unavailable=sum(1 for t in report.tools if t.status == "unavailable"),
            disabled=sum(1 for t in report.tools if t.disabled),
            total=len(report.tools),
        )
        return report

    def format_available_tools(self) -> dict[str, Any]:
        """Every discovered tool grouped by server, regardless of what is equipped."""
        by_server = self._engine.list_by_server()
        servers: list[dict[str, Any]] = []
        for state in self._engine.list_servers():
            tools = sorted(by_server.get(state.name, []), key=lambda t: t.name)
            servers.append(
                {
                    "name": state.name,
                    "status": state.status.value,
                    "origin": state.descriptor.origin,
                    "toolCount": len(tools),
                    "tools": [t.summary() for t in tools],
                }
            )
        return {
            "totalServers": len(servers),
            "totalTools": sum(s["toolCount"] for s in servers),
            "servers": servers,
        }
