"""Configured downstream servers: settings `servers:` list plus entries added at runtime."""

import logging
import os
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from toolhub.connection.contract import ServerDescriptor
from toolhub.errors import NotFoundError, ValidationError
from toolhub.store import RecordStore

logger = logging.getLogger(__name__)

SERVERS_COLLECTION = "servers"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _resolve_env_in_string(value: str) -> str:
    """Replace ${NAME} with the environment value. Unknown names become empty strings."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        resolved = os.environ.get(name)
        if resolved is None:
            logger.warning("servers: environment variable %s is not set", name)
            return ""
        return resolved

    return _ENV_PATTERN.sub(_sub, value)


class ServerConfigEntry(BaseModel):
    """One entry of the `servers:` list."""

    alias: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    transport: Literal["stdio", "streamable-http"] = "stdio"
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_transport_fields(self) -> "ServerConfigEntry":
        if self.transport == "stdio" and not self.command:
            raise ValueError("stdio server requires command")
        if self.transport == "streamable-http" and not self.url:
            raise ValueError("streamable-http server requires url")
        return self

    def to_descriptor(self) -> ServerDescriptor:
        return ServerDescriptor(
            name=self.alias,
            transport=self.transport,
            command=self.command,
            args=tuple(self.args),
            env={k: _resolve_env_in_string(v) for k, v in self.env.items()},
            cwd=self.cwd,
            url=_resolve_env_in_string(self.url),
            headers={k: _resolve_env_in_string(v) for k, v in self.headers.items()},
            origin="configured",
        )


def _parse_entries(raw: Any, source: str) -> list[ServerConfigEntry]:
    if not isinstance(raw, list):
        return []
    entries: list[ServerConfigEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            logger.warning("servers: ignoring non-mapping entry in %s", source)
            continue
        try:
            entries.append(ServerConfigEntry.model_validate(item))
        except PydanticValidationError as e:
            logger.warning(
                "servers: invalid entry %s in %s: %s", item.get("alias", "?"), source, e
            )
    return entries


class ServerConfigStore:
    """Servers added or removed at runtime, persisted in the record store."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def list(self) -> list[ServerConfigEntry]:
        return _parse_entries(await self._store.list(SERVERS_COLLECTION), "store")

    async def add(self, entry: ServerConfigEntry | dict[str, Any]) -> ServerConfigEntry:
        if not isinstance(entry, ServerConfigEntry):
            try:
                entry = ServerConfigEntry.model_validate(entry)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid server configuration",
                    [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
                ) from e
        await self._store.set(SERVERS_COLLECTION, entry.alias, entry.model_dump())
        logger.info("servers: saved %s (%s)", entry.alias, entry.transport)
        return entry

    async def remove(self, alias: str) -> None:
        if not await self._store.delete(SERVERS_COLLECTION, alias):
            raise NotFoundError(f"Server '{alias}' not found")
        logger.info("servers: removed %s", alias)


async def load_configured_servers(
    settings: dict[str, Any], store: RecordStore | None = None
) -> list[ServerDescriptor]:
    """Descriptors from settings, then stored entries. Settings win on alias clashes."""
    entries = _parse_entries(settings.get("servers"), "settings")
    if store is not None:
        entries.extend(await ServerConfigStore(store).list())

    descriptors: dict[str, ServerDescriptor] = {}
    for entry in entries:
        if entry.alias in descriptors:
            logger.warning("servers: duplicate alias %s ignored", entry.alias)
            continue
        descriptors[entry.alias] = entry.to_descriptor()
    return list(descriptors.values())
