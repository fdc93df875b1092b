"""Extension lifecycle: discover packages, unpack when stale, validate, expose enabled ones as servers."""

import asyncio
import json
import logging
import os
import re
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from toolhub.connection.contract import ServerDescriptor
from toolhub.errors import NotFoundError, ValidationError
from toolhub.extensions.manifest import (
    ExtensionManifest,
    ManifestCheck,
    check_unpacked,
    effective_user_config,
    validate_user_config,
)
from toolhub.extensions.package import (
    ExtensionPackage,
    copy_package,
    is_package,
    package_mtime,
    remove_path,
    scan_packages,
    stage_package,
    swap_into_place,
)
from toolhub.store import RecordStore

logger = logging.getLogger(__name__)

EXTENSIONS_COLLECTION = "extensions"
METADATA_COLLECTION = "extension_metadata"
MAX_UNPACK_ATTEMPTS = 3

_DIRNAME_RE = re.compile(r"\$\{__dirname\}")
_USER_CONFIG_RE = re.compile(r"\$\{user_config\.([^}]+)\}")
_ENV_RE = re.compile(r"\$\{env:([^}]+)\}")


@dataclass
class ExtensionRecord:
    """State of one extension package."""

    name: str
    manifest_path: Path
    unpacked_path: Path
    source_modified_at: float = 0.0
    last_unpacked_at: float | None = None
    enabled: bool = True
    valid: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    version: str = ""
    manifest: ExtensionManifest | None = None
    user_config: dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.enabled and self.valid

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "enabled": self.enabled,
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "package": str(self.manifest_path),
            "unpackedPath": str(self.unpacked_path),
            "lastUnpackedAt": self.last_unpacked_at,
        }


def _discard_staged(task: "asyncio.Future[Path]") -> None:
    if task.cancelled() or task.exception() is not None:
        return
    remove_path(task.result())


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_stringify(v) for v in value)
    return str(value)


def substitute_template(template: str, user_config: dict[str, Any], dirname: str) -> str:
    """Expand ${__dirname}, ${user_config.x} and ${env:VAR}. Unknown placeholders stay as written."""
    result = _DIRNAME_RE.sub(lambda _m: dirname, template)

    def _user(match: re.Match[str]) -> str:
        value = user_config.get(match.group(1))
        return match.group(0) if value is None else _stringify(value)

    def _env(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), match.group(0))

    result = _USER_CONFIG_RE.sub(_user, result)
    return _ENV_RE.sub(_env, result)


class ExtensionManager:
    """Owns ExtensionRecords; persists enabled flags, user config and unpack metadata."""

    def __init__(
        self,
        store: RecordStore,
        extensions_dir: Path,
        installed_dir: Path | None = None,
        *,
        unpack_timeout: float = 30.0,
        auto_discovery: bool = True,
    ) -> None:
        self._store = store
        self._extensions_dir = extensions_dir
        self._installed_dir = installed_dir or extensions_dir / "installed"
        self._unpack_timeout = unpack_timeout
        self._auto_discovery = auto_discovery
        self._records: dict[str, ExtensionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls, store: RecordStore, settings: dict[str, Any], project_root: Path
    ) -> "ExtensionManager":
        cfg = settings.get("extensions") or {}

        def _path(value: str) -> Path:
            p = Path(value).expanduser()
            return p if p.is_absolute() else project_root / p

        return cls(
            store,
            _path(cfg.get("dir", "extensions")),
            _path(cfg.get("installed_dir", "extensions/installed")),
            unpack_timeout=float(cfg.get("unpack_timeout", 30.0)),
            auto_discovery=bool(cfg.get("auto_discovery", True)),
        )

    @property
    def extensions_dir(self) -> Path:
        return self._extensions_dir

    def _lock_for(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def _require(self, name: str) -> ExtensionRecord:
        record = self._records.get(name)
        if record is None:
            raise NotFoundError(f"Extension '{name}' not found")
        return record

    async def initialize(self) -> list[ExtensionRecord]:
        """Scan packages and bring every record up to date. Called once at startup."""
        if not self._auto_discovery:
            logger.info("extensions: auto discovery disabled")
            return []
        await self.discover()
        valid = sum(1 for r in self._records.values() if r.valid)
        logger.info("extensions: %d found, %d valid", len(self._records), valid)
        return self.list_extensions()

    async def discover(self) -> list[ExtensionRecord]:
        """Rescan the extensions dir: add new packages, drop removed ones, refresh stale ones."""
        await self._sync_all(pick_up_new=True)
        return self.list_extensions()

    async def refresh_extensions(self) -> list[str]:
        """Re-unpack packages changed since their last unpack. Returns the names unpacked.

        New packages are only picked up here when auto discovery is on.
        """
        return await self._sync_all(pick_up_new=self._auto_discovery)

    async def _sync_all(self, pick_up_new: bool) -> list[str]:
        packages = await asyncio.to_thread(
            scan_packages, self._extensions_dir, self._installed_dir
        )
        current = {p.name: p for p in packages}
        for name in [n for n in self._records if n not in current]:
            logger.info("extensions: %s no longer present", name)
            del self._records[name]

        unpacked: list[str] = []
        for package in packages:
            if package.name not in self._records:
                if not pick_up_new:
                    continue
                self._records[package.name] = await self._load_record(package)
            if await self._sync(self._records[package.name], package):
                unpacked.append(package.name)
        return unpacked

    async def _load_record(self, package: ExtensionPackage) -> ExtensionRecord:
        state = await self._store.get(EXTENSIONS_COLLECTION, package.name) or {}
        meta = await self._store.get(METADATA_COLLECTION, package.name) or {}
        unpacked = meta.get("unpacked_path")
        return ExtensionRecord(
            name=package.name,
            manifest_path=package.path,
            unpacked_path=Path(unpacked) if unpacked else self._installed_dir / package.name,
            source_modified_at=float(meta.get("source_modified_at") or 0.0),
            last_unpacked_at=meta.get("last_unpacked_at"),
            enabled=bool(state.get("enabled", True)),
            user_config=dict(state.get("user_config") or {}),
        )

    async def _sync(self, record: ExtensionRecord, package: ExtensionPackage) -> bool:
        async with self._lock_for(record.name):
            record.manifest_path = package.path
            unpack_error: str | None = None
            unpacked = False
            try:
                mtime = await asyncio.to_thread(package_mtime, package.path)
            except OSError as e:
                logger.warning("extensions: cannot stat %s: %s", package.path, e)
                return False
            if self._needs_unpacking(record, mtime):
                unpacked, unpack_error = await self._unpack(record, package, mtime)
            await self._validate(record, unpack_error)
            return unpacked

    def _needs_unpacking(self, record: ExtensionRecord, mtime: float) -> bool:
        if record.last_unpacked_at is None or not record.unpacked_path.is_dir():
            return True
        return mtime > record.source_modified_at

    async def _stage(self, package: ExtensionPackage, target: Path) -> Path:
        """Stage a copy in a thread under the unpack timeout.

        The thread cannot be stopped, so when we stop waiting its output is
        deleted once it finishes and never swapped in.
        """
        task = asyncio.ensure_future(asyncio.to_thread(stage_package, package, target))
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._unpack_timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            task.add_done_callback(_discard_staged)
            raise

    async def _unpack(
        self, record: ExtensionRecord, package: ExtensionPackage, mtime: float
    ) -> tuple[bool, str | None]:
        """Stage, re-stage if the package changed meanwhile, then swap in."""
        target = self._installed_dir / record.name
        staged: Path | None = None
        staged_mtime = mtime
        for attempt in range(1, MAX_UNPACK_ATTEMPTS + 1):
            if staged is not None:
                await asyncio.to_thread(remove_path, staged)
            staged_mtime = mtime
            try:
                staged = await self._stage(package, target)
            except asyncio.TimeoutError:
                logger.warning(
                    "extensions: unpack of %s timed out after %.1fs, keeping previous copy",
                    record.name,
                    self._unpack_timeout,
                )
                return False, None
            except (OSError, ValueError, zipfile.BadZipFile) as e:
                logger.warning("extensions: unpack of %s failed: %s", record.name, e)
                return False, f"unpack failed: {e}"
            try:
                mtime = await asyncio.to_thread(package_mtime, package.path)
            except OSError:
                mtime = staged_mtime
            if mtime == staged_mtime:
                break
            logger.info(
                "extensions: %s changed during unpack (attempt %d)", record.name, attempt
            )
        else:
            logger.warning("extensions: %s kept changing while unpacking", record.name)

        try:
            backup = swap_into_place(staged, target)
        except OSError as e:
            await asyncio.to_thread(remove_path, staged)
            logger.warning("extensions: swapping in %s failed: %s", record.name, e)
            return False, f"unpack failed: {e}"
        if backup is not None:
            await asyncio.to_thread(remove_path, backup)
        logger.info("extensions: unpacked %s -> %s", package.path.name, target)

        record.unpacked_path = target
        # Time of the content actually staged: a change that outran the retries shows up as stale.
        record.source_modified_at = staged_mtime
        record.last_unpacked_at = time.time()
        await self._save_metadata(record)
        return True, None

    async def _validate(self, record: ExtensionRecord, unpack_error: str | None = None) -> None:
        """Re-check manifest, entry point and user config. Never touches `enabled`."""
        if record.unpacked_path.is_dir():
            check = await asyncio.to_thread(check_unpacked, record.unpacked_path)
        else:
            check = ManifestCheck(errors=[f"not unpacked: {record.unpacked_path}"])

        errors = list(check.errors)
        warnings: list[str] = []
        if unpack_error:
            if record.last_unpacked_at is not None and record.unpacked_path.is_dir():
                warnings.append(f"{unpack_error} (previous copy kept)")
            else:
                errors.insert(0, unpack_error)
        if check.manifest is not None:
            config_errors, config_warnings = validate_user_config(check.manifest, record.user_config)
            errors.extend(config_errors)
            warnings.extend(config_warnings)
            record.version = check.manifest.version

        record.manifest = check.manifest
        record.errors = errors
        record.warnings = warnings
        record.valid = not errors
        if record.valid:
            logger.debug("extensions: %s is valid", record.name)
        else:
            logger.warning("extensions: %s is invalid: %s", record.name, "; ".join(errors))
        await self._save_metadata(record)

    async def _save_metadata(self, record: ExtensionRecord) -> None:
        await self._store.set(
            METADATA_COLLECTION,
            record.name,
            {
                "name": record.name,
                "version": record.version,
                "source_file": str(record.manifest_path),
                "source_modified_at": record.source_modified_at,
                "unpacked_path": str(record.unpacked_path),
                "last_unpacked_at": record.last_unpacked_at,
                "valid": record.valid,
                "errors": list(record.errors),
            },
        )

    async def _save_state(self, record: ExtensionRecord) -> None:
        await self._store.set(
            EXTENSIONS_COLLECTION,
            record.name,
            {"name": record.name, "enabled": record.enabled, "user_config": record.user_config},
        )

    def list_extensions(self) -> list[ExtensionRecord]:
        return [self._records[name] for name in sorted(self._records)]

    def get(self, name: str) -> ExtensionRecord:
        return self._require(name)

    def disabled_names(self) -> set[str]:
        return {name for name, r in self._records.items() if not r.enabled}

    async def enable(self, name: str) -> ExtensionRecord:
        record = self._require(name)
        record.enabled = True
        await self._save_state(record)
        logger.info("extensions: %s enabled", name)
        return record

    async def disable(self, name: str) -> ExtensionRecord:
        """Exclude from the next refresh. Toolsets referencing it are left alone."""
        record = self._require(name)
        record.enabled = False
        await self._save_state(record)
        logger.info("extensions: %s disabled", name)
        return record

    def get_extension_config(self, name: str) -> dict[str, Any]:
        record = self._require(name)
        schema = record.manifest.user_config if record.manifest else {}
        return {
            "name": record.name,
            "enabled": record.enabled,
            "user_config": dict(record.user_config),
            "schema": {k: p.model_dump(exclude_none=True) for k, p in schema.items()},
        }

    async def update_user_config(
        self, name: str, values: dict[str, Any], *, replace: bool = False
    ) -> list[str]:
        """Validate then persist user config. Keys set to None are removed. Returns warnings."""
        record = self._require(name)
        if record.manifest is None:
            raise ValidationError(
                f"Extension '{name}' has no valid manifest", list(record.errors)
            )
        merged = {} if replace else dict(record.user_config)
        merged.update(values)
        merged = {k: v for k, v in merged.items() if v is not None}

        errors, warnings = validate_user_config(record.manifest, merged)
        if errors:
            raise ValidationError(f"Invalid configuration for extension '{name}'", errors)

        async with self._lock_for(name):
            record.user_config = merged
            await self._save_state(record)
            await self._validate(record)
        return warnings

    async def install(self, source: Path, *, overwrite: bool = False) -> ExtensionRecord:
        """Copy a package into the extensions dir and pick it up."""
        source = source.expanduser()
        if not source.exists():
            raise NotFoundError(f"Package not found: {source}")
        if not is_package(source):
            raise ValidationError(
                f"Not an extension package: {source}",
                ["expected a .dxt/.zip archive or a directory containing manifest.json"],
            )
        name = source.stem if source.is_file() else source.name
        dest = self._extensions_dir / source.name
        if dest.exists() or name in self._records:
            if not overwrite:
                raise ValidationError(f"Extension '{name}' is already installed")
            await asyncio.to_thread(remove_path, dest)
        await asyncio.to_thread(copy_package, source, self._extensions_dir)
        logger.info("extensions: installed %s", name)
        await self.discover()
        return self._require(name)

    async def remove(self, name: str) -> None:
        """Delete package, unpacked copy and stored state."""
        record = self._require(name)
        async with self._lock_for(name):
            await asyncio.to_thread(remove_path, record.manifest_path)
            await asyncio.to_thread(remove_path, record.unpacked_path)
            await self._store.delete(EXTENSIONS_COLLECTION, name)
            await self._store.delete(METADATA_COLLECTION, name)
            self._records.pop(name, None)
        self._locks.pop(name, None)
        logger.info("extensions: removed %s", name)

    def validation_report(self, name: str) -> str:
        """Human-readable status, problems and configurable parameters."""
        record = self._require(name)
        lines = [
            f"Validation report for extension: {record.name}",
            f"Status: {'VALID' if record.valid else 'INVALID'}",
            f"Enabled: {'yes' if record.enabled else 'no'}",
        ]
        if record.errors:
            lines += ["", "Errors:"] + [f"  - {e}" for e in record.errors]
        if record.warnings:
            lines += ["", "Warnings:"] + [f"  - {w}" for w in record.warnings]
        if record.manifest and record.manifest.user_config:
            lines += ["", "Configuration parameters:"]
            for key, param in record.manifest.user_config.items():
                flags = ""
                if param.required:
                    flags += " (required)"
                if param.multiple:
                    flags += " (multiple)"
                if param.type == "number" and (param.min is not None or param.max is not None):
                    low = "min" if param.min is None else f"{param.min:g}"
                    high = "max" if param.max is None else f"{param.max:g}"
                    flags += f" ({low}-{high})"
                lines.append(f"  {key}: {param.type}{flags}")
                if param.description:
                    lines.append(f"    {param.description}")
                if param.default is not None:
                    lines.append(f"    Default: {json.dumps(param.default)}")
                if key in record.user_config:
                    lines.append(f"    Current: {json.dumps(record.user_config[key])}")
        return "\n".join(lines)

    def server_descriptors(self) -> list[ServerDescriptor]:
        """One stdio descriptor per enabled and valid extension."""
        descriptors: list[ServerDescriptor] = []
        for record in self.list_extensions():
            if not record.active or record.manifest is None:
                continue
            descriptors.append(self._descriptor_for(record, record.manifest))
        return descriptors

    def _descriptor_for(self, record: ExtensionRecord, manifest: ExtensionManifest) -> ServerDescriptor:
        dirname = str(record.unpacked_path.resolve())
        values = effective_user_config(manifest, record.user_config)
        mcp = manifest.server.mcp_config
        entry_point = manifest.server.entry_point

        args: list[str] = []
        for arg in mcp.args:
            arg = substitute_template(arg, values, dirname)
            if arg == entry_point:
                arg = str(Path(dirname) / entry_point)
            args.append(arg)
        return ServerDescriptor(
            name=record.name,
            transport="stdio",
            command=substitute_template(mcp.command, values, dirname),
            args=tuple(args),
            env={k: substitute_template(v, values, dirname) for k, v in mcp.env.items()},
            cwd=dirname,
            origin="extension",
        )
