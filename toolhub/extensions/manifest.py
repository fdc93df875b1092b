"""Extension manifest: Pydantic model, loader and user-config checks.

A package carries manifest.json (or manifest.yaml) next to its bundled server.
Parsing is strict at this boundary; everything downstream works on the typed model.
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

MANIFEST_FILENAMES = ("manifest.json", "manifest.yaml", "manifest.yml")


class UserConfigParam(BaseModel):
    """One user-settable parameter declared by an extension."""

    type: Literal["string", "number", "boolean", "directory", "file"]
    title: str = ""
    description: str = ""
    required: bool = False
    default: Any = None
    multiple: bool = False
    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "UserConfigParam":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"min ({self.min}) must be <= max ({self.max})")
        return self


class McpConfig(BaseModel):
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class ServerSection(BaseModel):
    type: Literal["node", "python", "binary", "executable"] = "node"
    entry_point: str = Field(min_length=1)
    mcp_config: McpConfig


class ExtensionManifest(BaseModel):
    """Manifest schema for <extensions.dir>/<name>/manifest.json."""

    dxt_version: str = ""
    name: str = Field(min_length=1)
    version: str = "0.0.0"
    display_name: str = ""
    description: str = ""
    author: Any = None
    license: str = ""
    server: ServerSection
    user_config: dict[str, UserConfigParam] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_main(cls, data: Any) -> Any:
        """Older packages declare only `main`; treat it as a node entry point."""
        if not isinstance(data, dict) or not data.get("main"):
            return data
        main = data["main"]
        data = dict(data)
        server = data.get("server")
        if server is None:
            data["server"] = {
                "type": "node",
                "entry_point": main,
                "mcp_config": {"command": "node", "args": [main]},
            }
        elif isinstance(server, dict) and not server.get("entry_point"):
            data["server"] = {**server, "entry_point": main}
        return data


def find_manifest(root: Path) -> Path | None:
    """Return the manifest file inside an unpacked package, if any."""
    for filename in MANIFEST_FILENAMES:
        candidate = root / filename
        if candidate.is_file():
            return candidate
    return None


def read_manifest_data(path: Path) -> dict[str, Any]:
    """Parse manifest.json or manifest.yaml into a dict. Raises ValueError."""
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"cannot parse {path.name}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Manifest must be an object: {path.name}")
    return data


def load_manifest(path: Path) -> ExtensionManifest:
    """Read and validate a manifest file. Raises on parse or validation error."""
    return ExtensionManifest.model_validate(read_manifest_data(path))


def format_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic error into 'server.mcp_config.command: Field required' lines."""
    lines: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        lines.append(f"{loc}: {msg}" if loc else msg)
    return lines


@dataclass
class ManifestCheck:
    manifest: ExtensionManifest | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.manifest is not None and not self.errors


def check_unpacked(root: Path) -> ManifestCheck:
    """Validate the manifest and bundled entry point of an unpacked package.

    Collects every problem found instead of stopping at the first one.
    """
    check = ManifestCheck()
    manifest_path = find_manifest(root)
    if manifest_path is None:
        check.errors.append(f"manifest.json not found in {root}")
        return check
    try:
        data = read_manifest_data(manifest_path)
    except (OSError, ValueError) as e:
        check.errors.append(str(e))
        return check
    try:
        check.manifest = ExtensionManifest.model_validate(data)
    except PydanticValidationError as e:
        check.errors.extend(format_errors(e))
        return check

    entry_point = check.manifest.server.entry_point
    if not (root / entry_point).is_file():
        check.errors.append(f"server.entry_point: file not found: {entry_point}")
    return check


def _single_type_error(value: Any, kind: str) -> str | None:
    if kind == "string":
        return None if isinstance(value, str) else f"expected string, got {type(value).__name__}"
    if kind == "number":
        # bool is an int subclass; a flag is not a number here
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"expected number, got {type(value).__name__}"
        if not math.isfinite(value):
            return "expected finite number"
        return None
    if kind == "boolean":
        return None if isinstance(value, bool) else f"expected boolean, got {type(value).__name__}"
    if kind in ("directory", "file"):
        if not isinstance(value, str):
            return f"expected string path, got {type(value).__name__}"
        if not value.strip():
            return "path cannot be empty"
        return None
    return f"unknown type {kind}"


def _path_warning(key: str, value: str, kind: str) -> str | None:
    path = Path(value).expanduser()
    if not path.exists():
        return f"{key}: path does not exist: {value}"
    if kind == "directory" and not path.is_dir():
        return f"{key}: path exists but is not a directory: {value}"
    if kind == "file" and not path.is_file():
        return f"{key}: path exists but is not a file: {value}"
    return None


def validate_user_config(
    manifest: ExtensionManifest, values: dict[str, Any] | None
) -> tuple[list[str], list[str]]:
    """Check stored values against manifest.user_config. Returns (errors, warnings)."""
    errors: list[str] = []
    warnings: list[str] = []
    values = values or {}

    for key, param in manifest.user_config.items():
        value = values.get(key)
        if value is None:
            if param.required and param.default is None:
                errors.append(f"Missing required config: {key}")
            continue

        if param.multiple:
            if not isinstance(value, list):
                errors.append(f"Value for {key} must be an array (multiple: true)")
                continue
            items = value
        else:
            if isinstance(value, list):
                errors.append(f"Value for {key} must not be an array (multiple: false)")
                continue
            items = [value]

        type_errors = [
            f"Invalid type for {key}: {msg}"
            for msg in (_single_type_error(v, param.type) for v in items)
            if msg
        ]
        if type_errors:
            errors.extend(type_errors)
            continue

        for item in items:
            if param.type == "number":
                if param.min is not None and item < param.min:
                    errors.append(f"Value for {key} must be >= {param.min:g}")
                if param.max is not None and item > param.max:
                    errors.append(f"Value for {key} must be <= {param.max:g}")
            elif param.type in ("directory", "file"):
                warning = _path_warning(key, item, param.type)
                if warning:
                    warnings.append(warning)

    for key in values:
        if key not in manifest.user_config:
            warnings.append(f"Unknown config key: {key} (not defined in manifest user_config)")
    return errors, warnings


def effective_user_config(
    manifest: ExtensionManifest, values: dict[str, Any] | None
) -> dict[str, Any]:
    """Declared defaults overlaid with stored values."""
    result = {k: p.default for k, p in manifest.user_config.items() if p.default is not None}
    result.update({k: v for k, v in (values or {}).items() if v is not None})
    return result
