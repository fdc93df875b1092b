"""Extension packages: discovery, unpacking, validation and server descriptors."""

from toolhub.extensions.manager import ExtensionManager, ExtensionRecord, substitute_template
from toolhub.extensions.manifest import (
    ExtensionManifest,
    UserConfigParam,
    check_unpacked,
    load_manifest,
    validate_user_config,
)

__all__ = [
    "ExtensionManager",
    "ExtensionManifest",
    "ExtensionRecord",
    "UserConfigParam",
    "check_unpacked",
    "load_manifest",
    "substitute_template",
    "validate_user_config",
]
