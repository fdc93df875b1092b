"""Discovery: aggregate tool catalogs of many servers into one namespaced directory."""

from toolhub.discovery.engine import DiscoveryEngine
from toolhub.discovery.models import (
    Resolution,
    ServerState,
    Tool,
    ToolDirectory,
    ToolReference,
    compute_ref_id,
    flatten_name,
    resolve_reference,
)
from toolhub.discovery.servers import (
    ServerConfigEntry,
    ServerConfigStore,
    load_configured_servers,
)

__all__ = [
    "DiscoveryEngine",
    "Resolution",
    "ServerConfigEntry",
    "ServerConfigStore",
    "ServerState",
    "Tool",
    "ToolDirectory",
    "ToolReference",
    "compute_ref_id",
    "flatten_name",
    "load_configured_servers",
    "resolve_reference",
]
