"""toolhub: one MCP endpoint in front of many servers, with curated toolsets."""

__version__ = "0.1.0"
