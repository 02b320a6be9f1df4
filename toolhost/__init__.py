"""toolhost - host for script plugins and MCP tool services."""

__version__ = "0.1.0"
