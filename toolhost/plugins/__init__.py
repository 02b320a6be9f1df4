"""Plugin catalog and execution."""

from toolhost.plugins.models import Plugin, PluginWithContent, Tool
from toolhost.plugins.registry import PluginRegistry, is_valid_id, parse_metadata

__all__ = [
    "Plugin",
    "PluginWithContent",
    "Tool",
    "PluginRegistry",
    "is_valid_id",
    "parse_metadata",
]
