"""Data models for the plugin catalog."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Tool:
    """One callable function exported by a plugin or offered by a service."""

    name: str
    description: str = ""
    parameters: Any = None  # JSON-schema-like value, optional

    @classmethod
    def from_dict(cls, data: dict) -> "Tool":
        """Create tool from dictionary."""
        return cls(
            name=data.get("name", ""),
            description=data.get("description") or "",
            parameters=data.get("parameters"),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary, omitting absent parameters."""
        result: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.parameters is not None:
            result["parameters"] = self.parameters
        return result


@dataclass
class Plugin:
    """A catalog entry: plugin metadata plus its tools."""

    id: str
    name: str
    description: str | None = None
    tools: list[Tool] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Plugin":
        """Create plugin from a catalog record."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description"),
            tools=[Tool.from_dict(t) for t in data.get("tools") or []],
        )

    def to_dict(self) -> dict:
        """Convert to a catalog record."""
        result: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.description is not None:
            result["description"] = self.description
        result["tools"] = [t.to_dict() for t in self.tools]
        return result


@dataclass
class PluginWithContent:
    """A plugin together with its script source."""

    info: Plugin
    content: str

    def to_dict(self) -> dict:
        return {"info": self.info.to_dict(), "content": self.content}
