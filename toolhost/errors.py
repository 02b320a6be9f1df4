"""Error taxonomy shared by the runtime, registry and service supervisor.

Every error carries a stable ``kind`` so callers (the UI in particular) can
tell "fix your plugin code" apart from "install the runtime" or "try again,
it timed out" without parsing message text.
"""

from typing import Any


class ToolhostError(Exception):
    """Base class for all toolhost errors."""

    kind = "error"
    prefix = "Error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.prefix}: {self.detail}"
        return self.prefix

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the command boundary."""
        return {"kind": self.kind, "message": self.message}


class StorageError(ToolhostError):
    """Filesystem failure while reading or writing toolhost data."""

    kind = "io"
    prefix = "I/O error"


class OutputDecodeError(ToolhostError):
    """A value could not be decoded or encoded as JSON.

    ``raw`` keeps the offending text for diagnostics.
    """

    kind = "json"
    prefix = "Invalid JSON"

    def __init__(self, detail: str, raw: str = ""):
        self.raw = raw
        super().__init__(detail)


class ConfigError(ToolhostError):
    """Catalog, env or config file could not be parsed or validated."""

    kind = "config"
    prefix = "Configuration error"


class RuntimeNotInstalledError(ToolhostError):
    """The external script runtime (or a service launcher) is missing."""

    kind = "runtime_not_installed"
    prefix = "Script runtime is not installed"


class ExecutionTimeoutError(ToolhostError):
    """An execution or service round-trip exceeded its time budget."""

    kind = "timeout"
    prefix = "Execution timed out"

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"no result after {seconds:g}s")


class NotFoundError(ToolhostError):
    """Unknown plugin or service id."""

    kind = "not_found"
    prefix = "Not found"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(item_id)


class PluginRuntimeError(ToolhostError):
    """The plugin's or service's own code failed."""

    kind = "plugin"
    prefix = "Plugin error"
