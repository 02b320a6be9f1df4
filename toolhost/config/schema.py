"""Configuration dataclasses for toolhost."""

import dataclasses
import sys
from dataclasses import dataclass, field
from typing import Any


def _dc_from_dict(cls, data: dict[str, Any]):
    """Construct a dataclass from a dict, using class defaults for missing keys."""
    return cls(**{
        f.name: data.get(f.name, f.default if f.default is not dataclasses.MISSING else f.default_factory())
        for f in dataclasses.fields(cls)
    })


def _default_permissions() -> list[str]:
    return ["--allow-read", "--allow-write", "--allow-net", "--allow-env"]


def _default_service_command() -> str:
    return "cmd" if sys.platform == "win32" else "npx"


def _default_service_args() -> list[str]:
    if sys.platform == "win32":
        return ["/c", "npx", "-y", "{service_id}"]
    return ["-y", "{service_id}"]


@dataclass
class RuntimeConfig:
    """Script runtime (Deno) configuration."""

    # Binary name or path; bare names are resolved on PATH and in well-known locations
    command: str = "deno"
    # Permission flags passed after `run --no-check`
    # Never add --allow-all or --allow-run here unless plugins really need it
    permissions: list[str] = field(default_factory=_default_permissions)
    # Extra candidate binary locations checked by probe()
    extra_paths: list[str] = field(default_factory=list)
    # Seconds before a plugin execution is killed
    timeout: float = 30.0
    # Seconds allowed for `<command> --version`
    probe_timeout: float = 10.0


@dataclass
class ServicesConfig:
    """MCP service launch configuration."""

    # Launcher; "{service_id}" in args is replaced by the service id
    command: str = field(default_factory=_default_service_command)
    args: list[str] = field(default_factory=_default_service_args)
    # Seconds allowed for the MCP initialize handshake
    handshake_timeout: float = 60.0
    # Seconds allowed for a single tools/call round-trip
    call_timeout: float = 120.0
    # Seconds to wait for a graceful stop before cancelling
    stop_timeout: float = 5.0


@dataclass
class Config:
    """Main configuration container."""

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    data_dir: str = ""  # Custom data directory path (prefer TOOLHOST_DATA_DIR env var)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if dataclasses.is_dataclass(f.type if isinstance(f.type, type) else None):
                kwargs[f.name] = _dc_from_dict(f.type, data.get(f.name) or {})
            else:
                default = f.default if f.default is not dataclasses.MISSING else f.default_factory()
                kwargs[f.name] = data.get(f.name, default)

        return cls(**kwargs)
