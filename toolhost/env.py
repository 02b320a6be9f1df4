"""Persisted environment variables injected into plugins and services."""

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path

from toolhost.errors import ConfigError, StorageError
from toolhost.logging import log

_INVALID_KEY = re.compile(r"[=\s]")


@dataclass
class EnvVar:
    """A single KEY=VALUE pair."""

    key: str
    value: str

    @classmethod
    def from_dict(cls, data: dict) -> "EnvVar":
        """Create from dictionary."""
        return cls(key=str(data.get("key", "")), value=str(data.get("value", "")))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"key": self.key, "value": self.value}


def parse_env(text: str) -> list[EnvVar]:
    """Parse newline-delimited KEY=VALUE text.

    Blank lines and lines starting with '#' are ignored, as are lines
    without '='. Later duplicates replace earlier ones.
    """
    found: dict[str, EnvVar] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        found[key] = EnvVar(key=key, value=value.strip())
    return list(found.values())


def format_env(env_vars: list[EnvVar]) -> str:
    """Render env vars back to file text."""
    return "\n".join(f"{var.key}={var.value}" for var in env_vars)


def _validate(env_vars: list[EnvVar]) -> list[EnvVar]:
    deduped: dict[str, EnvVar] = {}
    for var in env_vars:
        key = var.key.strip()
        if not key or _INVALID_KEY.search(key):
            raise ConfigError(f"invalid environment variable name: {var.key!r}")
        if "\n" in var.value or "\r" in var.value:
            raise ConfigError(f"value of {key} must be a single line")
        deduped[key] = EnvVar(key=key, value=var.value.strip())
    return list(deduped.values())


class EnvStore:
    """File-backed env var store.

    Values are read from disk on every load() so edits made through
    save() (or by hand) apply to the very next execution.
    """

    def __init__(self, env_file: Path):
        self.env_file = env_file
        self._lock = asyncio.Lock()

    async def load(self) -> list[EnvVar]:
        """Load all env vars; a missing file means none."""
        async with self._lock:
            try:
                text = await asyncio.to_thread(self._read)
            except OSError as e:
                raise StorageError(f"cannot read {self.env_file}: {e}") from e
        return parse_env(text)

    async def as_dict(self) -> dict[str, str]:
        """Load env vars as a mapping suitable for a process environment."""
        return {var.key: var.value for var in await self.load()}

    async def save(self, env_vars: list[EnvVar]) -> None:
        """Replace the stored env vars."""
        cleaned = _validate(env_vars)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write, format_env(cleaned))
            except OSError as e:
                raise StorageError(f"cannot write {self.env_file}: {e}") from e
        log("info", "Environment saved", count=len(cleaned))

    def _read(self) -> str:
        if not self.env_file.exists():
            return ""
        return self.env_file.read_text(encoding="utf-8")

    def _write(self, content: str) -> None:
        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.env_file.with_name(self.env_file.name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, self.env_file)
