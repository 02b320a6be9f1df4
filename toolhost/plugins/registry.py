"""Plugin catalog - importing, updating, removing and executing plugins.

The catalog is a single YAML file mapping plugin id to its record, plus one
content file per plugin. An in-memory copy of the catalog is kept in step
with the file: every mutation writes the file first and only then swaps
the cache, all under one lock, so readers never see the two disagree.
Runtime processes (introspection and tool calls) run outside the lock.
"""

import asyncio
import copy
import os
import re
import uuid
from pathlib import Path
from typing import Any

import yaml

from toolhost.codec import build_introspection_script, build_invocation_script, decode_output
from toolhost.env import EnvStore
from toolhost.errors import (
    ConfigError,
    NotFoundError,
    PluginRuntimeError,
    StorageError,
    ToolhostError,
)
from toolhost.logging import log
from toolhost.plugins.models import Plugin, PluginWithContent, Tool
from toolhost.runtime import ExternalRuntime

ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
CATALOG_NAME = "list.yaml"
DENO_JSON = '{\n  "nodeModulesDir": "auto"\n}\n'
STAGED_PREFIX = ".staged_"
TEMP_PREFIX = "temp_"


def is_valid_id(plugin_id: str) -> bool:
    """Ids become file names, so only plain tokens are accepted."""
    return isinstance(plugin_id, str) and bool(ID_PATTERN.match(plugin_id))


def parse_metadata(plugin_id: str, value: Any) -> Plugin:
    """Build a Plugin from introspection output."""
    if not isinstance(value, dict):
        raise PluginRuntimeError("plugin metadata must be a JSON object")

    name = value.get("name")
    if not isinstance(name, str) or not name:
        raise PluginRuntimeError("plugin default export must declare a name")

    description = value.get("description")
    if description is not None and not isinstance(description, str):
        raise PluginRuntimeError("plugin description must be a string")

    tools_data = value.get("tools", [])
    if not isinstance(tools_data, list):
        raise PluginRuntimeError("plugin tools must be a list")

    tools = []
    for entry in tools_data:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str) or not entry["name"]:
            raise PluginRuntimeError(f"invalid tool entry: {entry!r}")
        tool_description = entry.get("description", "")
        if not isinstance(tool_description, str):
            raise PluginRuntimeError(f"description of tool {entry['name']!r} must be a string")
        tools.append(Tool(
            name=entry["name"],
            description=tool_description,
            parameters=entry.get("parameters"),
        ))

    return Plugin(id=plugin_id, name=name, description=description, tools=tools)


class PluginRegistry:
    """Durable plugin catalog plus the import/update/execute pipeline."""

    def __init__(
        self,
        plugins_dir: Path,
        runtime: ExternalRuntime,
        env_store: EnvStore,
        timeout: float | None = None,
    ):
        self.plugins_dir = plugins_dir
        self.catalog_file = plugins_dir / CATALOG_NAME
        self.runtime = runtime
        self.env_store = env_store
        self.timeout = timeout
        self._cache: dict[str, Plugin] | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Prepare the plugins directory and load the catalog."""
        try:
            await asyncio.to_thread(self._prepare_dir)
        except OSError as e:
            raise StorageError(f"cannot prepare {self.plugins_dir}: {e}") from e
        plugins = await self.list()
        log("info", "Plugin registry ready", plugins=len(plugins))

    def content_path(self, plugin_id: str) -> Path:
        """Content file for a plugin id."""
        return self.plugins_dir / f"{plugin_id}{self.runtime.extension}"

    # ----- Reads -----

    async def list(self) -> dict[str, Plugin]:
        """All plugins keyed by id."""
        async with self._lock:
            catalog = await self._load_locked()
            return copy.deepcopy(catalog)

    async def get(self, plugin_id: str) -> PluginWithContent | None:
        """A plugin with its source, or None if unknown."""
        if not is_valid_id(plugin_id):
            return None
        async with self._lock:
            catalog = await self._load_locked()
            plugin = catalog.get(plugin_id)
            if plugin is None:
                return None
            try:
                content = await asyncio.to_thread(self.content_path(plugin_id).read_text, encoding="utf-8")
            except OSError as e:
                raise StorageError(f"cannot read content of plugin {plugin_id}: {e}") from e
            return PluginWithContent(info=copy.deepcopy(plugin), content=content)

    # ----- Mutations -----

    async def import_plugin(self, content: str) -> Plugin:
        """Register new plugin source under a fresh id."""
        plugin_id = uuid.uuid4().hex
        plugin = await self._install(plugin_id, content, replace=False)
        log("info", "Plugin imported", plugin_id=plugin_id, name=plugin.name, tools=len(plugin.tools))
        return plugin

    async def update(self, plugin_id: str, content: str) -> Plugin:
        """Replace an existing plugin's source, keeping its id."""
        if not is_valid_id(plugin_id):
            raise NotFoundError(plugin_id)
        async with self._lock:
            catalog = await self._load_locked()
            if plugin_id not in catalog:
                raise NotFoundError(plugin_id)
        plugin = await self._install(plugin_id, content, replace=True)
        log("info", "Plugin updated", plugin_id=plugin_id, name=plugin.name, tools=len(plugin.tools))
        return plugin

    async def remove(self, plugin_id: str) -> None:
        """Remove a plugin; unknown ids are ignored."""
        if not is_valid_id(plugin_id):
            return
        async with self._lock:
            catalog = await self._load_locked()
            if plugin_id in catalog:
                remaining = {k: v for k, v in catalog.items() if k != plugin_id}
                await self._save_locked(remaining)
                log("info", "Plugin removed", plugin_id=plugin_id)
            try:
                await asyncio.to_thread(self.content_path(plugin_id).unlink, missing_ok=True)
            except OSError as e:
                log("error", "Failed to delete plugin content", plugin_id=plugin_id, error=str(e))

    # ----- Execution -----

    async def execute(self, plugin_id: str, tool_name: str, args: Any) -> Any:
        """Call one tool of a plugin and return its decoded result."""
        if not is_valid_id(plugin_id):
            raise NotFoundError(plugin_id)
        async with self._lock:
            catalog = await self._load_locked()
            if plugin_id not in catalog:
                raise NotFoundError(plugin_id)
            plugin_path = self.content_path(plugin_id)

        try:
            script = build_invocation_script(plugin_path, tool_name, args)
            env = await self.env_store.load()
            raw = await self.runtime.execute(script, env, self.timeout)
            result = decode_output(raw)
        except ToolhostError as e:
            log("warn", f"Plugin tool failed: {tool_name}", plugin_id=plugin_id, tool=tool_name, error=e.message)
            raise

        log("info", f"Plugin tool executed: {tool_name}", plugin_id=plugin_id, tool=tool_name)
        return result

    # ----- Internals -----

    async def _install(self, plugin_id: str, content: str, replace: bool) -> Plugin:
        """Stage content, introspect it, then commit file + catalog together.

        Nothing visible changes unless every step succeeds.
        """
        staged = self.plugins_dir / f"{STAGED_PREFIX}{plugin_id}_{uuid.uuid4().hex[:8]}{self.runtime.extension}"
        try:
            try:
                await asyncio.to_thread(staged.write_text, content, encoding="utf-8")
            except OSError as e:
                raise StorageError(f"cannot write plugin content: {e}") from e

            script = build_introspection_script(staged)
            env = await self.env_store.load()
            raw = await self.runtime.execute(script, env, self.timeout)
            plugin = parse_metadata(plugin_id, decode_output(raw))

            async with self._lock:
                catalog = await self._load_locked()
                if replace and plugin_id not in catalog:
                    # Removed while we were introspecting
                    raise NotFoundError(plugin_id)
                await asyncio.to_thread(self._commit, plugin_id, staged, {**catalog, plugin_id: plugin})
                self._cache = {**catalog, plugin_id: plugin}
            return copy.deepcopy(plugin)
        finally:
            try:
                staged.unlink(missing_ok=True)
            except OSError as e:
                log("error", "Failed to remove staged plugin", path=str(staged), error=str(e))

    def _commit(self, plugin_id: str, staged: Path, catalog: dict[str, Plugin]) -> None:
        """Move staged content into place and write the catalog.

        On catalog failure the previous content file is restored.
        """
        target = self.content_path(plugin_id)
        try:
            previous = target.read_bytes() if target.exists() else None
            os.replace(staged, target)
        except OSError as e:
            raise StorageError(f"cannot store plugin {plugin_id}: {e}") from e
        try:
            self._write_catalog(catalog)
        except StorageError:
            if previous is None:
                target.unlink(missing_ok=True)
            else:
                target.write_bytes(previous)
            raise

    async def _load_locked(self) -> dict[str, Plugin]:
        if self._cache is None:
            self._cache = await asyncio.to_thread(self._read_catalog)
        return self._cache

    async def _save_locked(self, catalog: dict[str, Plugin]) -> None:
        await asyncio.to_thread(self._write_catalog, catalog)
        self._cache = catalog

    def _read_catalog(self) -> dict[str, Plugin]:
        if not self.catalog_file.exists():
            return {}
        try:
            text = self.catalog_file.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"cannot read {self.catalog_file}: {e}") from e
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{self.catalog_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{self.catalog_file}: top level must be a mapping")

        plugins: dict[str, Plugin] = {}
        for key, record in data.items():
            if not isinstance(record, dict):
                raise ConfigError(f"{self.catalog_file}: entry {key!r} is not a mapping")
            # The mapping key is authoritative for the id
            plugins[str(key)] = Plugin.from_dict({**record, "id": str(key)})
        return plugins

    def _write_catalog(self, catalog: dict[str, Plugin]) -> None:
        data = {plugin_id: plugin.to_dict() for plugin_id, plugin in catalog.items()}
        tmp = self.catalog_file.with_name(f"{CATALOG_NAME}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
            os.replace(tmp, self.catalog_file)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"cannot write {self.catalog_file}: {e}") from e

    def _prepare_dir(self) -> None:
        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        deno_json = self.plugins_dir / "deno.json"
        if not deno_json.exists():
            deno_json.write_text(DENO_JSON, encoding="utf-8")
        # Leftovers from a host that died mid-execution
        for pattern in (f"{TEMP_PREFIX}*{self.runtime.extension}", f"{STAGED_PREFIX}*"):
            for leftover in self.plugins_dir.glob(pattern):
                leftover.unlink(missing_ok=True)
