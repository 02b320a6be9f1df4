"""Command facade: the operations the UI layer calls.

Host owns one runtime, env store, plugin registry and service supervisor.
Nothing is created at import time; call init() (or use ``async with``)
before anything else and shutdown() when the application exits so no
service process outlives it.
"""

from typing import Any, Callable

from toolhost.config import Config, get_config, get_data_paths
from toolhost.env import EnvStore, EnvVar
from toolhost.logging import log, setup_logging
from toolhost.plugins import PluginRegistry
from toolhost.runtime import ExternalRuntime
from toolhost.services import ServiceSupervisor


class Host:
    """Explicitly constructed plugin/service host."""

    def __init__(
        self,
        config: Config | None = None,
        runtime: ExternalRuntime | None = None,
        supervisor: ServiceSupervisor | None = None,
    ):
        self.config = config or get_config()
        plugins_dir = get_data_paths().plugins
        self.env_store = EnvStore(get_data_paths().env_file)
        self.runtime = runtime or ExternalRuntime.from_config(self.config.runtime, plugins_dir)
        self.registry = PluginRegistry(plugins_dir, self.runtime, self.env_store)
        self.supervisor = supervisor or ServiceSupervisor.from_config(self.config.services, self.env_store)
        self._initialized = False

    async def init(self) -> None:
        """Prepare storage and load the plugin catalog."""
        if self._initialized:
            return
        setup_logging()
        await self.registry.init()
        self._initialized = True

    async def shutdown(self) -> None:
        """Stop all services."""
        await self.supervisor.stop_all()
        log("info", "Host shut down")

    async def __aenter__(self) -> "Host":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # ----- Plugins -----

    async def plugin_import(self, content: str) -> dict:
        plugin = await self.registry.import_plugin(content)
        return plugin.to_dict()

    async def plugins_list(self) -> dict[str, dict]:
        plugins = await self.registry.list()
        return {plugin_id: plugin.to_dict() for plugin_id, plugin in plugins.items()}

    async def plugin_get(self, plugin_id: str) -> dict | None:
        found = await self.registry.get(plugin_id)
        return found.to_dict() if found else None

    async def plugin_update(self, plugin_id: str, content: str) -> dict:
        plugin = await self.registry.update(plugin_id, content)
        return plugin.to_dict()

    async def plugin_remove(self, plugin_id: str) -> None:
        await self.registry.remove(plugin_id)

    async def plugin_execute(self, plugin_id: str, tool: str, args: Any) -> dict:
        """Run a tool; the value is wrapped as ``{"result": value}``."""
        result = await self.registry.execute(plugin_id, tool, args)
        return {"result": result}

    # ----- Environment -----

    async def env_list(self) -> list[dict]:
        return [var.to_dict() for var in await self.env_store.load()]

    async def env_save(self, env_vars: list[dict | EnvVar]) -> None:
        await self.env_store.save([
            var if isinstance(var, EnvVar) else EnvVar.from_dict(var) for var in env_vars
        ])

    # ----- Runtime -----

    async def runtime_check(self) -> dict[str, str]:
        availability = await self.runtime.probe()
        return availability.to_dict()

    async def runtime_install(self, on_progress: Callable[[str], None] | None = None) -> bool:
        return await self.runtime.install(on_progress)

    # ----- Services -----

    async def start_service(self, service_id: str, env: dict[str, str] | None = None) -> None:
        await self.supervisor.start(service_id, env)

    async def stop_service(self, service_id: str) -> None:
        await self.supervisor.stop(service_id)

    async def get_service_info(self, service_id: str) -> tuple[str, list[dict]]:
        description, tools = await self.supervisor.get_service_info(service_id)
        return description, [tool.to_dict() for tool in tools]

    async def call_tool(self, service_id: str, tool: str, args: Any) -> dict:
        return await self.supervisor.call_tool(service_id, tool, args)

    async def list_services(self) -> list[str]:
        return await self.supervisor.list_services()

