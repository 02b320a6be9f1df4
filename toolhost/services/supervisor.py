"""MCP service supervisor.

Starts long-running services as child processes that speak MCP over
stdio, keeps one live session per service id, and forwards tool calls to
the right one.

Each service is owned by a dedicated asyncio task that opens the stdio
transport and client session, completes the handshake, and then parks on
a stop event. Entering and leaving the transport in the same task keeps
the SDK's task groups happy; other tasks only ever send requests through
the session.
"""

import asyncio
import tempfile
from contextlib import suppress
from dataclasses import dataclass, field
from typing import IO, Any

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from toolhost.env import EnvStore
from toolhost.errors import (
    ExecutionTimeoutError,
    NotFoundError,
    OutputDecodeError,
    PluginRuntimeError,
    RuntimeNotInstalledError,
    ToolhostError,
)
from toolhost.logging import log
from toolhost.plugins.models import Tool

SERVICE_ID_PLACEHOLDER = "{service_id}"
STDERR_TAIL_CHARS = 500

_CLOSED_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


def _root_cause(exc: BaseException) -> BaseException:
    """Unwrap single-member exception groups raised by the SDK's task groups."""
    while isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return exc


@dataclass
class ServiceHandle:
    """A running service."""

    service_id: str
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    errlog: IO[str] | None = None
    task: asyncio.Task | None = None
    session: ClientSession | None = None
    server_name: str = ""
    server_version: str = ""
    instructions: str | None = None
    tools: list[Tool] | None = None  # fetched on first get_service_info()
    stopping: bool = False

    def describe(self) -> str:
        """Human-readable peer description."""
        description = f"{self.server_name} {self.server_version}".strip() or self.service_id
        if self.instructions:
            description += f"\n{self.instructions}"
        return description

    def stderr_tail(self) -> str:
        """Last part of what the service wrote to stderr."""
        if self.errlog is None or self.errlog.closed:
            return ""
        try:
            self.errlog.seek(0)
            return self.errlog.read()[-STDERR_TAIL_CHARS:].strip()
        except (OSError, ValueError):
            return ""

    def close_errlog(self) -> None:
        if self.errlog is not None and not self.errlog.closed:
            self.errlog.close()


class ServiceSupervisor:
    """Starts, stops and talks to MCP services keyed by service id."""

    def __init__(
        self,
        env_store: EnvStore,
        command: str = "npx",
        args: list[str] | None = None,
        handshake_timeout: float = 60.0,
        call_timeout: float = 120.0,
        stop_timeout: float = 5.0,
    ):
        self.env_store = env_store
        self.command = command
        self.args = list(args) if args is not None else ["-y", SERVICE_ID_PLACEHOLDER]
        self.handshake_timeout = handshake_timeout
        self.call_timeout = call_timeout
        self.stop_timeout = stop_timeout
        self._services: dict[str, ServiceHandle] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config, env_store: EnvStore) -> "ServiceSupervisor":
        """Build a supervisor from a ServicesConfig."""
        return cls(
            env_store=env_store,
            command=config.command,
            args=config.args,
            handshake_timeout=config.handshake_timeout,
            call_timeout=config.call_timeout,
            stop_timeout=config.stop_timeout,
        )

    def launch_args(self, service_id: str) -> list[str]:
        return [arg.replace(SERVICE_ID_PLACEHOLDER, service_id) for arg in self.args]

    # ----- Lifecycle -----

    async def start(self, service_id: str, env_overrides: dict[str, str] | None = None) -> None:
        """Start a service; does nothing if it is already running."""
        async with self._lock:
            if service_id in self._services:
                log("info", "Service already running", service_id=service_id)
                return

        env = await self.env_store.as_dict()
        env.update(env_overrides or {})
        handle = await self._spawn(service_id, env)

        async with self._lock:
            winner = self._services.get(service_id)
            if winner is None:
                self._services[service_id] = handle
        if winner is not None:
            # Lost a start race; keep the handle that was stored first
            log("info", "Discarding duplicate service start", service_id=service_id)
            await self._shutdown(handle)
            return

        log("info", "Service started", service_id=service_id, server=handle.describe().splitlines()[0])

    async def stop(self, service_id: str) -> None:
        """Stop a running service.

        Raises:
            NotFoundError: the service is not running.
        """
        async with self._lock:
            handle = self._services.pop(service_id, None)
        if handle is None:
            raise NotFoundError(service_id)
        await self._shutdown(handle)
        log("info", "Service stopped", service_id=service_id)

    async def stop_all(self) -> None:
        """Stop every service. Failures are logged, never raised."""
        async with self._lock:
            handles = list(self._services.values())
            self._services.clear()

        results = await asyncio.gather(*(self._shutdown(h) for h in handles), return_exceptions=True)
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                log("error", "Service failed to stop", service_id=handle.service_id, error=str(result))
            else:
                log("info", "Service stopped", service_id=handle.service_id)

    async def list_services(self) -> list[str]:
        """Ids of running services."""
        async with self._lock:
            return sorted(self._services)

    async def is_running(self, service_id: str) -> bool:
        async with self._lock:
            return service_id in self._services

    # ----- Calls -----

    async def get_service_info(self, service_id: str) -> tuple[str, list[Tool]]:
        """Peer description and full tool catalog of a running service."""
        handle = await self._get(service_id)
        session = handle.session
        if handle.tools is None:
            tools: list[Tool] = []
            cursor = None
            while True:
                page = await self._request(
                    service_id,
                    session.list_tools(cursor=cursor) if cursor else session.list_tools(),
                )
                tools.extend(
                    Tool(name=t.name, description=t.description or "", parameters=t.inputSchema)
                    for t in page.tools
                )
                cursor = page.nextCursor
                if not cursor:
                    break
            handle.tools = tools
        return handle.describe(), list(handle.tools)

    async def call_tool(self, service_id: str, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        """Forward a tool call and return the MCP CallToolResult as a dict.

        Tool-level failures come back inside the result (``isError``);
        only transport and protocol failures raise.
        """
        handle = await self._get(service_id)
        if not isinstance(args, dict):
            raise OutputDecodeError("tool arguments must be a JSON object")
        result = await self._request(service_id, handle.session.call_tool(tool_name, args))
        log(
            "warn" if result.isError else "info",
            f"Service tool called: {tool_name}",
            service_id=service_id,
            tool=tool_name,
            is_error=bool(result.isError),
        )
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    # ----- Internals -----

    async def _get(self, service_id: str) -> ServiceHandle:
        async with self._lock:
            handle = self._services.get(service_id)
        if handle is None or handle.session is None:
            raise NotFoundError(service_id)
        return handle

    async def _request(self, service_id: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.call_timeout)
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(self.call_timeout) from None
        except McpError as e:
            raise PluginRuntimeError(f"{service_id}: {e.error.message}") from e
        except _CLOSED_ERRORS as e:
            raise PluginRuntimeError(f"{service_id}: connection closed") from e

    async def _spawn(self, service_id: str, env: dict[str, str]) -> ServiceHandle:
        """Launch the process, run the handshake, return a ready handle."""
        params = StdioServerParameters(command=self.command, args=self.launch_args(service_id), env=env)
        handle = ServiceHandle(
            service_id=service_id,
            errlog=tempfile.TemporaryFile(mode="w+t", encoding="utf-8"),
        )
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        handle.task = asyncio.create_task(self._serve(handle, params, ready), name=f"mcp:{service_id}")

        try:
            await asyncio.wait_for(ready, self.handshake_timeout)
        except asyncio.TimeoutError:
            await self._shutdown(handle)
            log("error", "Service handshake timed out", service_id=service_id)
            raise ExecutionTimeoutError(self.handshake_timeout) from None
        except Exception as e:
            error = self._launch_error(service_id, e, handle)
            await self._shutdown(handle)
            log("error", "Service failed to start", service_id=service_id, error=error.message)
            raise error from e
        return handle

    async def _serve(self, handle: ServiceHandle, params: StdioServerParameters, ready: asyncio.Future) -> None:
        """Owner task: hold the transport and session open until stopped."""
        try:
            async with stdio_client(params, errlog=handle.errlog) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    init = await session.initialize()
                    handle.session = session
                    handle.server_name = init.serverInfo.name
                    handle.server_version = init.serverInfo.version
                    handle.instructions = init.instructions
                    if not ready.done():
                        ready.set_result(None)
                    await handle.stop_event.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            elif not handle.stopping:
                log("error", "Service exited", service_id=handle.service_id, error=str(_root_cause(e)))
        finally:
            if not ready.done():
                ready.set_exception(PluginRuntimeError(f"{handle.service_id} exited during startup"))
            handle.session = None
            self._forget(handle)

    def _forget(self, handle: ServiceHandle) -> None:
        """Drop a handle whose owner task ended on its own."""
        # Runs on the event loop with no await in between, so no lock needed
        if self._services.get(handle.service_id) is handle:
            del self._services[handle.service_id]
            log("warn", "Service exited unexpectedly", service_id=handle.service_id)
            handle.close_errlog()

    async def _shutdown(self, handle: ServiceHandle) -> None:
        """Signal the owner task and wait for it, cancelling if it lingers."""
        handle.stopping = True
        handle.stop_event.set()
        task = handle.task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), self.stop_timeout)
            except asyncio.TimeoutError:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        handle.close_errlog()

    def _launch_error(self, service_id: str, exc: BaseException, handle: ServiceHandle) -> ToolhostError:
        cause = _root_cause(exc)
        if isinstance(cause, ToolhostError):
            return cause
        if isinstance(cause, FileNotFoundError):
            return RuntimeNotInstalledError(f"{self.command} not found")
        if isinstance(cause, McpError):
            return PluginRuntimeError(f"{service_id}: {cause.error.message}")
        detail = f"{service_id} failed to start: {cause}"
        if tail := handle.stderr_tail():
            detail += f" ({tail})"
        return PluginRuntimeError(detail)
