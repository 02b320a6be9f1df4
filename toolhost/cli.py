"""CLI interface for toolhost."""

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from toolhost import __version__
from toolhost.commands import Host
from toolhost.errors import ToolhostError

console = Console()


def _run(action: Callable[[Host], Awaitable[Any]]) -> Any:
    """Run one action against a fresh host, shutting it down afterwards."""

    async def main():
        async with Host() as host:
            return await action(host)

    try:
        return asyncio.run(main())
    except ToolhostError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise SystemExit(1)


def _parse_json_args(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e.msg}", param_hint="--args")


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def _print_tools(tools: list[dict]) -> None:
    if not tools:
        console.print("  [dim](no tools)[/dim]")
        return
    for tool in tools:
        console.print(f"  [bold]{escape(tool['name'])}[/bold]")
        if tool.get("description"):
            console.print(f"    [dim]{escape(tool['description'])}[/dim]")


@click.group()
@click.version_option(version=__version__)
def cli():
    """toolhost - run script plugins and MCP services as tools."""
    pass


# ===== Plugin Commands =====


@cli.group()
def plugin():
    """Manage and run script plugins."""
    pass


@plugin.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plugin_import(file: Path):
    """Import a plugin from a script file."""
    content = file.read_text(encoding="utf-8")
    with console.status("[bold blue]Inspecting plugin...", spinner="dots"):
        info = _run(lambda host: host.plugin_import(content))
    console.print(f"[green]Imported[/green] [bold]{escape(info['name'])}[/bold] [dim]({info['id']})[/dim]")
    _print_tools(info["tools"])


@plugin.command("list")
def plugin_list():
    """List imported plugins."""
    plugins = _run(lambda host: host.plugins_list())

    console.print(Panel.fit("[bold]Plugins[/bold]", border_style="blue"))
    console.print()
    if not plugins:
        console.print("[dim]No plugins imported[/dim]")
        return

    for plugin_id, info in plugins.items():
        console.print(f"[bold]{escape(info['name'])}[/bold] [dim]{plugin_id}[/dim]")
        if info.get("description"):
            console.print(f"  {escape(info['description'])}")
        tool_names = ", ".join(t["name"] for t in info["tools"]) or "(no tools)"
        console.print(f"  [dim]Tools: {escape(tool_names)}[/dim]")
        console.print()


@plugin.command("show")
@click.argument("plugin_id")
def plugin_show(plugin_id: str):
    """Show a plugin's metadata and source."""
    found = _run(lambda host: host.plugin_get(plugin_id))
    if found is None:
        console.print(f"[yellow]Plugin not found: {escape(plugin_id)}[/yellow]")
        raise SystemExit(1)

    info = found["info"]
    console.print(Panel.fit(f"[bold]{escape(info['name'])}[/bold] [dim]{plugin_id}[/dim]", border_style="blue"))
    _print_tools(info["tools"])
    console.print()
    console.print(found["content"], markup=False, highlight=False)


@plugin.command("update")
@click.argument("plugin_id")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plugin_update(plugin_id: str, file: Path):
    """Replace a plugin's source."""
    content = file.read_text(encoding="utf-8")
    info = _run(lambda host: host.plugin_update(plugin_id, content))
    console.print(f"[green]Updated[/green] [bold]{escape(info['name'])}[/bold]")
    _print_tools(info["tools"])


@plugin.command("remove")
@click.argument("plugin_id")
def plugin_remove(plugin_id: str):
    """Remove a plugin."""
    _run(lambda host: host.plugin_remove(plugin_id))
    console.print(f"[green]Removed[/green] {escape(plugin_id)}")


@plugin.command("exec")
@click.argument("plugin_id")
@click.argument("tool")
@click.option("--args", "args_json", default="{}", help="Tool arguments as a JSON value")
def plugin_exec(plugin_id: str, tool: str, args_json: str):
    """Call one tool of a plugin."""
    args = _parse_json_args(args_json)
    with console.status(f"[bold blue]Running {escape(tool)}...", spinner="dots"):
        output = _run(lambda host: host.plugin_execute(plugin_id, tool, args))
    console.print_json(json.dumps(output))


# ===== Environment Commands =====


@cli.group()
def env():
    """Manage environment variables passed to plugins and services."""
    pass


@env.command("list")
@click.option("--show-values", is_flag=True, help="Print values instead of masking them")
def env_list(show_values: bool):
    """List stored environment variables."""
    env_vars = _run(lambda host: host.env_list())
    if not env_vars:
        console.print("[dim]No environment variables set[/dim]")
        return
    for var in env_vars:
        value = var["value"] if show_values else "[dim](set)[/dim]"
        console.print(f"[bold]{escape(var['key'])}[/bold] = {escape(value) if show_values else value}")


@env.command("set")
@click.argument("key")
@click.argument("value")
def env_set(key: str, value: str):
    """Set (or replace) one environment variable."""

    async def action(host: Host):
        current = [v for v in await host.env_list() if v["key"] != key]
        await host.env_save(current + [{"key": key, "value": value}])

    _run(action)
    console.print(f"[green]Saved[/green] {escape(key)}")


@env.command("unset")
@click.argument("key")
def env_unset(key: str):
    """Remove one environment variable."""

    async def action(host: Host) -> bool:
        current = await host.env_list()
        remaining = [v for v in current if v["key"] != key]
        await host.env_save(remaining)
        return len(remaining) != len(current)

    if _run(action):
        console.print(f"[green]Removed[/green] {escape(key)}")
    else:
        console.print(f"[yellow]{escape(key)} was not set[/yellow]")


# ===== Runtime Commands =====


@cli.group()
def runtime():
    """Inspect or install the script runtime."""
    pass


@runtime.command("check")
def runtime_check():
    """Check whether the script runtime is installed."""
    status = _run(lambda host: host.runtime_check())
    if status["installed"] == "true":
        console.print(f"[green]Installed[/green] version {status['version']}")
        console.print(f"  [dim]{escape(status['path'])}[/dim]")
    else:
        console.print("[yellow]Script runtime is not installed[/yellow]")
        console.print("  [dim]Run: toolhost runtime install[/dim]")
        raise SystemExit(1)


@runtime.command("install")
def runtime_install():
    """Download and install the script runtime."""

    def progress(line: str) -> None:
        console.print(f"[dim]{escape(line)}[/dim]")

    if _run(lambda host: host.runtime_install(progress)):
        console.print("[green]Runtime installed[/green]")
    else:
        console.print("[red]Runtime installation failed[/red]")
        raise SystemExit(1)


# ===== Service Commands =====


@cli.group()
def service():
    """Run MCP services (started and stopped within one command)."""
    pass


@service.command("tools")
@click.argument("service_id")
@click.option("--env", "env_pairs", multiple=True, help="Extra KEY=VALUE for the service")
def service_tools(service_id: str, env_pairs: tuple[str, ...]):
    """Start a service and list its tools."""
    env_overrides = _parse_env_pairs(env_pairs)

    async def action(host: Host):
        await host.start_service(service_id, env_overrides)
        return await host.get_service_info(service_id)

    with console.status(f"[bold blue]Starting {escape(service_id)}...", spinner="dots"):
        description, tools = _run(action)
    console.print(Panel.fit(f"[bold]{escape(description)}[/bold]", border_style="blue"))
    _print_tools(tools)


@service.command("call")
@click.argument("service_id")
@click.argument("tool")
@click.option("--args", "args_json", default="{}", help="Tool arguments as a JSON object")
@click.option("--env", "env_pairs", multiple=True, help="Extra KEY=VALUE for the service")
def service_call(service_id: str, tool: str, args_json: str, env_pairs: tuple[str, ...]):
    """Start a service and call one of its tools."""
    args = _parse_json_args(args_json)
    env_overrides = _parse_env_pairs(env_pairs)

    async def action(host: Host):
        await host.start_service(service_id, env_overrides)
        return await host.call_tool(service_id, tool, args)

    with console.status(f"[bold blue]Calling {escape(tool)}...", spinner="dots"):
        result = _run(action)
    console.print_json(json.dumps(result))
    if result.get("isError"):
        raise SystemExit(1)


# ===== Logs =====


@cli.command()
@click.option("--level", "-l", default="all", type=click.Choice(["all", "error", "warn", "info", "debug"]))
@click.option("--limit", "-n", default=50, help="Number of entries to show")
@click.option("--plugin", "plugin_id", default=None, help="Only entries for this plugin id")
@click.option("--service", "service_id", default=None, help="Only entries for this service id")
def logs(level: str, limit: int, plugin_id: str | None, service_id: str | None):
    """Show recent log entries."""
    from toolhost.logging import get_logs

    fields = {}
    if plugin_id:
        fields["plugin_id"] = plugin_id
    if service_id:
        fields["service_id"] = service_id
    entries = get_logs(level=level, limit=limit, **fields)
    if not entries:
        console.print("[dim]No log entries[/dim]")
        return

    colors = {"error": "red", "warn": "yellow", "info": "blue", "debug": "dim"}
    for entry in reversed(entries):
        entry_level = entry.get("level", "info")
        color = colors.get(entry_level, "white")
        extra = {k: v for k, v in entry.items() if k not in ("timestamp", "level", "message")}
        suffix = f" [dim]{escape(json.dumps(extra, default=str))}[/dim]" if extra else ""
        console.print(
            f"[dim]{entry.get('timestamp', '')[:19]}[/dim] [{color}]{entry_level:5}[/{color}] "
            f"{escape(entry.get('message', ''))}{suffix}"
        )


if __name__ == "__main__":
    cli()
