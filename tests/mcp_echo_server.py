"""Minimal stdio MCP server used by the supervisor tests."""

import os

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("echo-server", instructions="Echoes things back for tests.")


@mcp.tool()
def echo(text: str) -> str:
    """Return the text unchanged."""
    return text


@mcp.tool()
def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


@mcp.tool()
def fail(reason: str = "boom") -> str:
    """Always raise."""
    raise ValueError(reason)


@mcp.tool()
def env(key: str) -> str:
    """Read one environment variable of the server process."""
    return os.environ.get(key, "<unset>")


if __name__ == "__main__":
    mcp.run()
