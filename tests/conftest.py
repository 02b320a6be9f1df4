"""Pytest configuration for toolhost tests."""

import json
import sys
from pathlib import Path

import pytest

# Ensure toolhost package is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

ECHO_SERVER = Path(__file__).parent / "mcp_echo_server.py"
SCRIPT_RUNTIME = Path(__file__).parent / "script_runtime.py"


@pytest.fixture
def isolated_data_dir(tmp_path, monkeypatch):
    """Create an isolated data directory for tests.

    This fixture:
    - Creates a temporary data directory
    - Sets TOOLHOST_DATA_DIR environment variable to point to it
    - Resets config and data paths caches so changes take effect

    Use this fixture in any test that needs to read/write toolhost data
    without affecting production data in ~/.local/share/toolhost/.
    """
    data_dir = tmp_path / "toolhost_data"
    data_dir.mkdir()

    monkeypatch.setenv("TOOLHOST_DATA_DIR", str(data_dir))
    monkeypatch.delenv("TOOLHOST_CONFIG_PATH", raising=False)
    monkeypatch.chdir(tmp_path)

    import toolhost.config
    import toolhost.logging
    toolhost.config._config = None
    toolhost.config.reset_data_paths()
    toolhost.logging.clear_buffer()

    yield data_dir

    toolhost.config._config = None
    toolhost.config.reset_data_paths()


class FakeRuntime:
    """Stands in for ExternalRuntime; answers scripts through a responder.

    ``responder(script)`` returns the raw stdout text or raises. Every
    call is recorded as ``(script, env, timeout)``.
    """

    extension = ".ts"

    def __init__(self, responder=None):
        self.responder = responder or (lambda script: json.dumps({"result": None}))
        self.calls = []

    async def execute(self, script, env=None, timeout=None):
        self.calls.append((script, env, timeout))
        return self.responder(script)


def plugin_metadata(name="Greeter", description="Says hello", tools=None) -> str:
    """Introspection output for a fake plugin."""
    if tools is None:
        tools = [{"name": "greet", "description": "Greets someone"}]
    return json.dumps({"name": name, "description": description, "tools": tools})


@pytest.fixture
def echo_server():
    """Path to the stdio MCP test server."""
    return str(ECHO_SERVER)
