"""Wrapper script generation and decoding for plugin tool calls.

Plugins are TypeScript/JavaScript modules run by the external runtime. The
host never parses plugin source itself: it generates a small wrapper that
imports the plugin, does one thing (describe the plugin, or call one tool)
and prints exactly one JSON line on stdout.

Everything spliced into the wrapper text (module URL, tool name, encoded
arguments) goes through escape_literal() and lands inside a single-quoted
JS string literal, so plugin-controlled values can never terminate the
literal or inject code.
"""

import json
from pathlib import Path
from string import Template
from typing import Any

from toolhost.errors import OutputDecodeError, PluginRuntimeError

_ESCAPES = (
    ("\\", "\\\\"),  # must run first
    ("'", "\\'"),
    ('"', '\\"'),
    ("\n", "\\n"),
    ("\r", "\\r"),
)

INTROSPECTION_TEMPLATE = Template("""\
try {
    const plugin = await import('$specifier');
    const exported = plugin.default ?? {};
    const tools = Object.entries(exported.tools ?? {}).map(([key, value]) => {
        const entry = { name: key, description: (value && value.description) || "" };
        if (value && value.parameters !== undefined) {
            entry.parameters = value.parameters;
        }
        return entry;
    });
    console.log(JSON.stringify({
        name: exported.name || "",
        description: exported.description || "",
        tools,
    }));
} catch (e) {
    console.log(JSON.stringify({ error: e instanceof Error ? e.message : String(e) }));
}
""")

INVOCATION_TEMPLATE = Template("""\
try {
    const plugin = await import('$specifier');
    const toolName = '$tool_name';
    let owner = plugin;
    let target = plugin[toolName];
    if (typeof target !== 'function' && plugin.default != null) {
        owner = plugin.default;
        target = plugin.default[toolName];
    }
    if (typeof target !== 'function' && plugin.default != null && plugin.default.tools != null) {
        const entry = plugin.default.tools[toolName];
        if (entry != null && typeof entry.handler === 'function') {
            owner = entry;
            target = entry.handler;
        }
    }
    if (typeof target !== 'function') {
        throw new Error("tool '" + toolName + "' is not an exported function");
    }
    const args = JSON.parse('$args');
    const result = await target.call(owner, args);
    console.log(JSON.stringify({ result: result === undefined ? null : result }));
} catch (e) {
    console.log(JSON.stringify({ error: e instanceof Error ? e.message : String(e) }));
}
""")


def escape_literal(text: str) -> str:
    """Escape text for a single-quoted JS string literal."""
    for raw, escaped in _ESCAPES:
        text = text.replace(raw, escaped)
    return text


def encode_args(args: Any) -> str:
    """Serialize args to JSON, then escape the JSON text for embedding."""
    try:
        encoded = json.dumps(args, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise OutputDecodeError(f"arguments are not JSON serializable: {e}") from e
    return escape_literal(encoded)


def module_specifier(plugin_path: Path) -> str:
    """Escaped file:// URL for importing a plugin file."""
    return escape_literal(Path(plugin_path).resolve().as_uri())


def build_introspection_script(plugin_path: Path) -> str:
    """Script printing ``{name, description, tools}`` for a plugin file."""
    return INTROSPECTION_TEMPLATE.substitute(specifier=module_specifier(plugin_path))


def build_invocation_script(plugin_path: Path, tool_name: str, args: Any) -> str:
    """Script calling one tool and printing ``{result}`` or ``{error}``."""
    return INVOCATION_TEMPLATE.substitute(
        specifier=module_specifier(plugin_path),
        tool_name=escape_literal(tool_name),
        args=encode_args(args),
    )


def decode_output(raw: str) -> Any:
    """Decode wrapper output.

    The whole trimmed output is tried first, then its last non-empty line
    (plugins may print their own lines before the wrapper's).

    Returns:
        The unwrapped value for ``{"result": v}``; any other JSON value
        unchanged.

    Raises:
        PluginRuntimeError: for ``{"error": message}``.
        OutputDecodeError: when no JSON can be found; ``raw`` is kept.
    """
    text = raw.strip()
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines:
            raise OutputDecodeError("runtime produced no output", raw=raw) from None
        try:
            value = json.loads(lines[-1])
        except json.JSONDecodeError as e:
            raise OutputDecodeError(f"{e.msg} in runtime output: {text[:200]}", raw=raw) from None

    if isinstance(value, dict):
        keys = set(value)
        if keys == {"error"}:
            error = value["error"]
            raise PluginRuntimeError(error if isinstance(error, str) else json.dumps(error))
        if keys == {"result"}:
            return value["result"]
    return value
