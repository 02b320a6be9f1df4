"""Stand-in script runtime for tests that need a real child process.

Run as ``python script_runtime.py <wrapper>``. It reads the wrapper the
host generated, pulls the plugin URL, tool name and arguments out of
their single-quoted literals, and prints what the wrapper would print.

Plugin files are JSON instead of JavaScript::

    {"name": "...", "description": "...",
     "tools": {"greet": {"description": "...", "reply": "hello, {name}",
                         "log": "printed first"},
               "explode": {"throws": "boom"}}}
"""

import ast
import json
import re
import sys
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

LITERAL = r"'((?:\\.|[^'\\])*)'"


def literal(script: str, prefix: str) -> str | None:
    match = re.search(re.escape(prefix) + LITERAL, script)
    if match is None:
        return None
    return ast.literal_eval("'" + match.group(1) + "'")


def answer(script: str) -> dict:
    url = literal(script, "import(")
    plugin = json.loads(Path(url2pathname(urlparse(url).path)).read_text(encoding="utf-8"))
    tools = plugin.get("tools", {})

    tool_name = literal(script, "const toolName = ")
    if tool_name is None:
        return {
            "name": plugin.get("name", ""),
            "description": plugin.get("description", ""),
            "tools": [{"name": k, "description": v.get("description", "")} for k, v in tools.items()],
        }

    tool = tools.get(tool_name)
    if tool is None:
        return {"error": f"tool '{tool_name}' is not an exported function"}
    args = json.loads(literal(script, "JSON.parse("))
    if "log" in tool:
        print(tool["log"])
    if "throws" in tool:
        return {"error": tool["throws"]}
    return {"result": tool["reply"].format(**args)}


if __name__ == "__main__":
    print(json.dumps(answer(Path(sys.argv[1]).read_text(encoding="utf-8"))))
