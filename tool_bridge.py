#!/usr/bin/env python3
"""Tool-call helper for code running inside an execution session.

The parent process watches this child's stdout. A line holding a JSON-RPC
``tools/call`` request is intercepted and answered on the child's stdin;
everything else printed is ordinary output.

Protocol:
  child -> parent (stdout): {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
                             "params": {"name": "...", "arguments": {...}}}
  parent -> child (stdin):  {"jsonrpc": "2.0", "id": 1, "result": ...}
                            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32603, "message": "..."}}

Python code imports it directly:

  from tool_bridge import call_tool, tools
  print(call_tool("Read", {"file_path": "README.md"}))
  print(tools.echo(text="hi"))

Other runtimes invoke it as a command, sharing the caller's stdio:

  python3 "$CODEMODE_BRIDGE" call Read '{"file_path": "README.md"}'
  python3 "$CODEMODE_BRIDGE" list
"""

import itertools
import json
import os
import select
import sys
import time

# Longer than the parent's per-request timeout, so the parent reports first.
DEFAULT_TIMEOUT = float(os.environ.get("CODEMODE_BRIDGE_TIMEOUT", "150"))
READ_CHUNK = 65536

_ids = itertools.count(1)
_pending = b""


class ToolCallError(Exception):
    def __init__(self, code, message):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


def working_dir() -> str:
    return os.environ.get("CODEMODE_WORKING_DIRECTORY") or os.getcwd()


def list_tools() -> dict:
    """Tool descriptors by server, as snapshotted when this process started."""
    raw = os.environ.get("CODEMODE_TOOLS", "{}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def respond(obj):
    """Write a JSON message to stdout (the communication channel)."""
    # We need to write to the real stdout, not any captured one
    sys.__stdout__.write(json.dumps(obj) + "\n")
    sys.__stdout__.flush()


def _read_line(timeout: float | None) -> str:
    """Next line from the parent, read from the raw stdin fd.

    Bytes past the first newline stay in ``_pending`` for the next call, so
    select() never waits on data that has already been read.
    """
    global _pending
    fd = sys.stdin.fileno()
    deadline = None if timeout is None else time.monotonic() + timeout
    while b"\n" not in _pending:
        if deadline is not None and hasattr(select, "select") and os.name != "nt":
            remaining = deadline - time.monotonic()
            ready, _, _ = select.select([fd], [], [], max(remaining, 0))
            if not ready:
                raise TimeoutError(f"No tool response within {timeout:g}s")
        chunk = os.read(fd, READ_CHUNK)
        if not chunk:
            raise ToolCallError(-32603, "Tool channel closed")
        _pending += chunk
    line, _, _pending = _pending.partition(b"\n")
    return line.decode("utf-8", errors="replace")


def call_tool(name: str, arguments: dict | None = None, timeout: float = DEFAULT_TIMEOUT):
    """Call a tool through the parent and return its result."""
    request_id = next(_ids)
    respond({
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments or {}},
    })
    while True:
        line = _read_line(timeout).strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(msg, dict) or msg.get("id") != request_id:
            continue
        if "error" in msg:
            err = msg["error"] or {}
            raise ToolCallError(err.get("code", -32603), err.get("message", "unknown error"))
        return msg.get("result")


class _ServerTools:
    def __init__(self, server: str):
        self._server = server

    def __getattr__(self, tool: str):
        if tool.startswith("_"):
            raise AttributeError(tool)
        name = tool if self._server == "builtInTools" else f"mcp__{self._server}__{tool}"
        return lambda **kwargs: call_tool(name, kwargs)


class _Tools:
    """Attribute access to tools: tools.Read(...), tools.server.tool(...)."""

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        catalog = list_tools()
        if name in catalog:
            return _ServerTools(name)
        return lambda **kwargs: call_tool(name, kwargs)


tools = _Tools()


def main(argv):
    if len(argv) < 2 or argv[1] not in ("call", "list"):
        print("usage: tool_bridge.py call <name> [json-arguments] | list", file=sys.stderr)
        return 2
    if argv[1] == "list":
        for server, descriptors in list_tools().items():
            for d in descriptors:
                print(f"{server}\t{d.get('name')}\t{d.get('description', '')}")
        return 0
    if len(argv) < 3:
        print("usage: tool_bridge.py call <name> [json-arguments]", file=sys.stderr)
        return 2
    arguments = json.loads(argv[3]) if len(argv) > 3 else {}
    try:
        result = call_tool(argv[2], arguments)
    except (ToolCallError, TimeoutError) as e:
        print(str(e), file=sys.stderr)
        return 1
    print(result if isinstance(result, str) else json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
