"""Shared wire types for the tool-server protocol.

Tool servers and spawned code both speak newline-delimited JSON-RPC 2.0:

  {"jsonrpc": "2.0", "id": 0, "method": "initialize", "params": {...}}
  {"jsonrpc": "2.0", "id": 0, "result": {...}}
  {"jsonrpc": "2.0", "id": 1, "error": {"code": -32603, "message": "..."}}

One JSON object per line, UTF-8 encoded. Lines that fail to parse are
dropped by the reader without disturbing the lines around them.
"""

import json
from dataclasses import dataclass, field

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "codemode-runtime", "version": "1.0.0"}

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"

INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CodemodeError(Exception):
    """Base class for every error raised by the runtime."""


class ProtocolError(CodemodeError):
    """A peer sent a structurally invalid payload."""


class RequestTimeout(CodemodeError, TimeoutError):
    def __init__(self, server: str, method: str, timeout: float):
        super().__init__(f"Request '{method}' to {server} timed out after {timeout:g}s")
        self.server = server
        self.method = method
        self.timeout = timeout


class ServerExited(CodemodeError):
    """The tool-server process went away with requests still outstanding."""

    def __init__(self, server: str, returncode: int | None = None):
        detail = f" (exit code {returncode})" if returncode is not None else ""
        super().__init__(f"MCP server {server} exited{detail}")
        self.server = server
        self.returncode = returncode


class HandshakeError(CodemodeError):
    pass


class ServerNotFound(CodemodeError, LookupError):
    def __init__(self, name: str):
        super().__init__(f"MCP server {name} not found")
        self.name = name


class ToolNotFound(CodemodeError, LookupError):
    def __init__(self, name: str):
        super().__init__(f"Tool {name} not found")
        self.name = name


class ToolServerError(CodemodeError):
    """An error response returned by a tool server."""

    def __init__(self, code: int, message: str, data=None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class ExecutionValidationError(CodemodeError, ValueError):
    """Rejected execution request; raised before any process is spawned."""


# ---------------------------------------------------------------------------
# Tool descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ToolDescriptor":
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ProtocolError(f"Invalid tool descriptor: {data!r}")
        schema = data.get("input_schema", data.get("inputSchema")) or {}
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=schema,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


# ---------------------------------------------------------------------------
# Message construction
# ---------------------------------------------------------------------------

def make_request(request_id: int, method: str, params: dict | None = None) -> dict:
    msg = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        msg["params"] = params
    return msg


def make_notification(method: str, params: dict | None = None) -> dict:
    msg = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        msg["params"] = params
    return msg


def make_result(request_id, result) -> dict:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id, code: int, message: str) -> dict:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def encode_message(msg: dict) -> bytes:
    """Frame a message as one JSON line."""
    return (json.dumps(msg, ensure_ascii=False) + "\n").encode("utf-8")


def decode_line(line: str) -> dict | None:
    """Parse one line. Returns None for blank, malformed or non-object lines."""
    line = line.strip()
    if not line:
        return None
    try:
        msg = json.loads(line)
    except json.JSONDecodeError:
        return None
    return msg if isinstance(msg, dict) else None


class LineBuffer:
    """Accumulates raw bytes and yields complete newline-terminated lines.

    Bytes are kept undecoded until a full line is available so a multi-byte
    character split across reads is never mangled.
    """

    def __init__(self):
        self._pending = bytearray()

    def feed(self, data: bytes) -> list[str]:
        self._pending.extend(data)
        lines = []
        while True:
            idx = self._pending.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._pending[:idx])
            del self._pending[:idx + 1]
            lines.append(raw.decode("utf-8", errors="replace").rstrip("\r"))
        return lines

    def flush(self) -> str:
        """Return and clear any unterminated trailing data."""
        rest = bytes(self._pending).decode("utf-8", errors="replace")
        self._pending.clear()
        return rest

    def __len__(self) -> int:
        return len(self._pending)


# ---------------------------------------------------------------------------
# Child output classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCallRequest:
    id: object
    name: str
    arguments: dict


@dataclass(frozen=True)
class OutputLine:
    text: str


def classify_line(line: str) -> ToolCallRequest | OutputLine:
    """Decode a line from spawned code as a tool call, falling back to output."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return OutputLine(line)
    msg = decode_line(stripped)
    if (
        msg is None
        or msg.get("jsonrpc") != JSONRPC_VERSION
        or msg.get("method") != METHOD_TOOLS_CALL
        or "id" not in msg
    ):
        return OutputLine(line)
    params = msg.get("params")
    if not isinstance(params, dict) or not isinstance(params.get("name"), str):
        return OutputLine(line)
    arguments = params.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {}
    return ToolCallRequest(id=msg["id"], name=params["name"], arguments=arguments)


def unwrap_tool_result(result):
    """Reduce a tools/call result to plain text when it is a single text item."""
    if isinstance(result, dict):
        content = result.get("content")
        if (
            isinstance(content, list)
            and len(content) == 1
            and isinstance(content[0], dict)
            and content[0].get("type") == "text"
        ):
            return content[0].get("text", "")
    if isinstance(result, str):
        return result
    return json.dumps(result)
