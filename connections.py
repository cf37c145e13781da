"""Tool-server connections: spawn, handshake, correlate, balance, dispatch.

Each configured server runs as its own process and speaks line-delimited
JSON-RPC over stdin/stdout. Every Connection owns its id counter and its
table of outstanding requests; an entry leaves that table exactly once,
whether by response, by timeout, by caller cancellation or by process exit.

Architecture:
  planner / spawned code --dispatch()--> ConnectionManager --JSON/stdin--> server process
                                               |
                                               +--> builtInTools (in-process)
"""

import asyncio
import collections
import contextlib
import os
import re
import sys
from dataclasses import dataclass

from builtin_tools import BUILTIN_SERVER, BUILTIN_TOOLS
from config import ServerConfig
from protocol import (
    CLIENT_INFO,
    INTERNAL_ERROR,
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    PROTOCOL_VERSION,
    CodemodeError,
    HandshakeError,
    LineBuffer,
    ProtocolError,
    RequestTimeout,
    ServerExited,
    ServerNotFound,
    ToolDescriptor,
    ToolNotFound,
    ToolServerError,
    decode_line,
    encode_message,
    make_notification,
    make_request,
    unwrap_tool_result,
)

COMPOUND_PREFIX = "mcp__"
READ_CHUNK = 65536
STDERR_LINES = 200
SIGTERM_GRACE_SECONDS = 2


def _log(name: str, msg: str) -> None:
    print(f"[mcp:{name}] {msg}", file=sys.stderr, flush=True)


def parse_compound_name(name: str) -> tuple[str | None, str]:
    """Split 'mcp__<server>__<tool>' into (server, tool); (None, name) otherwise."""
    if not name.startswith(COMPOUND_PREFIX):
        return None, name
    server, sep, tool = name[len(COMPOUND_PREFIX):].partition("__")
    if not sep or not server or not tool:
        return None, name
    return server, tool


def compound_name(server: str, tool: str) -> str:
    return f"{COMPOUND_PREFIX}{server}__{tool}"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

@dataclass
class _Pending:
    future: asyncio.Future
    timer: asyncio.TimerHandle
    method: str


class Connection:
    """One tool-server process and its request/response channel."""

    def __init__(self, config: ServerConfig, process, on_exit=None):
        self.name = config.name
        self.config = config
        self.process = process
        self.tools: list[ToolDescriptor] = []
        self.server_info: dict = {}
        self.closed = False
        self._next_id = 0
        self._pending: dict[int, _Pending] = {}
        self._buffer = LineBuffer()
        self._stderr_buffer = collections.deque(maxlen=STDERR_LINES)
        self._on_exit = on_exit
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None

    @classmethod
    async def spawn(cls, config: ServerConfig, cwd: str, on_exit=None) -> "Connection":
        env = os.environ.copy()
        env.update(config.env)
        process = await asyncio.create_subprocess_exec(
            config.command, *config.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
        conn = cls(config, process, on_exit)
        conn._reader_task = asyncio.create_task(conn._read_stdout())
        conn._stderr_task = asyncio.create_task(conn._read_stderr())
        _log(config.name, f"Started (pid {process.pid})")
        return conn

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_buffer)

    # -- inbound ------------------------------------------------------------

    async def _read_stdout(self):
        try:
            while True:
                chunk = await self.process.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                for line in self._buffer.feed(chunk):
                    self._handle_line(line)
        except (ConnectionError, OSError) as e:
            _log(self.name, f"stdout read failed: {e}")
        tail = self._buffer.flush()
        if tail.strip():
            self._handle_line(tail)
        returncode = await self.process.wait()
        self._mark_exited(returncode)

    async def _read_stderr(self):
        buf = LineBuffer()
        try:
            while True:
                chunk = await self.process.stderr.read(READ_CHUNK)
                if not chunk:
                    break
                for line in buf.feed(chunk):
                    if line:
                        self._stderr_buffer.append(line)
                        _log(self.name, f"stderr: {line}")
        except (ConnectionError, OSError):
            # Pipe closed, process is going away
            pass

    def _handle_line(self, line: str) -> None:
        msg = decode_line(line)
        if msg is None:
            if line.strip():
                _log(self.name, f"Dropped unparseable line: {line[:200]!r}")
            return
        if "result" not in msg and "error" not in msg:
            # Server-initiated request or notification; nothing to correlate.
            return
        request_id = msg.get("id")
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            _log(self.name, f"Dropped response with unusable id: {request_id!r}")
            return
        pending = self._pending.pop(request_id, None)
        if pending is None:
            _log(self.name, f"Ignoring late or unknown response id={request_id}")
            return
        pending.timer.cancel()
        if pending.future.done():
            return
        if "error" in msg:
            err = msg.get("error") or {}
            if not isinstance(err, dict):
                err = {"message": str(err)}
            pending.future.set_exception(ToolServerError(
                err.get("code", INTERNAL_ERROR),
                err.get("message", "unknown error"),
                err.get("data"),
            ))
        else:
            pending.future.set_result(msg.get("result"))

    def _expire(self, request_id: int, method: str, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        _log(self.name, f"Request {request_id} ({method}) timed out after {timeout:g}s")
        pending.future.set_exception(RequestTimeout(self.name, method, timeout))

    def _mark_exited(self, returncode: int | None) -> None:
        if self.closed:
            return
        self.closed = True
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ServerExited(self.name, returncode))
        _log(self.name, f"Exited with code {returncode}"
             + (f", rejected {len(pending)} pending request(s)" if pending else ""))
        if self._on_exit is not None:
            self._on_exit(self)

    # -- outbound -----------------------------------------------------------

    async def _send(self, msg: dict) -> None:
        try:
            self.process.stdin.write(encode_message(msg))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ServerExited(self.name, self.process.returncode) from e

    async def request(self, method: str, params: dict | None = None,
                      timeout: float = 120.0):
        if self.closed:
            raise ServerExited(self.name, self.process.returncode)
        loop = asyncio.get_running_loop()
        request_id = self._next_id
        self._next_id += 1
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, method, timeout)
        self._pending[request_id] = _Pending(future, timer, method)
        try:
            await self._send(make_request(request_id, method, params))
            return await future
        finally:
            # Still present only if the caller was cancelled or the write failed.
            leftover = self._pending.pop(request_id, None)
            if leftover is not None:
                leftover.timer.cancel()

    async def notify(self, method: str, params: dict | None = None) -> None:
        if self.closed:
            raise ServerExited(self.name, self.process.returncode)
        await self._send(make_notification(method, params))

    async def initialize(self, timeout: float = 30.0) -> None:
        result = await self.request(METHOD_INITIALIZE, {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        }, timeout)
        if not isinstance(result, dict):
            raise ProtocolError(f"{self.name}: initialize returned {result!r}")
        self.server_info = result.get("serverInfo") or {}
        await self.notify(METHOD_INITIALIZED)
        listing = await self.request(METHOD_TOOLS_LIST, {}, timeout)
        if not isinstance(listing, dict) or not isinstance(listing.get("tools"), list):
            raise ProtocolError(f"{self.name}: tools/list response has no 'tools' list")
        self.tools = [ToolDescriptor.from_dict(t) for t in listing["tools"]]

    async def call_tool(self, tool: str, arguments: dict, timeout: float = 120.0):
        result = await self.request(METHOD_TOOLS_CALL, {"name": tool, "arguments": arguments}, timeout)
        if isinstance(result, dict) and result.get("isError"):
            raise ToolServerError(INTERNAL_ERROR, str(unwrap_tool_result(result)))
        return result

    def has_tool(self, tool: str) -> bool:
        return any(t.name == tool for t in self.tools)

    async def close(self, grace: float = SIGTERM_GRACE_SECONDS) -> None:
        """SIGTERM, wait out the grace period, then SIGKILL."""
        if self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), grace)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    self.process.kill()
                await self.process.wait()
        tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._mark_exited(self.process.returncode)


# ---------------------------------------------------------------------------
# Capability pools
# ---------------------------------------------------------------------------

class CapabilityPool:
    """Interchangeable servers balanced by in-flight call count."""

    def __init__(self, name: str):
        self.name = name
        # Insertion order doubles as registration order for tie-breaking.
        self._usage: dict[str, int] = {}

    @property
    def members(self) -> list[str]:
        return list(self._usage)

    def add(self, member: str) -> None:
        self._usage.setdefault(member, 0)

    def remove(self, member: str) -> None:
        self._usage.pop(member, None)

    def __contains__(self, member: str) -> bool:
        return member in self._usage

    def __len__(self) -> int:
        return len(self._usage)

    def usage(self) -> dict[str, int]:
        return dict(self._usage)

    def acquire(self, member: str | None = None) -> str:
        if member is None:
            if not self._usage:
                raise ServerNotFound(self.name)
            member = min(self._usage, key=self._usage.__getitem__)
        elif member not in self._usage:
            raise ServerNotFound(member)
        self._usage[member] += 1
        return member

    def release(self, member: str) -> None:
        # A member removed on process exit has no counter left to decrement.
        if self._usage.get(member, 0) > 0:
            self._usage[member] -= 1

    @contextlib.contextmanager
    def lease(self, member: str | None = None):
        chosen = self.acquire(member)
        try:
            yield chosen
        finally:
            self.release(chosen)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class ConnectionManager:
    def __init__(self, configs: dict[str, ServerConfig] | None = None,
                 history=None, working_dir: str | None = None,
                 handshake_timeout: float = 30.0, request_timeout: float = 120.0,
                 builtins: dict | None = None):
        self.configs = dict(configs or {})
        self.history = history
        self.working_dir = working_dir or os.getcwd()
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.builtins = dict(BUILTIN_TOOLS if builtins is None else builtins)
        self.connections: dict[str, Connection] = {}
        self.pools: dict[str, CapabilityPool] = {}
        self.failed: dict[str, str] = {}

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        names = list(self.configs)
        results = await asyncio.gather(
            *(self._start_server(self.configs[n]) for n in names),
            return_exceptions=True,
        )
        # Register in configuration order so pool ties break predictably.
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                self.failed[name] = str(result)
                _log(name, f"Excluded from routing: {result}")
                continue
            self._register(result)
        _log("manager", f"{len(self.connections)}/{len(names)} server(s) connected")

    async def _start_server(self, config: ServerConfig) -> Connection:
        try:
            conn = await Connection.spawn(config, self.working_dir, on_exit=self._on_connection_exit)
        except OSError as e:
            raise HandshakeError(f"Failed to start {config.name}: {e}") from e
        try:
            await conn.initialize(self.handshake_timeout)
        except CodemodeError as e:
            await conn.close()
            message = f"Handshake with {config.name} failed: {e}"
            tail = conn.stderr_tail()
            if tail:
                message += f"\nstderr:\n{tail}"
            raise HandshakeError(message) from e
        return conn

    def _register(self, conn: Connection) -> None:
        self.connections[conn.name] = conn
        if conn.config.pool:
            self.pools.setdefault(conn.config.pool, CapabilityPool(conn.config.pool)).add(conn.name)
        _log(conn.name, f"Connected with {len(conn.tools)} tool(s)"
             + (f" in pool '{conn.config.pool}'" if conn.config.pool else ""))

    def _on_connection_exit(self, conn: Connection) -> None:
        if self.connections.get(conn.name) is not conn:
            return
        del self.connections[conn.name]
        for pool in self.pools.values():
            pool.remove(conn.name)
        _log(conn.name, "Removed from routing")

    async def shutdown(self) -> None:
        conns = list(self.connections.values())
        if conns:
            await asyncio.gather(*(c.close() for c in conns), return_exceptions=True)
        self.connections.clear()
        for pool in self.pools.values():
            for member in pool.members:
                pool.remove(member)

    # -- catalog ------------------------------------------------------------

    def list_all_tools(self) -> dict[str, list[ToolDescriptor]]:
        catalog = {BUILTIN_SERVER: [b.descriptor for b in self.builtins.values()]}
        for name, conn in self.connections.items():
            catalog[name] = list(conn.tools)
        return catalog

    def tools_snapshot(self) -> dict[str, list[dict]]:
        return {server: [t.to_dict() for t in tools]
                for server, tools in self.list_all_tools().items()}

    def qualified_tools(self) -> list[tuple[str, ToolDescriptor]]:
        """Flat list of dispatchable names; a pool is advertised once."""
        out = [(name, b.descriptor) for name, b in self.builtins.items()]
        seen_pools = set()
        for name, conn in self.connections.items():
            pool = conn.config.pool
            if pool:
                if pool in seen_pools:
                    continue
                seen_pools.add(pool)
                prefix = pool
            else:
                prefix = name
            out.extend((compound_name(prefix, t.name), t) for t in conn.tools)
        return out

    # -- calls --------------------------------------------------------------

    def _record(self, server: str, tool: str, arguments: dict, result=None, error=None):
        if self.history is not None:
            self.history.record_tool_call(server, tool, arguments, result=result, error=error)

    async def call(self, target: str, tool: str, arguments: dict | None = None):
        """Call `tool` on a named server, a pool, or the built-in tool set."""
        arguments = arguments or {}
        if target == BUILTIN_SERVER:
            return await self._call_builtin(tool, arguments)
        if target in self.connections:
            pool = self._pool_of(target)
            if pool is None:
                return await self._call_connection(target, tool, arguments)
            with pool.lease(target) as member:
                return await self._call_connection(member, tool, arguments)
        pool = self.pools.get(target)
        if pool is not None and len(pool):
            with pool.lease() as member:
                return await self._call_connection(member, tool, arguments)
        error = ServerNotFound(target)
        self._record(target, tool, arguments, error=str(error))
        raise error

    async def dispatch(self, name: str, arguments: dict | None = None):
        """Resolve a flat or compound tool name and call it."""
        if name in self.builtins:
            return await self.call(BUILTIN_SERVER, name, arguments)
        server, tool = parse_compound_name(name)
        if server is not None:
            return await self.call(server, tool, arguments)
        owners = [s for s, c in self.connections.items() if c.has_tool(name)]
        if not owners:
            raise ToolNotFound(name)
        pools = {self.connections[s].config.pool for s in owners}
        if len(pools) == 1 and None not in pools:
            return await self.call(pools.pop(), name, arguments)
        if len(owners) > 1:
            raise CodemodeError(f"Tool {name} is ambiguous across {', '.join(owners)}; "
                                f"use {compound_name('<server>', name)}")
        return await self.call(owners[0], name, arguments)

    def _pool_of(self, server: str) -> CapabilityPool | None:
        for pool in self.pools.values():
            if server in pool:
                return pool
        return None

    async def _call_connection(self, server: str, tool: str, arguments: dict):
        try:
            conn = self.connections.get(server)
            if conn is None:
                raise ServerNotFound(server)
            raw = await conn.call_tool(tool, arguments, self.request_timeout)
        except CodemodeError as e:
            self._record(server, tool, arguments, error=str(e))
            raise
        result = unwrap_tool_result(raw)
        self._record(server, tool, arguments, result=result)
        return result

    async def _call_builtin(self, tool: str, arguments: dict):
        builtin = self.builtins.get(tool)
        if builtin is None:
            error = ToolNotFound(tool)
            self._record(BUILTIN_SERVER, tool, arguments, error=str(error))
            raise error
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, builtin.handler, arguments, self.working_dir)
        except (OSError, ValueError, TypeError, re.error) as e:
            self._record(BUILTIN_SERVER, tool, arguments, error=str(e))
            raise ToolServerError(INTERNAL_ERROR, f"{tool}: {e}") from e
        self._record(BUILTIN_SERVER, tool, arguments, result=result)
        return result
