"""Tests for tool-server connections, capability pools and dispatch.

Most tests spawn tests/fake_tool_server.py with the current interpreter.
Verifies that:
- Handshake, tool listing and an echo round trip work end to end
- Corrupt lines on the channel never drop or misroute valid responses
- Every request resolves exactly once (response, timeout, cancel, exit)
- Failed handshakes exclude only the failing server
- Pool counters balance and always return to zero, even on process death
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from builtin_tools import BUILTIN_SERVER
from config import ServerConfig
from connections import (
    CapabilityPool,
    Connection,
    ConnectionManager,
    compound_name,
    parse_compound_name,
)
from history import TOOL_CALL, HistoryStore
from protocol import (
    RequestTimeout,
    ServerExited,
    ServerNotFound,
    ToolNotFound,
    ToolServerError,
)

FAKE_SERVER = os.path.join(os.path.dirname(__file__), "fake_tool_server.py")


def _config(name, *flags, pool=None):
    return ServerConfig(name=name, command=sys.executable,
                        args=[FAKE_SERVER, "--name", name, *flags], pool=pool)


async def _started(*configs, history=None, **kwargs):
    manager = ConnectionManager({c.name: c for c in configs}, history=history, **kwargs)
    await manager.start()
    return manager


class _FakeProcess:
    """Stand-in for an asyncio subprocess; writes go nowhere."""

    def __init__(self):
        self.pid = 12345
        self.returncode = None
        self.stdin = MagicMock()
        self.stdin.drain = AsyncMock()


def _bare_connection():
    return Connection(ServerConfig(name="unit", command="unit"), _FakeProcess())


# ============================================================
# Names
# ============================================================

class TestNames:
    def test_compound_round_trip(self):
        assert parse_compound_name(compound_name("srv", "echo")) == ("srv", "echo")

    def test_flat_name(self):
        assert parse_compound_name("Read") == (None, "Read")

    def test_malformed_compound(self):
        assert parse_compound_name("mcp__onlyserver") == (None, "mcp__onlyserver")


# ============================================================
# Correlation (no subprocess)
# ============================================================

class TestCorrelation:
    @pytest.mark.asyncio
    async def test_response_then_timeout_then_duplicate(self):
        conn = _bare_connection()
        task = asyncio.create_task(conn.request("tools/call", {}, timeout=5))
        await asyncio.sleep(0)
        assert conn.pending_count == 1
        conn._handle_line('{"jsonrpc": "2.0", "id": 0, "result": {"ok": true}}')
        conn._expire(0, "tools/call", 5)
        conn._handle_line('{"jsonrpc": "2.0", "id": 0, "result": {"ok": false}}')
        assert await task == {"ok": True}
        assert conn.pending_count == 0

    @pytest.mark.asyncio
    async def test_timeout_then_late_response(self):
        conn = _bare_connection()
        with pytest.raises(RequestTimeout):
            await conn.request("tools/call", {}, timeout=0.05)
        assert conn.pending_count == 0
        conn._handle_line('{"jsonrpc": "2.0", "id": 0, "result": "late"}')
        assert conn.pending_count == 0

    @pytest.mark.asyncio
    async def test_bad_lines_do_not_disturb_pending(self):
        conn = _bare_connection()
        first = asyncio.create_task(conn.request("a", timeout=5))
        second = asyncio.create_task(conn.request("b", timeout=5))
        await asyncio.sleep(0)
        conn._handle_line("{garbage")
        conn._handle_line('{"jsonrpc": "2.0", "id": 1, "result": "second"}')
        conn._handle_line("")
        conn._handle_line('{"jsonrpc": "2.0", "id": "nope", "result": 1}')
        conn._handle_line('{"jsonrpc": "2.0", "id": 0, "result": "first"}')
        assert await first == "first"
        assert await second == "second"

    @pytest.mark.asyncio
    async def test_ids_increase_per_connection(self):
        conn = _bare_connection()
        tasks = [asyncio.create_task(conn.request("m", timeout=5)) for _ in range(3)]
        await asyncio.sleep(0)
        assert sorted(conn._pending) == [0, 1, 2]
        for i in range(3):
            conn._handle_line(f'{{"jsonrpc": "2.0", "id": {i}, "result": {i}}}')
        assert await asyncio.gather(*tasks) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_error_response(self):
        conn = _bare_connection()
        task = asyncio.create_task(conn.request("m", timeout=5))
        await asyncio.sleep(0)
        conn._handle_line('{"jsonrpc": "2.0", "id": 0, "error": {"code": -32000, "message": "nope"}}')
        with pytest.raises(ToolServerError) as exc_info:
            await task
        assert exc_info.value.code == -32000

    @pytest.mark.asyncio
    async def test_exit_rejects_pending(self):
        conn = _bare_connection()
        task = asyncio.create_task(conn.request("m", timeout=5))
        await asyncio.sleep(0)
        conn._mark_exited(1)
        with pytest.raises(ServerExited):
            await task
        assert conn.pending_count == 0
        with pytest.raises(ServerExited):
            await conn.request("m", timeout=5)

    @pytest.mark.asyncio
    async def test_cancelled_caller_removes_entry(self):
        conn = _bare_connection()
        task = asyncio.create_task(conn.request("m", timeout=5))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert conn.pending_count == 0


# ============================================================
# Capability pool
# ============================================================

class TestCapabilityPool:
    def test_balanced_under_concurrent_acquires(self):
        pool = CapabilityPool("browser")
        for member in ("b1", "b2", "b3"):
            pool.add(member)
        for _ in range(10):
            pool.acquire()
        counts = pool.usage().values()
        assert max(counts) - min(counts) <= 1
        assert sum(counts) == 10

    def test_ties_break_by_registration_order(self):
        pool = CapabilityPool("p")
        pool.add("second")
        pool.add("first")
        assert pool.acquire() == "second"
        assert pool.acquire() == "first"

    def test_lease_releases_on_exception(self):
        pool = CapabilityPool("p")
        pool.add("m")
        with pytest.raises(RuntimeError):
            with pool.lease():
                assert pool.usage() == {"m": 1}
                raise RuntimeError("boom")
        assert pool.usage() == {"m": 0}

    def test_release_never_goes_negative(self):
        pool = CapabilityPool("p")
        pool.add("m")
        pool.release("m")
        assert pool.usage() == {"m": 0}

    def test_empty_pool(self):
        with pytest.raises(ServerNotFound):
            CapabilityPool("p").acquire()


# ============================================================
# Manager against real subprocesses
# ============================================================

class TestManager:
    @pytest.mark.asyncio
    async def test_echo_round_trip_records_history(self):
        history = HistoryStore()
        manager = await _started(_config("echo"), history=history)
        try:
            assert [t.name for t in manager.connections["echo"].tools][:1] == ["echo"]
            assert await manager.dispatch("mcp__echo__echo", {"text": "hi"}) == "hi"
            calls = history.entries(TOOL_CALL)
            assert len(calls) == 1
            assert calls[0].payload["server"] == "echo"
            assert calls[0].payload["result"] == "hi"
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_bare_tool_name_resolves_to_single_owner(self):
        manager = await _started(_config("echo"))
        try:
            assert await manager.dispatch("whoami") == "echo"
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_garbage_lines_are_dropped(self):
        manager = await _started(_config("noisy", "--garbage"))
        try:
            results = await asyncio.gather(
                *(manager.call("noisy", "echo", {"text": f"m{i}"}) for i in range(5))
            )
            assert results == [f"m{i}" for i in range(5)]
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self):
        manager = await _started(_config("srv"))
        try:
            slow = asyncio.create_task(manager.call("srv", "slow", {"text": "a", "seconds": 0.3}))
            await asyncio.sleep(0.05)
            assert await manager.call("srv", "echo", {"text": "b"}) == "b"
            assert not slow.done()
            assert await slow == "a"
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_is_ignored(self):
        manager = await _started(_config("srv"), request_timeout=0.2)
        try:
            with pytest.raises(RequestTimeout):
                await manager.call("srv", "slow", {"text": "late", "seconds": 0.5})
            assert manager.connections["srv"].pending_count == 0
            await asyncio.sleep(0.5)
            assert await manager.call("srv", "echo", {"text": "still ok"}) == "still ok"
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_error_response_is_recorded(self):
        history = HistoryStore()
        manager = await _started(_config("srv"), history=history)
        try:
            with pytest.raises(ToolServerError) as exc_info:
                await manager.call("srv", "fail")
            assert exc_info.value.code == -32000
            assert "error" in history.entries(TOOL_CALL)[-1].payload
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_process_death_removes_server(self):
        manager = await _started(_config("srv"))
        try:
            with pytest.raises(ServerExited):
                await manager.call("srv", "crash")
            assert "srv" not in manager.connections
            with pytest.raises(ServerNotFound, match="MCP server srv not found"):
                await manager.call("srv", "echo", {"text": "x"})
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failed_handshakes_are_excluded(self):
        bad_command = ServerConfig(name="missing", command="/nonexistent/tool-server")
        manager = await _started(
            _config("good"),
            _config("refuses", "--fail-init"),
            _config("nolist", "--no-tools-key"),
            bad_command,
            handshake_timeout=5,
        )
        try:
            assert list(manager.connections) == ["good"]
            assert set(manager.failed) == {"refuses", "nolist", "missing"}
            assert "refusing to initialize" in manager.failed["refuses"]
            assert await manager.call("good", "echo", {"text": "ok"}) == "ok"
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        manager = await _started()
        try:
            with pytest.raises(ToolNotFound):
                await manager.dispatch("does_not_exist")
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_terminates_processes(self):
        manager = await _started(_config("a"), _config("b"))
        procs = [c.process for c in manager.connections.values()]
        await manager.shutdown()
        assert all(p.returncode is not None for p in procs)
        assert manager.connections == {}


class TestPoolDispatch:
    @pytest.mark.asyncio
    async def test_pool_spreads_in_flight_calls(self):
        manager = await _started(*(_config(f"b{i}", pool="browser") for i in range(3)))
        try:
            pool = manager.pools["browser"]
            tasks = [asyncio.create_task(
                manager.dispatch("mcp__browser__slow", {"text": str(i), "seconds": 0.4}))
                for i in range(6)]
            await asyncio.sleep(0.1)
            assert pool.usage() == {"b0": 2, "b1": 2, "b2": 2}
            assert sorted(await asyncio.gather(*tasks)) == [str(i) for i in range(6)]
            assert pool.usage() == {"b0": 0, "b1": 0, "b2": 0}
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_counter_released_on_process_death(self):
        manager = await _started(_config("p0", pool="pool"), _config("p1", pool="pool"))
        try:
            pool = manager.pools["pool"]
            with pytest.raises(ServerExited):
                await manager.call("pool", "crash")
            assert len(pool) == 1
            assert list(pool.usage().values()) == [0]
            assert await manager.call("pool", "echo", {"text": "alive"}) == "alive"
            assert list(pool.usage().values()) == [0]
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_pool_advertised_once(self):
        manager = await _started(_config("p0", pool="pool"), _config("p1", pool="pool"))
        try:
            names = [name for name, _ in manager.qualified_tools()]
            assert names.count("mcp__pool__echo") == 1
            assert not any(n.startswith("mcp__p0__") for n in names)
        finally:
            await manager.shutdown()


class TestBuiltins:
    @pytest.mark.asyncio
    async def test_write_read_edit(self, tmp_path):
        history = HistoryStore()
        manager = ConnectionManager(history=history, working_dir=str(tmp_path))
        await manager.dispatch("Write", {"file_path": "notes.txt", "content": "alpha\nbeta\n"})
        assert "beta" in await manager.dispatch("Read", {"file_path": "notes.txt"})
        await manager.dispatch("Edit", {"file_path": "notes.txt",
                                        "old_string": "beta", "new_string": "gamma"})
        assert (tmp_path / "notes.txt").read_text() == "alpha\ngamma\n"
        assert all(e.payload["server"] == BUILTIN_SERVER for e in history.entries(TOOL_CALL))

    @pytest.mark.asyncio
    async def test_builtin_failure_is_tool_error(self, tmp_path):
        manager = ConnectionManager(working_dir=str(tmp_path))
        with pytest.raises(ToolServerError):
            await manager.dispatch("Read", {"file_path": "missing.txt"})

    @pytest.mark.asyncio
    async def test_glob_grep_ls(self, tmp_path):
        (tmp_path / "a.py").write_text("import os\n")
        (tmp_path / "b.txt").write_text("nothing\n")
        manager = ConnectionManager(working_dir=str(tmp_path))
        assert "a.py" in await manager.dispatch("Glob", {"pattern": "*.py"})
        assert "a.py:1:import os" in await manager.dispatch("Grep", {"pattern": "import"})
        listing = await manager.dispatch("LS", {})
        assert listing.splitlines() == ["a.py", "b.txt"]

    def test_catalog_includes_builtins(self):
        manager = ConnectionManager()
        catalog = manager.list_all_tools()
        assert "Read" in [t.name for t in catalog[BUILTIN_SERVER]]
        assert manager.tools_snapshot()[BUILTIN_SERVER][0]["input_schema"]["type"] == "object"
