"""Tests for the child-side tool bridge, driven through an os.pipe as stdin."""

import itertools
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
import tool_bridge


class _PipeStdin:
    def __init__(self, fd):
        self._fd = fd

    def fileno(self):
        return self._fd


@pytest.fixture
def parent(monkeypatch):
    """Replace stdin with a pipe; returns a writer for parent replies and the sent requests."""
    read_fd, write_fd = os.pipe()
    sent = []
    monkeypatch.setattr(tool_bridge.sys, "stdin", _PipeStdin(read_fd))
    monkeypatch.setattr(tool_bridge, "_pending", b"")
    monkeypatch.setattr(tool_bridge, "_ids", itertools.count(5))
    monkeypatch.setattr(tool_bridge, "respond", sent.append)

    def write(*messages):
        os.write(write_fd, b"".join(json.dumps(m).encode() + b"\n" for m in messages))

    yield write, sent
    os.close(read_fd)
    os.close(write_fd)


class TestReadLine:
    def test_second_line_of_one_write_is_not_lost(self, parent):
        write, _ = parent
        write({"id": 1}, {"id": 2})
        assert json.loads(tool_bridge._read_line(0.5)) == {"id": 1}
        assert json.loads(tool_bridge._read_line(0.5)) == {"id": 2}

    def test_times_out_without_reply(self, parent):
        with pytest.raises(TimeoutError):
            tool_bridge._read_line(0.05)


class TestCallTool:
    def test_skips_late_reply_to_earlier_id(self, parent):
        write, sent = parent
        write({"jsonrpc": "2.0", "id": 4, "result": "stale"},
              {"jsonrpc": "2.0", "id": 5, "result": "fresh"})
        assert tool_bridge.call_tool("echo", {"text": "x"}, timeout=0.5) == "fresh"
        assert sent[0]["params"] == {"name": "echo", "arguments": {"text": "x"}}

    def test_reply_buffered_with_stale_one_serves_next_call(self, parent):
        write, _ = parent
        write({"jsonrpc": "2.0", "id": 5, "result": "first"},
              {"jsonrpc": "2.0", "id": 6, "result": "second"})
        assert tool_bridge.call_tool("a", timeout=0.5) == "first"
        assert tool_bridge.call_tool("b", timeout=0.5) == "second"

    def test_error_reply_raises(self, parent):
        write, _ = parent
        write({"jsonrpc": "2.0", "id": 5, "error": {"code": -32603, "message": "boom"}})
        with pytest.raises(tool_bridge.ToolCallError, match="boom"):
            tool_bridge.call_tool("fail", timeout=0.5)

    def test_default_timeout_outlasts_parent_request_timeout(self):
        assert tool_bridge.DEFAULT_TIMEOUT > 120
