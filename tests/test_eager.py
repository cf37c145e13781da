"""Tests for the eager prompt queue: FIFO order, exactly-once draining, waiting."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from eager import EagerPromptQueue, format_eager_prompts


class TestQueue:
    def test_fifo_order(self):
        q = EagerPromptQueue()
        q.push("exec_1", "first")
        q.push("exec_2", "second")
        q.push("exec_1", "third", "more output\n")
        assert [p.message for p in q.drain()] == ["first", "second", "third"]

    def test_drain_consumes_exactly_once(self):
        q = EagerPromptQueue()
        q.push("exec_1", "only")
        assert len(q) == 1
        assert len(q.drain()) == 1
        assert q.drain() == []
        assert len(q) == 0

    def test_format_includes_delta(self):
        q = EagerPromptQueue()
        q.push("exec_3", "Background process (42) still running. New output received", "tick\n")
        text = format_eager_prompts(q.drain())
        assert "[exec_3]" in text
        assert "tick" in text

    def test_format_empty(self):
        assert format_eager_prompts([]) == ""


class TestWait:
    @pytest.mark.asyncio
    async def test_wait_returns_when_pushed(self):
        q = EagerPromptQueue()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, q.push, "exec_1", "done")
        assert await q.wait(timeout=2) is True
        assert len(q.drain()) == 1

    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        q = EagerPromptQueue()
        assert await q.wait(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_wait_immediate_when_pending(self):
        q = EagerPromptQueue()
        q.push("exec_1", "already here")
        assert await q.wait(timeout=0) is True
