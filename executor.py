"""Code execution sessions with background handover and tool-call interception.

An execution stages its source to a temp file and spawns the runtime. If the
child finishes inside the capture window the caller gets the full result;
otherwise the caller gets a handover notice and a monitor task keeps
pushing new output to the eager prompt queue until the child exits.

Lines the child writes to stdout that decode as JSON-RPC ``tools/call``
requests are routed through the ConnectionManager and answered on the
child's stdin; every other line is ordinary output.
"""

import asyncio
import codecs
import collections
import contextlib
import enum
import json
import os
import sys
import time
from dataclasses import dataclass, field

from eager import EagerPromptQueue
from protocol import (
    INTERNAL_ERROR,
    CodemodeError,
    LineBuffer,
    ToolCallRequest,
    ToolNotFound,
    classify_line,
    encode_message,
    make_error,
    make_result,
)
from runtimes import StagedSource, stage_source, validate_request

BRIDGE_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "tool_bridge.py")
READ_CHUNK = 65536
MAX_FINISHED_RECORDS = 100
KILL_WAIT_SECONDS = 5
EXIT_POLL_SECONDS = 0.1
PIPE_DRAIN_SECONDS = 0.5


def _log(msg: str) -> None:
    print(f"[exec] {msg}", file=sys.stderr, flush=True)


class Phase(enum.Enum):
    SYNCHRONOUS = "synchronous"
    BACKGROUNDED = "backgrounded"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExecutionRecord:
    id: str
    code: str
    runtime: str
    start_time: float = field(default_factory=time.monotonic)
    phase: Phase = Phase.SYNCHRONOUS
    staged: StagedSource | None = None
    process: object = None
    pid: int | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_reported: int = 0
    stderr_reported: int = 0
    exit_code: int | None = None
    killed: bool = False
    supervisor: asyncio.Task | None = None
    monitor: asyncio.Task | None = None
    call_tasks: set = field(default_factory=set)

    @property
    def terminal(self) -> bool:
        return self.phase in (Phase.COMPLETED, Phase.FAILED)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def take_delta(self) -> str:
        """Return output not yet reported and advance the report cursors."""
        out = self.stdout[self.stdout_reported:]
        err = self.stderr[self.stderr_reported:]
        self.stdout_reported = len(self.stdout)
        self.stderr_reported = len(self.stderr)
        if err:
            return f"{out}[stderr]\n{err}" if out else f"[stderr]\n{err}"
        return out

    def mark_reported(self) -> None:
        self.stdout_reported = len(self.stdout)
        self.stderr_reported = len(self.stderr)


@dataclass
class ExecutionResult:
    success: bool
    execution_id: str
    output: str = ""
    error: str = ""
    handed_over: bool = False
    message: str = ""
    exit_code: int | None = None
    elapsed: float = 0.0
    pid: int | None = None

    def to_dict(self) -> dict:
        d = {"success": self.success, "execution_id": self.execution_id}
        if self.handed_over:
            d["handed_over"] = True
            d["message"] = self.message
            d["pid"] = self.pid
        if self.error:
            d["error"] = self.error
        else:
            d["output"] = self.output
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        d["elapsed"] = round(self.elapsed, 2)
        return d

    def to_text(self) -> str:
        timing = f"Time: {self.elapsed:.2f}s"
        if self.handed_over:
            return (f"{self.message}\nExecution ID: {self.execution_id}\n"
                    f"Output so far:\n{self.output or '(none)'}\n\n"
                    f"Progress arrives as background updates; use execute_status or "
                    f"execute_kill with this execution ID.")
        if self.success:
            return f"{self.output or 'Execution completed successfully'}\n\n{timing}"
        return f"{self.error}\nExecution ID: {self.execution_id}\n{timing}"


class ExecutionManager:
    def __init__(self, connections=None, eager: EagerPromptQueue | None = None,
                 history=None, working_dir: str | None = None,
                 capture_timeout_ms: float = 10000, monitor_interval: float = 60.0):
        self.connections = connections
        self.eager = eager if eager is not None else EagerPromptQueue()
        self.history = history
        self.working_dir = working_dir or os.getcwd()
        self.capture_timeout_ms = capture_timeout_ms
        self.monitor_interval = monitor_interval
        self.records: collections.OrderedDict[str, ExecutionRecord] = collections.OrderedDict()
        self._counter = 0

    # -- public operations --------------------------------------------------

    async def execute(self, code: str | None = None, runtime: str | None = None,
                      timeout: float | None = None, **extra) -> ExecutionResult:
        """Run code; returns a final result or a handover notice. Raises
        ExecutionValidationError before spawning on a bad request."""
        params = {"code": code, "runtime": runtime, **extra}
        if timeout is not None:
            params["timeout"] = timeout
        code, rt, timeout_ms = validate_request(params)
        capture_ms = timeout_ms or self.capture_timeout_ms

        self._counter += 1
        record = ExecutionRecord(id=f"exec_{self._counter}", code=code, runtime=rt.name)
        self.records[record.id] = record

        try:
            record.staged = stage_source(code, rt)
            record.process = await asyncio.create_subprocess_exec(
                *rt.command(record.staged.path, self.working_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir,
                env=self._child_env(),
            )
        except OSError as e:
            record.phase = Phase.FAILED
            self._release(record)
            _log(f"{record.id}: failed to start {rt.name}: {e}")
            result = ExecutionResult(
                success=False, execution_id=record.id,
                error=f"Failed to start {rt.name} runtime: {e}",
                elapsed=record.elapsed,
            )
            self._record_history(record, result)
            return result

        record.pid = record.process.pid
        _log(f"{record.id}: started {rt.name} (pid {record.pid})")
        record.supervisor = asyncio.create_task(self._supervise(record))

        try:
            done, _ = await asyncio.wait({record.supervisor}, timeout=capture_ms / 1000)
        except asyncio.CancelledError:
            self._kill_process(record)
            raise

        if record.supervisor in done:
            result = self._final_result(record)
        else:
            # No await between the wait returning and this transition, so the
            # child cannot finish unnoticed in between.
            record.phase = Phase.BACKGROUNDED
            output = record.take_delta()
            record.monitor = asyncio.create_task(self._monitor(record))
            message = (f"Execution timeout after {capture_ms:g}ms. "
                       f"Process ({record.pid}) continues in background")
            _log(f"{record.id}: {message}")
            result = ExecutionResult(
                success=True, execution_id=record.id, output=output,
                handed_over=True, message=message,
                elapsed=record.elapsed, pid=record.pid,
            )
        self._record_history(record, result)
        return result

    def get_record(self, execution_id: str) -> ExecutionRecord:
        record = self.records.get(execution_id)
        if record is None:
            raise CodemodeError(f"Unknown execution id: {execution_id}")
        return record

    def status(self, execution_id: str) -> dict:
        """Phase and any output not yet reported; reading it counts as reporting."""
        record = self.get_record(execution_id)
        return {
            "execution_id": record.id,
            "runtime": record.runtime,
            "phase": record.phase.value,
            "pid": record.pid,
            "running": not record.terminal,
            "exit_code": record.exit_code,
            "elapsed": round(record.elapsed, 2),
            "new_output": record.take_delta(),
        }

    async def kill(self, execution_id: str) -> dict:
        record = self.get_record(execution_id)
        if record.terminal or record.process is None:
            return {"execution_id": record.id, "killed": False,
                    "phase": record.phase.value, "exit_code": record.exit_code}
        record.killed = True
        self._kill_process(record)
        if record.supervisor is not None:
            await asyncio.wait({record.supervisor}, timeout=KILL_WAIT_SECONDS)
        _log(f"{record.id}: killed (pid {record.pid})")
        return {"execution_id": record.id, "killed": True, "pid": record.pid,
                "phase": record.phase.value, "exit_code": record.exit_code}

    def has_background(self) -> bool:
        return any(r.phase is Phase.BACKGROUNDED for r in self.records.values())

    def running(self) -> list[str]:
        return [r.id for r in self.records.values() if not r.terminal and r.process is not None]

    async def shutdown(self) -> None:
        supervisors = []
        for record in self.records.values():
            if not record.terminal:
                record.killed = True
                self._kill_process(record)
            if record.supervisor is not None and not record.supervisor.done():
                supervisors.append(record.supervisor)
        if supervisors:
            await asyncio.wait(supervisors, timeout=KILL_WAIT_SECONDS)

    # -- child lifecycle ----------------------------------------------------

    def _child_env(self) -> dict:
        env = os.environ.copy()
        snapshot = self.connections.tools_snapshot() if self.connections is not None else {}
        env["CODEMODE_TOOLS"] = json.dumps(snapshot)
        env["CODEMODE_WORKING_DIRECTORY"] = self.working_dir
        env["CODEMODE_BRIDGE"] = BRIDGE_PATH
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in (os.path.dirname(BRIDGE_PATH), env.get("PYTHONPATH")) if p
        )
        env["PYTHONUNBUFFERED"] = "1"
        return env

    @staticmethod
    def _kill_process(record: ExecutionRecord) -> None:
        proc = record.process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def _supervise(self, record: ExecutionRecord) -> None:
        pumps = asyncio.gather(self._pump_stdout(record), self._pump_stderr(record))
        record.exit_code = await self._wait_exit(record)
        try:
            await asyncio.wait_for(pumps, PIPE_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            # A descendant inherited the pipes and outlives the child.
            _log(f"{record.id}: pid {record.pid} exited but its output pipes are still open; "
                 f"stopped reading")
        for task in list(record.call_tasks):
            task.cancel()
        self._finish(record)

    @staticmethod
    async def _wait_exit(record: ExecutionRecord) -> int:
        """Exit status of the child, without waiting for its pipes to close.

        Process.wait() may not resolve until every pipe reaches EOF, so the
        returncode is also polled.
        """
        waiter = asyncio.ensure_future(record.process.wait())
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=EXIT_POLL_SECONDS)
                if done:
                    return waiter.result()
                if record.process.returncode is not None:
                    return record.process.returncode
        finally:
            if not waiter.done():
                waiter.cancel()

    async def _pump_stdout(self, record: ExecutionRecord) -> None:
        buf = LineBuffer()
        try:
            while True:
                chunk = await record.process.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                for line in buf.feed(chunk):
                    self._handle_child_line(record, line)
        except (ConnectionError, OSError) as e:
            _log(f"{record.id}: stdout read failed: {e}")
        tail = buf.flush()
        if tail:
            self._handle_child_line(record, tail, terminated=False)

    async def _pump_stderr(self, record: ExecutionRecord) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await record.process.stderr.read(READ_CHUNK)
                if not chunk:
                    break
                record.stderr += decoder.decode(chunk)
        except (ConnectionError, OSError) as e:
            _log(f"{record.id}: stderr read failed: {e}")
        record.stderr += decoder.decode(b"", final=True)

    def _handle_child_line(self, record: ExecutionRecord, line: str, terminated: bool = True) -> None:
        item = classify_line(line)
        if isinstance(item, ToolCallRequest):
            task = asyncio.create_task(self._serve_tool_call(record, item))
            record.call_tasks.add(task)
            task.add_done_callback(record.call_tasks.discard)
            return
        record.stdout += item.text + ("\n" if terminated else "")

    async def _serve_tool_call(self, record: ExecutionRecord, req: ToolCallRequest) -> None:
        try:
            if self.connections is None:
                raise ToolNotFound(req.name)
            result = await self.connections.dispatch(req.name, req.arguments)
            reply = make_result(req.id, result)
        except CodemodeError as e:
            _log(f"{record.id}: tool call {req.name} failed: {e}")
            reply = make_error(req.id, INTERNAL_ERROR, str(e))
        except Exception as e:
            _log(f"{record.id}: tool call {req.name} raised {type(e).__name__}: {e}")
            reply = make_error(req.id, INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        await self._write_to_child(record, reply)

    async def _write_to_child(self, record: ExecutionRecord, msg: dict) -> None:
        stdin = record.process.stdin if record.process is not None else None
        if stdin is None or stdin.is_closing():
            _log(f"{record.id}: child stdin closed, dropping reply to id={msg.get('id')}")
            return
        try:
            stdin.write(encode_message(msg))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            _log(f"{record.id}: could not reply to child: {e}")

    async def _monitor(self, record: ExecutionRecord) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval)
            delta = record.take_delta()
            if delta:
                self.eager.push(
                    record.id,
                    f"Background process ({record.pid}) still running. New output received",
                    delta,
                )

    def _finish(self, record: ExecutionRecord) -> None:
        was_background = record.phase is Phase.BACKGROUNDED
        ok = record.exit_code == 0 and not record.killed
        record.phase = Phase.COMPLETED if ok else Phase.FAILED
        if record.monitor is not None:
            record.monitor.cancel()
            record.monitor = None
        if was_background:
            suffix = " (killed)" if record.killed else ""
            self.eager.push(
                record.id,
                f"Background process ({record.pid}) completed with exit code {record.exit_code}{suffix}",
                record.take_delta(),
            )
            if self.history is not None:
                self.history.record_execution_result(self._final_result(record).to_dict())
        _log(f"{record.id}: {record.phase.value} with exit code {record.exit_code} "
             f"after {record.elapsed:.2f}s")
        self._release(record)
        self._trim_records()

    def _release(self, record: ExecutionRecord) -> None:
        staged, record.staged = record.staged, None
        if staged is not None:
            staged.remove()
        proc = record.process
        if proc is not None and proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

    def _trim_records(self) -> None:
        finished = [rid for rid, r in self.records.items() if r.terminal]
        for rid in finished[:max(0, len(finished) - MAX_FINISHED_RECORDS)]:
            del self.records[rid]

    def _final_result(self, record: ExecutionRecord) -> ExecutionResult:
        record.mark_reported()
        if record.exit_code == 0 and not record.killed:
            output = record.stdout
            if record.stderr:
                output = f"{output}\n[stderr]\n{record.stderr}" if output else f"[stderr]\n{record.stderr}"
            return ExecutionResult(
                success=True, execution_id=record.id, output=output,
                exit_code=record.exit_code, elapsed=record.elapsed, pid=record.pid,
            )
        detail = record.stderr.strip() or record.stdout.strip() or "(no output)"
        return ExecutionResult(
            success=False, execution_id=record.id,
            error=f"Execution failed with code {record.exit_code}: {detail}",
            output=record.stdout, exit_code=record.exit_code,
            elapsed=record.elapsed, pid=record.pid,
        )

    def _record_history(self, record: ExecutionRecord, result: ExecutionResult) -> None:
        if self.history is not None:
            self.history.record_execution(record.code, record.runtime, result.to_dict())
