"""Explicit wiring of the runtime components.

One Orchestrator owns one instance of each component; nothing is reached
through module-level state. The MCP surface and the agent loop are both
handed an Orchestrator.
"""

import asyncio
import json
import signal
import sys

from agent import run_agent_loop
from config import ServerConfig, Settings
from connections import ConnectionManager
from eager import EagerPromptQueue
from executor import ExecutionManager
from history import HistoryStore
from runtimes import RUNTIMES


def _log(msg: str) -> None:
    print(f"[codemode] {msg}", file=sys.stderr, flush=True)


EXECUTE_TOOLS = [
    {
        "name": "execute",
        "description": (
            "Run code in a runtime. Finishes synchronously inside the capture window, "
            "otherwise hands over to background monitoring and returns an execution ID."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Source code to run"},
                "runtime": {"type": "string", "enum": list(RUNTIMES)},
                "timeout": {"type": "number", "description": "Capture window in milliseconds"},
            },
            "required": ["code", "runtime"],
        },
    },
    {
        "name": "execute_status",
        "description": "Phase and unreported output of a background execution.",
        "input_schema": {
            "type": "object",
            "properties": {"execution_id": {"type": "string"}},
            "required": ["execution_id"],
        },
    },
    {
        "name": "execute_kill",
        "description": "Kill a running execution.",
        "input_schema": {
            "type": "object",
            "properties": {"execution_id": {"type": "string"}},
            "required": ["execution_id"],
        },
    },
]


class Orchestrator:
    def __init__(self, settings: Settings | None = None,
                 server_configs: dict[str, ServerConfig] | None = None,
                 llm=None):
        self.settings = settings or Settings()
        self.llm = llm
        self.history = HistoryStore(
            tool_window=self.settings.tool_window,
            execution_window=self.settings.execution_window,
            hard_cap=self.settings.history_hard_cap,
            max_tokens=self.settings.history_max_tokens,
            protected_recent=self.settings.protected_recent,
        )
        self.eager = EagerPromptQueue()
        self.connections = ConnectionManager(
            server_configs,
            history=self.history,
            working_dir=self.settings.working_dir,
            handshake_timeout=self.settings.handshake_timeout,
            request_timeout=self.settings.request_timeout,
        )
        self.executions = ExecutionManager(
            self.connections,
            eager=self.eager,
            history=self.history,
            working_dir=self.settings.working_dir,
            capture_timeout_ms=self.settings.capture_timeout_ms,
            monitor_interval=self.settings.monitor_interval,
        )
        self._agents: dict[str, asyncio.Task] = {}
        self._agent_counter = 0
        self._stopping = False

    async def start(self) -> None:
        await self.connections.start()

    async def shutdown(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        _log("Shutting down")
        for task in self._agents.values():
            task.cancel()
        await self.executions.shutdown()
        await self.connections.shutdown()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Terminate children on SIGINT/SIGTERM before the loop stops."""
        loop = loop or asyncio.get_running_loop()
        signals = (signal.SIGINT, signal.SIGTERM)

        def _reraise(sig: signal.Signals):
            # Restore the default disposition and deliver the signal again.
            for s in signals:
                loop.remove_signal_handler(s)
            signal.raise_signal(sig)

        def _on_signal(sig: signal.Signals):
            _log(f"Received {sig.name}")
            task = loop.create_task(self.shutdown())
            task.add_done_callback(lambda _t: _reraise(sig))

        for sig in signals:
            try:
                loop.add_signal_handler(sig, _on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Signal handlers unavailable (Windows or non-main thread)
                pass

    # -- tool surface -------------------------------------------------------

    def tool_specs(self) -> list[dict]:
        """OpenAI function specs for everything the planner can call."""
        specs = []
        for tool in EXECUTE_TOOLS:
            specs.append({"type": "function", "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["input_schema"],
            }})
        for name, descriptor in self.connections.qualified_tools():
            specs.append({"type": "function", "function": {
                "name": name,
                "description": descriptor.description,
                "parameters": descriptor.input_schema or {"type": "object", "properties": {}},
            }})
        return specs

    async def dispatch(self, name: str, arguments: dict | None = None) -> str:
        """Run one planner tool call and return its textual result."""
        arguments = dict(arguments or {})
        if name == "execute":
            result = await self.executions.execute(**arguments)
            return result.to_text()
        if name == "execute_status":
            return json.dumps(self.executions.status(arguments.get("execution_id", "")), indent=2)
        if name == "execute_kill":
            return json.dumps(await self.executions.kill(arguments.get("execution_id", "")), indent=2)
        result = await self.connections.dispatch(name, arguments)
        return result if isinstance(result, str) else json.dumps(result)

    # -- sub-agents ---------------------------------------------------------

    def spawn_agent(self, prompt: str) -> str:
        """Start an agent loop in the background; its answer arrives as an eager prompt."""
        if self.llm is None:
            raise RuntimeError("No LLM client configured for sub-agents")
        self._agent_counter += 1
        agent_id = f"agent_{self._agent_counter}"

        async def _run():
            try:
                answer = await run_agent_loop(prompt, self, self.llm,
                                              max_turns=self.settings.max_turns)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                _log(f"{agent_id} failed: {type(e).__name__}: {e}")
                self.eager.push(agent_id, f"Sub-agent failed: {type(e).__name__}: {e}")
            else:
                self.eager.push(agent_id, "Sub-agent completed", answer)
            finally:
                self._agents.pop(agent_id, None)

        self._agents[agent_id] = asyncio.create_task(_run())
        _log(f"{agent_id} started")
        return agent_id
