"""Codemode runtime MCP server.

Exposes code execution across several runtimes, tool-server calls and the
session's background updates as MCP tools over stdio.

Architecture:
  MCP client --JSON-RPC/stdio--> mcp_server.py --JSON/stdin--> tool servers
                                      |
                                      +--spawn--> executions --tools/call on stdout--> back here
"""

import json
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()

from mcp.server.fastmcp import FastMCP

from config import Settings, load_server_config
from llm import OpenAIChatClient
from orchestrator import Orchestrator
from protocol import CodemodeError, ExecutionValidationError
from runtimes import RUNTIMES

STDOUT_LIMIT = 20000


def _truncate(text: str) -> str:
    if len(text) > STDOUT_LIMIT:
        return text[:STDOUT_LIMIT] + f"\n... ({len(text)} chars total, truncated)"
    return text


def create_server(orchestrator: Orchestrator) -> FastMCP:
    """Build the MCP surface around an already-constructed orchestrator."""

    @asynccontextmanager
    async def lifespan(_server):
        await orchestrator.start()
        orchestrator.install_signal_handlers()
        try:
            yield orchestrator
        finally:
            await orchestrator.shutdown()

    mcp = FastMCP("codemode", lifespan=lifespan)

    @mcp.tool(description=(
        "Run code in one of: " + ", ".join(RUNTIMES) + ". Returns the result if the "
        "code finishes within `timeout` ms (default 10000); otherwise returns an "
        "execution ID and keeps the process running in the background. Spawned code "
        "can call tools by printing JSON-RPC tools/call lines (Python: "
        "`from tool_bridge import call_tool`)."
    ))
    async def execute(code: str, runtime: str, timeout: float | None = None) -> str:
        try:
            result = await orchestrator.executions.execute(code, runtime, timeout)
        except ExecutionValidationError as e:
            return json.dumps({"success": False, "error": str(e)})
        return _truncate(result.to_text())

    @mcp.tool(description="Phase, pid and any unreported output of an execution.")
    def execute_status(execution_id: str) -> str:
        try:
            return json.dumps(orchestrator.executions.status(execution_id), indent=2)
        except CodemodeError as e:
            return json.dumps({"status": "error", "message": str(e)})

    @mcp.tool(description="Kill a running execution (SIGKILL).")
    async def execute_kill(execution_id: str) -> str:
        try:
            return json.dumps(await orchestrator.executions.kill(execution_id), indent=2)
        except CodemodeError as e:
            return json.dumps({"status": "error", "message": str(e)})

    @mcp.tool(description="List available tools grouped by server, with input schemas.")
    def list_tools() -> str:
        return json.dumps({
            "servers": orchestrator.connections.tools_snapshot(),
            "unavailable": orchestrator.connections.failed,
        }, indent=2)

    @mcp.tool(description=(
        "Call a tool by name: a built-in name such as 'Read', or "
        "'mcp__<server>__<tool>' for a tool server or pool."
    ))
    async def call_tool(name: str, arguments: dict | None = None) -> str:
        try:
            result = await orchestrator.connections.dispatch(name, arguments or {})
        except CodemodeError as e:
            return json.dumps({"status": "error", "message": str(e)})
        return _truncate(result if isinstance(result, str) else json.dumps(result))

    @mcp.tool(description="Drain background updates (execution progress, sub-agent results).")
    def get_eager_prompts() -> str:
        return json.dumps([p.to_dict() for p in orchestrator.eager.drain()], indent=2)

    @mcp.tool(description="Entry counts and estimated token size of the interaction history.")
    def history_summary() -> str:
        return json.dumps(orchestrator.history.summary(), indent=2)

    @mcp.tool(description="Start a sub-agent on a prompt; its answer arrives as a background update.")
    def spawn_agent(prompt: str) -> str:
        try:
            agent_id = orchestrator.spawn_agent(prompt)
        except RuntimeError as e:
            return json.dumps({"status": "error", "message": str(e)})
        return json.dumps({"agent_id": agent_id, "status": "started"})

    return mcp


def build_orchestrator(settings: Settings | None = None) -> Orchestrator:
    settings = settings or Settings.from_env()
    configs = load_server_config(settings.config_path)
    print(f"[codemode] {len(configs)} tool server(s) configured in {settings.config_path}",
          file=sys.stderr, flush=True)
    llm = OpenAIChatClient(
        model=settings.model,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay,
    )
    return Orchestrator(settings, configs, llm=llm)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    create_server(build_orchestrator()).run()


if __name__ == "__main__":
    main()
