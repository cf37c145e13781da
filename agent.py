"""Minimal planner loop: ask the model, dispatch tool calls, fold updates back in."""

import asyncio
import json
import sys

from eager import format_eager_prompts
from protocol import CodemodeError

SYSTEM_PROMPT = (
    "You are a coding agent. Use the execute tool to run code and the other tools "
    "to inspect and change files. Long-running executions continue in the "
    "background; their progress arrives as background updates."
)


def _log(msg: str) -> None:
    print(f"[agent] {msg}", file=sys.stderr, flush=True)


def build_context_message(history) -> dict | None:
    text = history.render()
    if not text:
        return None
    return {"role": "user", "content": f"Interaction history so far:\n{text}"}


async def run_agent_loop(prompt: str, orchestrator, llm, max_turns: int = 50) -> str:
    """Drive `llm` until it answers without tool calls. Returns the final text."""
    loop = asyncio.get_running_loop()
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
    context = build_context_message(orchestrator.history)
    if context is not None:
        messages.insert(1, context)

    last_text = ""
    for turn in range(max_turns):
        orchestrator.history.perform_cleanup()
        updates = format_eager_prompts(orchestrator.eager.drain())
        if updates:
            messages.append({"role": "user", "content": updates})

        tools = orchestrator.tool_specs()
        response = await loop.run_in_executor(None, lambda: llm.complete(messages, tools))
        last_text = response.text
        messages.append(response.assistant_message())

        if not response.tool_calls:
            if orchestrator.executions.has_background():
                _log(f"Turn {turn + 1}: waiting on background execution(s)")
                await orchestrator.eager.wait(orchestrator.executions.monitor_interval)
                continue
            return last_text

        for call in response.tool_calls:
            try:
                content = await orchestrator.dispatch(call.name, call.arguments)
            except CodemodeError as e:
                content = f"Error: {e}"
            except TypeError as e:
                content = f"Error: bad arguments for {call.name}: {e}"
            _log(f"Turn {turn + 1}: {call.name} -> {len(content)} chars")
            messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

    _log(f"Stopped after {max_turns} turns")
    return last_text or json.dumps({"status": "error", "message": f"No answer after {max_turns} turns"})
