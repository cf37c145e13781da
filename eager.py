"""FIFO queue of status messages awaiting the planner's next turn."""

import asyncio
import collections
import sys
import time
from dataclasses import dataclass, field


def _log(msg: str) -> None:
    print(f"[eager] {msg}", file=sys.stderr, flush=True)


@dataclass
class EagerPrompt:
    execution_id: str
    message: str
    log_delta: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "message": self.message,
            "log_delta": self.log_delta,
            "timestamp": self.timestamp,
        }

    def render(self) -> str:
        if self.log_delta:
            return f"[{self.execution_id}] {self.message}\n{self.log_delta}"
        return f"[{self.execution_id}] {self.message}"


class EagerPromptQueue:
    """Prompts are consumed exactly once, in the order they were pushed."""

    def __init__(self):
        self._items: collections.deque[EagerPrompt] = collections.deque()
        self._event = asyncio.Event()

    def push(self, execution_id: str, message: str, log_delta: str = "") -> EagerPrompt:
        prompt = EagerPrompt(execution_id=execution_id, message=message, log_delta=log_delta)
        self._items.append(prompt)
        self._event.set()
        _log(f"Queued prompt for {execution_id} ({len(self._items)} pending)")
        return prompt

    def drain(self) -> list[EagerPrompt]:
        items = list(self._items)
        self._items.clear()
        self._event.clear()
        return items

    def __len__(self) -> int:
        return len(self._items)

    async def wait(self, timeout: float | None = None) -> bool:
        """Block until at least one prompt is pending. Returns False on timeout."""
        if self._items:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return bool(self._items)


def format_eager_prompts(prompts: list[EagerPrompt]) -> str:
    """Merge drained prompts into one block for the next planner turn."""
    if not prompts:
        return ""
    parts = ["Background updates:"]
    parts.extend(p.render() for p in prompts)
    return "\n\n".join(parts)
