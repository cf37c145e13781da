"""Bounded, self-compacting log of tool calls and code executions.

Three kinds of entry are kept: tool calls, execution inputs and execution
outputs. Large payloads are summarized when appended; entries that fall out
of the recency window are summarized once more; a token ceiling triggers
aggressive cleanup that never touches the most recent entries of each kind.
"""

import json
import math
import sys
import time
from dataclasses import dataclass

TOOL_CALL = "toolCall"
EXECUTION_INPUT = "executionInput"
EXECUTION_OUTPUT = "executionOutput"
KINDS = (TOOL_CALL, EXECUTION_INPUT, EXECUTION_OUTPUT)

APPROX_CHARS_PER_TOKEN = 4
MAX_INLINE_CHARS = 500
MAX_FIELD_CHARS = 200
PREVIEW_CHARS = 100


def _log(msg: str) -> None:
    print(f"[history] {msg}", file=sys.stderr, flush=True)


def estimate_tokens(obj) -> int:
    """Cheap token estimate: serialized length over four, rounded up."""
    return math.ceil(len(json.dumps(obj, default=str)) / APPROX_CHARS_PER_TOKEN)


def create_summary(text: str) -> str:
    """One-line description of a blob of text."""
    if not text:
        return "(empty)"
    if "error" in text.lower():
        return f"Error message about {text[:PREVIEW_CHARS]}..."
    stripped = text.strip()
    if stripped[:1] in ("{", "["):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, (dict, list)):
            return f"JSON data structure with {len(data)} fields"
    lines = text.count("\n") + 1
    if lines > 1:
        return f"Code execution output with {lines} lines"
    return f"Text content ({len(text)} chars): {text[:PREVIEW_CHARS]}..."


def compact_code(code: str, runtime: str) -> str:
    if len(code) <= MAX_FIELD_CHARS:
        return code
    lines = code.count("\n") + 1
    return f"{runtime} code ({lines} lines): {code[:PREVIEW_CHARS]}..."


def compact_field(value):
    """Summarize a single payload field if it is too large to keep inline."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return create_summary(value) if len(value) > MAX_FIELD_CHARS else value
    text = json.dumps(value, default=str)
    if len(text) > MAX_INLINE_CHARS:
        return create_summary(text)
    return value


IDENTITY_FIELDS = {
    TOOL_CALL: ("server", "tool"),
    EXECUTION_INPUT: ("runtime",),
    EXECUTION_OUTPUT: ("execution_id", "success", "exit_code"),
}


def collapse_payload(kind: str, payload: dict) -> tuple[dict, bool]:
    """Replace a payload that is still too large after per-field compaction
    with its identity fields plus one summary string."""
    text = json.dumps(payload, default=str)
    if len(text) <= 2 * MAX_INLINE_CHARS:
        return payload, False
    kept = {k: payload[k] for k in IDENTITY_FIELDS[kind] if k in payload}
    kept["summary"] = f"Payload ({len(text)} chars): {create_summary(text)}"
    return kept, True


@dataclass
class HistoryEntry:
    kind: str
    payload: dict
    timestamp: float
    estimated_tokens: int = 0
    compacted: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "compacted": self.compacted,
        }


class HistoryStore:
    def __init__(self, tool_window: int = 10, execution_window: int = 3,
                 hard_cap: int = 80, max_tokens: int = 20000,
                 protected_recent: int = 3):
        if protected_recent < 0 or tool_window < 0 or execution_window < 0:
            raise ValueError("History windows must be non-negative")
        if hard_cap <= max(tool_window, execution_window, protected_recent):
            raise ValueError("hard_cap must exceed every retention window")
        self.tool_window = tool_window
        self.execution_window = execution_window
        self.hard_cap = hard_cap
        self.max_tokens = max_tokens
        self.protected_recent = protected_recent
        self._entries: list[HistoryEntry] = []
        self.total_tokens = 0

    # -- recording ----------------------------------------------------------

    def record_tool_call(self, server: str, tool: str, arguments: dict | None,
                         result=None, error: str | None = None) -> HistoryEntry:
        payload = {
            "server": server,
            "tool": tool,
            "arguments": compact_field(arguments or {}),
        }
        if error is not None:
            payload["error"] = compact_field(error)
        else:
            payload["result"] = compact_field(result)
        return self._append(TOOL_CALL, payload)

    def record_execution(self, code: str, runtime: str, result: dict) -> tuple[HistoryEntry, HistoryEntry]:
        """Append an execution input/output pair."""
        entry_in = self._append(EXECUTION_INPUT, {
            "runtime": runtime,
            "code": compact_code(code, runtime),
        }, enforce_budget=False)
        entry_out = self._append(EXECUTION_OUTPUT, self._output_payload(result))
        return entry_in, entry_out

    def record_execution_result(self, result: dict) -> HistoryEntry:
        """Append the final outcome of an execution that was handed over."""
        return self._append(EXECUTION_OUTPUT, self._output_payload(result))

    @staticmethod
    def _output_payload(result: dict) -> dict:
        output = {
            "execution_id": result.get("execution_id"),
            "success": result.get("success"),
        }
        if result.get("exit_code") is not None:
            output["exit_code"] = result["exit_code"]
        if result.get("handed_over"):
            output["handed_over"] = True
        if result.get("error"):
            output["error"] = compact_field(result["error"])
        else:
            output["output"] = compact_field(result.get("output", ""))
        return output

    def _append(self, kind: str, payload: dict, enforce_budget: bool = True) -> HistoryEntry:
        # The budget pass is deferred for the first half of an execution pair
        # so it cannot evict the input before its output lands.
        payload, collapsed = collapse_payload(kind, payload)
        entry = HistoryEntry(kind=kind, payload=payload, timestamp=time.time(), compacted=collapsed)
        entry.estimated_tokens = estimate_tokens(payload)
        self._entries.append(entry)
        self._compact_outside_window(kind)
        self._apply_hard_cap(kind)
        self._recount()
        if enforce_budget:
            self._enforce_budget()
        return entry

    # -- queries ------------------------------------------------------------

    def entries(self, kind: str | None = None) -> list[HistoryEntry]:
        if kind is None:
            return list(self._entries)
        return [e for e in self._entries if e.kind == kind]

    def __len__(self) -> int:
        return len(self._entries)

    def summary(self) -> dict:
        counts = {kind: 0 for kind in KINDS}
        compacted = 0
        for entry in self._entries:
            counts[entry.kind] += 1
            compacted += entry.compacted
        return {
            "tool_calls": counts[TOOL_CALL],
            "execution_inputs": counts[EXECUTION_INPUT],
            "execution_outputs": counts[EXECUTION_OUTPUT],
            "compacted": compacted,
            "estimated_tokens": self.total_tokens,
            "max_tokens": self.max_tokens,
        }

    def render(self) -> str:
        """Compact text view suitable for folding into a planner prompt."""
        lines = []
        for entry in self._entries:
            p = entry.payload
            if entry.kind == TOOL_CALL:
                head = f"{p.get('server')}.{p.get('tool')}"
                if entry.compacted:
                    lines.append(f"[tool] {head}: {p.get('summary')}")
                elif "error" in p:
                    lines.append(f"[tool] {head}({json.dumps(p.get('arguments'), default=str)}) failed: {p['error']}")
                else:
                    lines.append(f"[tool] {head}({json.dumps(p.get('arguments'), default=str)}) -> {p.get('result')}")
            elif entry.kind == EXECUTION_INPUT:
                lines.append(f"[exec:{p.get('runtime')}] {p.get('summary') or p.get('code')}")
            else:
                status = "ok" if p.get("success") else "failed"
                body = p.get("summary") or p.get("error") or p.get("output")
                lines.append(f"[exec-result {p.get('execution_id')} {status}] {body}")
        return "\n".join(lines)

    def clear(self) -> None:
        self._entries.clear()
        self.total_tokens = 0

    # -- compaction ---------------------------------------------------------

    def _window(self, kind: str) -> int:
        return self.tool_window if kind == TOOL_CALL else self.execution_window

    def _compact_outside_window(self, kind: str) -> None:
        same = self.entries(kind)
        window = self._window(kind)
        older = same[:-window] if window else same
        for entry in older:
            if not entry.compacted:
                self._summarize(entry)

    @staticmethod
    def _summarize(entry: HistoryEntry) -> None:
        p = entry.payload
        if entry.kind == TOOL_CALL:
            if "error" in p:
                detail = f"failed: {create_summary(str(p['error']))}"
            else:
                result = p.get("result")
                text = result if isinstance(result, str) else json.dumps(result, default=str)
                detail = create_summary(text)
            summary = {"server": p.get("server"), "tool": p.get("tool"), "summary": detail}
        elif entry.kind == EXECUTION_INPUT:
            code = p.get("code", "")
            lines = code.count("\n") + 1
            summary = {
                "runtime": p.get("runtime"),
                "summary": f"{p.get('runtime')} code ({lines} lines): {code[:60]}",
            }
        else:
            text = p.get("error") or p.get("output") or ""
            summary = {
                "execution_id": p.get("execution_id"),
                "success": p.get("success"),
                "summary": create_summary(str(text)),
            }
        entry.payload = summary
        entry.compacted = True
        entry.estimated_tokens = estimate_tokens(summary)

    def _apply_hard_cap(self, kind: str) -> None:
        same = self.entries(kind)
        excess = len(same) - self.hard_cap
        if excess <= 0:
            return
        victims = [e for e in same if e.compacted][:excess]
        if len(victims) < excess:
            rest = [e for e in same[:len(same) - self.protected_recent] if e not in victims]
            victims.extend(rest[:excess - len(victims)])
        self._remove(victims)

    def _removable(self, kind: str) -> list[HistoryEntry]:
        same = self.entries(kind)
        if self.protected_recent:
            return same[:-self.protected_recent]
        return same

    def _remove(self, victims: list[HistoryEntry]) -> None:
        if not victims:
            return
        doomed = {id(e) for e in victims}
        self._entries = [e for e in self._entries if id(e) not in doomed]

    def _recount(self) -> None:
        self.total_tokens = sum(e.estimated_tokens for e in self._entries)

    def _enforce_budget(self) -> None:
        if self.total_tokens <= self.max_tokens:
            return
        before = self.total_tokens
        while self.total_tokens > self.max_tokens:
            victims = []
            for kind in KINDS:
                candidates = self._removable(kind)
                victims.extend(candidates[:(len(candidates) + 1) // 2])
            if not victims:
                break
            self._remove(victims)
            self._recount()
        if self.total_tokens > self.max_tokens:
            for entry in self._entries:
                if not entry.compacted:
                    self._summarize(entry)
            self._recount()
        _log(f"Cleanup: {before} -> {self.total_tokens} estimated tokens "
             f"(ceiling {self.max_tokens}, {len(self._entries)} entries kept)")
        if self.total_tokens > self.max_tokens:
            _log("Warning: protected entries alone exceed the token ceiling")

    def perform_cleanup(self) -> None:
        """Re-apply caps and budget; called once per planner turn."""
        for kind in KINDS:
            self._compact_outside_window(kind)
            self._apply_hard_cap(kind)
        self._recount()
        self._enforce_budget()
