"""OpenAI-backed completion endpoint for the agent loop."""

import json
import os
import sys
import threading
import time
from dataclasses import dataclass, field

import openai


def _log(msg: str) -> None:
    print(f"[llm] {msg}", file=sys.stderr, flush=True)


@dataclass
class FunctionCall:
    id: str
    name: str
    arguments: dict


@dataclass
class LLMResponse:
    text: str
    tool_calls: list[FunctionCall] = field(default_factory=list)
    stop_reason: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def assistant_message(self) -> dict:
        """The response as an OpenAI chat message, for appending to history."""
        msg = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                }
                for c in self.tool_calls
            ]
        return msg


def _parse_arguments(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {"__raw__": raw}
    return value if isinstance(value, dict) else {"value": value}


def _retry_after(e: openai.APIStatusError) -> float | None:
    if getattr(e, "response", None) is None:
        return None
    value = e.response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


class OpenAIChatClient:
    def __init__(self, model: str | None = None, max_tokens: int = 4096,
                 max_retries: int | None = None, retry_base_delay: float | None = None):
        self.model = model or os.environ.get("CODEMODE_MODEL", "gpt-4o")
        self.max_tokens = max_tokens
        self.max_retries = (max_retries if max_retries is not None
                            else int(os.environ.get("CODEMODE_MAX_RETRIES", "3")))
        self.retry_base_delay = (retry_base_delay if retry_base_delay is not None
                                 else float(os.environ.get("CODEMODE_RETRY_BASE_DELAY", "2.0")))
        self._usage_lock = threading.Lock()
        self._prompt_tokens = 0
        self._completion_tokens = 0

    def get_token_usage(self) -> dict:
        with self._usage_lock:
            return {
                "prompt_tokens": self._prompt_tokens,
                "completion_tokens": self._completion_tokens,
                "total_tokens": self._prompt_tokens + self._completion_tokens,
            }

    def complete(self, messages: list[dict], tools: list[dict] | None = None) -> LLMResponse:
        """One chat completion, retrying rate limits with exponential backoff."""
        client = openai.OpenAI()
        kwargs = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools

        for attempt in range(self.max_retries + 1):
            try:
                raw = client.chat.completions.with_raw_response.create(**kwargs)
                resp = raw.parse()
                break
            except openai.APIStatusError as e:
                # RateLimitError is the 429 subclass of APIStatusError.
                if e.status_code != 429 or attempt >= self.max_retries:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                retry_after = _retry_after(e)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                _log(f"Rate limited (attempt {attempt + 1}/{self.max_retries}), "
                     f"retrying in {delay:.1f}s...")
                time.sleep(delay)

        choice = resp.choices[0]
        message = choice.message
        calls = [
            FunctionCall(id=tc.id, name=tc.function.name,
                         arguments=_parse_arguments(tc.function.arguments))
            for tc in (message.tool_calls or [])
        ]
        prompt_tokens = resp.usage.prompt_tokens if resp.usage else 0
        completion_tokens = resp.usage.completion_tokens if resp.usage else 0
        with self._usage_lock:
            self._prompt_tokens += prompt_tokens
            self._completion_tokens += completion_tokens
        return LLMResponse(
            text=message.content or "",
            tool_calls=calls,
            stop_reason=choice.finish_reason or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
