"""Environment-backed settings and tool-server configuration loading."""

import json
import os
from dataclasses import dataclass, field

DEFAULT_CONFIG_NAME = ".codemode.json"


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass
class Settings:
    working_dir: str = field(default_factory=os.getcwd)
    config_path: str = ""
    capture_timeout_ms: int = 10000
    monitor_interval: float = 60.0
    handshake_timeout: float = 30.0
    request_timeout: float = 120.0
    history_max_tokens: int = 20000
    tool_window: int = 10
    execution_window: int = 3
    history_hard_cap: int = 80
    protected_recent: int = 3
    model: str = "gpt-4o"
    max_turns: int = 50
    max_retries: int = 3
    retry_base_delay: float = 2.0

    @classmethod
    def from_env(cls) -> "Settings":
        working_dir = os.environ.get("CODEMODE_WORKING_DIRECTORY") or os.getcwd()
        return cls(
            working_dir=working_dir,
            config_path=os.environ.get(
                "CODEMODE_CONFIG", os.path.join(working_dir, DEFAULT_CONFIG_NAME)
            ),
            capture_timeout_ms=_env_int("CODEMODE_CAPTURE_TIMEOUT_MS", 10000),
            monitor_interval=_env_float("CODEMODE_MONITOR_INTERVAL_SECONDS", 60.0),
            handshake_timeout=_env_float("CODEMODE_HANDSHAKE_TIMEOUT_SECONDS", 30.0),
            request_timeout=_env_float("CODEMODE_REQUEST_TIMEOUT_SECONDS", 120.0),
            history_max_tokens=_env_int("CODEMODE_HISTORY_MAX_TOKENS", 20000),
            tool_window=_env_int("CODEMODE_TOOL_WINDOW", 10),
            execution_window=_env_int("CODEMODE_EXECUTION_WINDOW", 3),
            history_hard_cap=_env_int("CODEMODE_HISTORY_HARD_CAP", 80),
            protected_recent=_env_int("CODEMODE_PROTECTED_RECENT", 3),
            model=os.environ.get("CODEMODE_MODEL", "gpt-4o"),
            max_turns=_env_int("CODEMODE_MAX_TURNS", 50),
            max_retries=_env_int("CODEMODE_MAX_RETRIES", 3),
            retry_base_delay=_env_float("CODEMODE_RETRY_BASE_DELAY", 2.0),
        )


@dataclass
class ServerConfig:
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    pool: str | None = None


def _resolve_arg(arg: str, config_dir: str) -> str:
    """Make a relative script path absolute if it exists next to the config."""
    if not arg or arg.startswith("-") or os.path.isabs(arg):
        return arg
    candidate = os.path.join(config_dir, arg)
    return candidate if os.path.exists(candidate) else arg


def parse_server_config(data: dict, config_dir: str = ".") -> dict[str, ServerConfig]:
    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ValueError("'mcpServers' must be an object")
    configs = {}
    for name, entry in servers.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("command"), str):
            raise ValueError(f"Server '{name}' needs a string 'command'")
        args = entry.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ValueError(f"Server '{name}': 'args' must be a list of strings")
        env = entry.get("env", {})
        if not isinstance(env, dict):
            raise ValueError(f"Server '{name}': 'env' must be an object")
        pool = entry.get("pool")
        if pool is not None and not isinstance(pool, str):
            raise ValueError(f"Server '{name}': 'pool' must be a string")
        configs[name] = ServerConfig(
            name=name,
            command=entry["command"],
            args=[_resolve_arg(a, config_dir) for a in args],
            env={str(k): str(v) for k, v in env.items()},
            pool=pool,
        )
    return configs


def load_server_config(path: str) -> dict[str, ServerConfig]:
    """Read an mcpServers JSON file. A missing file means no servers."""
    if not path or not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be an object")
    return parse_server_config(data, os.path.dirname(os.path.abspath(path)))
