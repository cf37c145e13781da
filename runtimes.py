"""Runtime table, source staging and pre-spawn validation for executions."""

import os
import re
import shlex
import sys
import tempfile
import uuid
from dataclasses import dataclass, field

from protocol import ExecutionValidationError

ALLOWED_PARAMS = {"code", "runtime", "timeout"}
TEMP_PREFIX = "codemode-"

# Destructive fragments refused outright; matched against the raw source.
DISALLOWED_PATTERNS = [
    (re.compile(r"\bpkill\b"), "pkill command is not allowed"),
    (re.compile(r"\bkillall\b"), "killall command is not allowed"),
    (re.compile(r"\brm\s+-[a-zA-Z]*[rR][a-zA-Z]*\s+(--no-preserve-root\s+)?(/|~)(\*|\s|;|&|\||$)"),
     "recursive delete of / or ~ is not allowed"),
    (re.compile(r"\bmkfs(\.\w+)?\b"), "mkfs is not allowed"),
    (re.compile(r"\bdd\b[^\n]*\bof=/dev/(sd|hd|nvme|disk)"), "raw writes to block devices are not allowed"),
    (re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "fork bombs are not allowed"),
]

_ESM_HINTS = (
    re.compile(r"^import\s+", re.MULTILINE),
    re.compile(r"\bawait\s+"),
    re.compile(r"\bimport\s*\("),
    re.compile(r"^export\s+", re.MULTILINE),
)


def _detect_project_python(working_dir: str | None = None) -> str:
    """Detect the project's Python interpreter (venv, VIRTUAL_ENV, etc.)."""
    def _find_python_in_venv(venv_path: str) -> str | None:
        # Unix: bin/python3
        unix_candidate = os.path.join(venv_path, "bin", "python3")
        if os.path.isfile(unix_candidate):
            return unix_candidate
        # Windows: Scripts/python.exe
        windows_candidate = os.path.join(venv_path, "Scripts", "python.exe")
        if os.path.isfile(windows_candidate):
            return windows_candidate
        return None

    # 1. Explicit env var
    if os.environ.get("CODEMODE_PYTHON"):
        return os.environ["CODEMODE_PYTHON"]
    # 2. VIRTUAL_ENV env var (standard for activated venvs)
    venv = os.environ.get("VIRTUAL_ENV")
    if venv:
        candidate = _find_python_in_venv(venv)
        if candidate:
            return candidate
    # 3. .venv in the execution's working directory
    candidate = _find_python_in_venv(os.path.join(working_dir or os.getcwd(), ".venv"))
    if candidate:
        return candidate
    # 4. whatever is running us
    return sys.executable or "python3"


def _compiled(compiler: str, source: str, binary: str) -> list[str]:
    script = f"{compiler} {shlex.quote(source)} -o {shlex.quote(binary)} && {shlex.quote(binary)}"
    return ["bash", "-c", script]


@dataclass(frozen=True)
class Runtime:
    name: str
    extension: str
    compiled: bool = False

    def extension_for(self, code: str) -> str:
        if self.name == "nodejs":
            return ".mjs" if any(p.search(code) for p in _ESM_HINTS) else ".cjs"
        return self.extension

    def command(self, path: str, working_dir: str | None = None) -> list[str]:
        binary = binary_path(path)
        if self.name == "python":
            return [_detect_project_python(working_dir), path]
        if self.name == "bash":
            return ["bash", path]
        if self.name == "nodejs":
            return ["node", "--no-deprecation", path]
        if self.name == "deno":
            return ["deno", "run", "--allow-all", path]
        if self.name == "bun":
            return ["bun", "run", path]
        if self.name == "go":
            return ["go", "run", path]
        if self.name == "rust":
            return _compiled("rustc", path, binary)
        if self.name == "c":
            return _compiled("gcc", path, binary)
        if self.name == "cpp":
            return _compiled("g++", path, binary)
        raise ExecutionValidationError(f"Invalid runtime: {self.name}")


RUNTIMES = {
    r.name: r for r in (
        Runtime("nodejs", ".cjs"),
        Runtime("deno", ".ts"),
        Runtime("bun", ".js"),
        Runtime("python", ".py"),
        Runtime("bash", ".sh"),
        Runtime("go", ".go"),
        Runtime("rust", ".rs", compiled=True),
        Runtime("c", ".c", compiled=True),
        Runtime("cpp", ".cpp", compiled=True),
    )
}


def binary_path(source_path: str) -> str:
    return os.path.splitext(source_path)[0] + ".bin"


@dataclass
class StagedSource:
    path: str
    artifacts: list[str] = field(default_factory=list)

    def remove(self) -> None:
        for p in [self.path, *self.artifacts]:
            try:
                os.unlink(p)
            except FileNotFoundError:
                pass


def stage_source(code: str, runtime: Runtime, directory: str | None = None) -> StagedSource:
    """Write source to a uniquely named temp file."""
    directory = directory or tempfile.gettempdir()
    path = os.path.join(directory, f"{TEMP_PREFIX}{uuid.uuid4().hex}{runtime.extension_for(code)}")
    with open(path, "w", encoding="utf-8") as f:
        f.write(code)
    artifacts = [binary_path(path)] if runtime.compiled else []
    return StagedSource(path, artifacts)


def validate_request(params: dict) -> tuple[str, Runtime, float | None]:
    """Check an execute request; returns (code, runtime, timeout_ms)."""
    unknown = set(params) - ALLOWED_PARAMS
    if unknown:
        raise ExecutionValidationError(
            f"Unknown parameter(s): {', '.join(sorted(unknown))}. "
            f"Allowed: {', '.join(sorted(ALLOWED_PARAMS))}"
        )
    code = params.get("code")
    if not isinstance(code, str) or not code.strip():
        raise ExecutionValidationError("'code' must be a non-empty string")
    name = params.get("runtime")
    if not name:
        raise ExecutionValidationError(f"'runtime' is required. Supported: {', '.join(RUNTIMES)}")
    runtime = RUNTIMES.get(name)
    if runtime is None:
        raise ExecutionValidationError(f"Invalid runtime: {name}. Supported: {', '.join(RUNTIMES)}")
    timeout = params.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ExecutionValidationError("'timeout' must be a positive number of milliseconds")
    for pattern, reason in DISALLOWED_PATTERNS:
        if pattern.search(code):
            raise ExecutionValidationError(f"Execution rejected: {reason}")
    return code, runtime, timeout
