"""In-process file tools exposed as the virtual 'builtInTools' server."""

import fnmatch
import glob as globlib
import json
import os
import re
from dataclasses import dataclass
from typing import Callable

from protocol import ToolDescriptor

BUILTIN_SERVER = "builtInTools"
MAX_READ_LINES = 2000
MAX_GREP_MATCHES = 500
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", ".mypy_cache"}


@dataclass(frozen=True)
class BuiltinTool:
    descriptor: ToolDescriptor
    handler: Callable[[dict, str], str]


def _resolve(path: str | None, working_dir: str) -> str:
    if not path:
        return working_dir
    path = os.path.expanduser(path)
    return path if os.path.isabs(path) else os.path.join(working_dir, path)


def _require(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' is required")
    return value


def read_file(args: dict, working_dir: str) -> str:
    path = _resolve(_require(args, "file_path"), working_dir)
    offset = int(args.get("offset") or 1)
    limit = int(args.get("limit") or MAX_READ_LINES)
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        lines = f.readlines()
    chunk = lines[offset - 1:offset - 1 + limit]
    return "".join(f"{offset + i:6}\t{line}" for i, line in enumerate(chunk))


def write_file(args: dict, working_dir: str) -> str:
    path = _resolve(_require(args, "file_path"), working_dir)
    content = args.get("content")
    if not isinstance(content, str):
        raise ValueError("'content' must be a string")
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return f"Wrote {len(content)} chars to {path}"


def edit_file(args: dict, working_dir: str) -> str:
    path = _resolve(_require(args, "file_path"), working_dir)
    old = _require(args, "old_string")
    new = args.get("new_string", "")
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    count = text.count(old)
    if count == 0:
        raise ValueError(f"old_string not found in {path}")
    if count > 1 and not args.get("replace_all"):
        raise ValueError(f"old_string occurs {count} times in {path}; pass replace_all or add context")
    text = text.replace(old, new) if args.get("replace_all") else text.replace(old, new, 1)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return f"Replaced {count if args.get('replace_all') else 1} occurrence(s) in {path}"


def list_dir(args: dict, working_dir: str) -> str:
    root = _resolve(args.get("path"), working_dir)
    show_hidden = bool(args.get("show_hidden"))
    entries = []
    if args.get("recursive"):
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames
                                 if d not in SKIP_DIRS and (show_hidden or not d.startswith(".")))
            for name in sorted(filenames):
                if show_hidden or not name.startswith("."):
                    entries.append(os.path.relpath(os.path.join(dirpath, name), root))
    else:
        for name in sorted(os.listdir(root)):
            if not show_hidden and name.startswith("."):
                continue
            full = os.path.join(root, name)
            entries.append(name + "/" if os.path.isdir(full) else name)
    if args.get("as_array"):
        return json.dumps(entries)
    return "\n".join(entries)


def glob_files(args: dict, working_dir: str) -> str:
    pattern = _require(args, "pattern")
    root = _resolve(args.get("path"), working_dir)
    matches = globlib.glob(os.path.join(root, pattern), recursive=True)
    matches = sorted(
        (m for m in matches if not any(part in SKIP_DIRS for part in m.split(os.sep))),
        key=lambda m: os.path.getmtime(m) if os.path.exists(m) else 0,
        reverse=True,
    )
    if args.get("as_array"):
        return json.dumps(matches)
    return "\n".join(matches)


def grep_files(args: dict, working_dir: str) -> str:
    regex = re.compile(_require(args, "pattern"))
    root = _resolve(args.get("path"), working_dir)
    options = args.get("options") or {}
    include = options.get("glob")
    if os.path.isfile(root):
        candidates = [root]
    else:
        candidates = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
            for name in filenames:
                if include and not fnmatch.fnmatch(name, include):
                    continue
                candidates.append(os.path.join(dirpath, name))
    results = []
    for path in sorted(candidates):
        try:
            with open(path, "r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    if regex.search(line):
                        results.append(f"{path}:{lineno}:{line.rstrip()}")
                        if len(results) >= MAX_GREP_MATCHES:
                            return "\n".join(results)
        except (UnicodeDecodeError, OSError):
            continue
    return "\n".join(results)


def _tool(name: str, description: str, properties: dict, required: list[str],
          handler: Callable[[dict, str], str]) -> BuiltinTool:
    schema = {"type": "object", "properties": properties, "required": required}
    return BuiltinTool(ToolDescriptor(name, description, schema), handler)


BUILTIN_TOOLS = {
    t.descriptor.name: t for t in (
        _tool("Read", "Read a file with line numbers", {
            "file_path": {"type": "string"},
            "offset": {"type": "number"},
            "limit": {"type": "number"},
        }, ["file_path"], read_file),
        _tool("Write", "Write a file, creating parent directories", {
            "file_path": {"type": "string"},
            "content": {"type": "string"},
        }, ["file_path", "content"], write_file),
        _tool("Edit", "Perform exact string replacements in files", {
            "file_path": {"type": "string"},
            "old_string": {"type": "string"},
            "new_string": {"type": "string"},
            "replace_all": {"type": "boolean"},
        }, ["file_path", "old_string", "new_string"], edit_file),
        _tool("LS", "List directory contents", {
            "path": {"type": "string"},
            "show_hidden": {"type": "boolean"},
            "recursive": {"type": "boolean"},
            "as_array": {"type": "boolean"},
        }, [], list_dir),
        _tool("Glob", "Fast file pattern matching", {
            "pattern": {"type": "string"},
            "path": {"type": "string"},
            "as_array": {"type": "boolean"},
        }, ["pattern"], glob_files),
        _tool("Grep", "Regular expression search over file contents", {
            "pattern": {"type": "string"},
            "path": {"type": "string"},
            "options": {"type": "object"},
        }, ["pattern"], grep_files),
    )
}
