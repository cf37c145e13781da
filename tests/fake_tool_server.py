#!/usr/bin/env python3
"""Scriptable line-delimited JSON-RPC tool server used by the tests.

Tools:
  echo {text}            -> text content "<text>"
  slow {text, seconds}   -> echo after sleeping (calls run in threads, so
                            responses may arrive out of order)
  fail {}                -> JSON-RPC error -32000
  crash {}               -> process exits with code 3 without answering
  whoami {}              -> the --name given on the command line

Flags:
  --garbage       write an unparseable line before every response
  --fail-init     exit on initialize instead of answering
  --no-tools-key  answer tools/list without a 'tools' key
  --name NAME     server name reported by whoami
"""

import json
import os
import sys
import threading
import time

_write_lock = threading.Lock()


def send(obj, garbage=False):
    with _write_lock:
        if garbage:
            sys.stdout.write("this is {not json\n")
        sys.stdout.write(json.dumps(obj) + "\n")
        sys.stdout.flush()


TOOLS = [
    {"name": "echo", "description": "Echo text back",
     "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}}},
    {"name": "slow", "description": "Echo after a delay",
     "inputSchema": {"type": "object", "properties": {"text": {"type": "string"},
                                                      "seconds": {"type": "number"}}}},
    {"name": "fail", "description": "Always fails", "inputSchema": {"type": "object"}},
    {"name": "crash", "description": "Exits the server", "inputSchema": {"type": "object"}},
    {"name": "whoami", "description": "Server name", "inputSchema": {"type": "object"}},
]


def text_result(text):
    return {"content": [{"type": "text", "text": text}]}


def main(argv):
    garbage = "--garbage" in argv
    name = argv[argv.index("--name") + 1] if "--name" in argv else "fake"

    def handle_call(msg):
        params = msg.get("params", {})
        tool = params.get("name")
        args = params.get("arguments", {})
        rid = msg["id"]
        if tool == "echo":
            send({"jsonrpc": "2.0", "id": rid, "result": text_result(str(args.get("text", "")))}, garbage)
        elif tool == "slow":
            time.sleep(float(args.get("seconds", 0.5)))
            send({"jsonrpc": "2.0", "id": rid, "result": text_result(str(args.get("text", "")))}, garbage)
        elif tool == "fail":
            send({"jsonrpc": "2.0", "id": rid, "error": {"code": -32000, "message": "tool failed"}}, garbage)
        elif tool == "whoami":
            send({"jsonrpc": "2.0", "id": rid, "result": text_result(name)}, garbage)
        elif tool == "crash":
            sys.stdout.flush()
            os._exit(3)
        else:
            send({"jsonrpc": "2.0", "id": rid, "error": {"code": -32601, "message": f"unknown tool {tool}"}}, garbage)

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        method = msg.get("method")
        if "id" not in msg:
            continue
        if method == "initialize":
            if "--fail-init" in argv:
                sys.stderr.write("refusing to initialize\n")
                sys.stderr.flush()
                return 1
            send({"jsonrpc": "2.0", "id": msg["id"], "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": name, "version": "0.0.1"},
            }}, garbage)
        elif method == "tools/list":
            result = {} if "--no-tools-key" in argv else {"tools": TOOLS}
            send({"jsonrpc": "2.0", "id": msg["id"], "result": result}, garbage)
        elif method == "tools/call":
            threading.Thread(target=handle_call, args=(msg,), daemon=True).start()
        else:
            send({"jsonrpc": "2.0", "id": msg["id"],
                  "error": {"code": -32601, "message": f"unknown method {method}"}}, garbage)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
