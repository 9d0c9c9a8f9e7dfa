#!/usr/bin/env python3
"""
Minimal stdio tool server used by the tests.

Reads one JSON-RPC request per line on stdin and answers on stdout.
Behaviour is selected with FAKE_SERVER_MODE:

  normal       - answers everything
  noisy        - like normal, but prints banners, notifications and stderr chatter
  silent       - reads requests and never answers
  reject_init  - answers initialize with a JSON-RPC error

Tools: echo (returns its text), fail (JSON-RPC error), slow (never
answers), crash (exits with code 3 without answering). The unlisted tool
big writes one long non-JSON line before answering normally.
"""

import json
import os
import sys

MODE = os.environ.get("FAKE_SERVER_MODE", "normal")

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the text back",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
    },
    {"name": "fail", "description": "Always fails", "inputSchema": {"type": "object"}},
    {"name": "slow", "description": "Never answers", "inputSchema": {"type": "object"}},
    {"name": "crash", "description": "Exits the server", "inputSchema": {"type": "object"}},
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def chatter(text):
    if MODE == "noisy":
        sys.stdout.write(text + "\n")
        sys.stdout.flush()
        sys.stderr.write(f"debug: {text}\n")
        sys.stderr.flush()


def handle(request):
    method = request.get("method")
    request_id = request.get("id")
    params = request.get("params") or {}

    if MODE == "noisy":
        send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})

    if method == "initialize":
        if MODE == "reject_init":
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32600, "message": "Unsupported client"}})
            return
        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {
                "protocolVersion": params.get("protocolVersion"),
                "serverInfo": {"name": "fake-tool-server", "version": "0.0.1"},
                "capabilities": {"tools": {}},
            },
        })
    elif method == "tools/list":
        send({"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOLS}})
    elif method == "tools/call":
        tool = params.get("name")
        arguments = params.get("arguments") or {}
        if tool == "echo":
            text = arguments.get("text", "")
            send({"jsonrpc": "2.0", "id": request_id, "result": {"content": [{"type": "text", "text": text}]}})
        elif tool == "fail":
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": "Tool failed"}})
        elif tool == "big":
            # One unframeable line, then a normal answer
            sys.stdout.write("x" * int(arguments.get("size", 4096)) + "\n")
            send({"jsonrpc": "2.0", "id": request_id, "result": {"content": [{"type": "text", "text": "after"}]}})
        elif tool == "slow":
            return
        elif tool == "crash":
            sys.exit(3)
        else:
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Unknown tool {tool}"}})
    else:
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Unknown method {method}"}})


def main():
    chatter("fake-tool-server starting")
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        if MODE == "silent":
            continue
        handle(request)


if __name__ == "__main__":
    main()
