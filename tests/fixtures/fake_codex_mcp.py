"""Stand-in for `codex mcp-server` used by the real-process tests.

Behaviour is selected through FAKE_CODEX_MODE:
  normal      replies with a conversation id (default)
  no-id       never reports a conversation id
  tool-error  every tools/call result has isError set
  rpc-error   every tools/call is answered with a JSON-RPC error
  slow        sleeps FAKE_CODEX_DELAY seconds before answering tools/call
  exit        exits without answering the first tools/call
  chatty      sends a server->client request and a notification before each answer
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid
from typing import Any

TOOL_LIST = [
    {
        "name": "codex",
        "description": "Run a Codex session.",
        "inputSchema": {"type": "object", "properties": {"prompt": {"type": "string"}}, "required": ["prompt"]},
    },
    {
        "name": "codex-reply",
        "description": "Continue a Codex session.",
        "inputSchema": {
            "type": "object",
            "properties": {"conversationId": {"type": "string"}, "prompt": {"type": "string"}},
            "required": ["conversationId", "prompt"],
        },
    },
]

MODE = os.environ.get("FAKE_CODEX_MODE", "normal")
DELAY_SECONDS = float(os.environ.get("FAKE_CODEX_DELAY", "1.0"))
CONVERSATIONS: dict[str, list[str]] = {}


def _write_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _text_result(text: str, conversation_id: str | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}], "isError": False}
    if conversation_id is not None:
        result["structuredContent"] = {"conversationId": conversation_id}
    return result


def _handle_tool_call(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    prompt = str(arguments.get("prompt") or "")
    if name == "codex":
        conversation_id = f"fake-{uuid.uuid4().hex[:8]}"
        CONVERSATIONS[conversation_id] = [prompt]
        return _text_result(f"codex: {prompt}", None if MODE == "no-id" else conversation_id)
    if name == "codex-reply":
        conversation_id = str(arguments.get("conversationId") or "")
        history = CONVERSATIONS.get(conversation_id)
        if history is None:
            return {"content": [{"type": "text", "text": f"Unknown conversation: {conversation_id}"}], "isError": True}
        history.append(prompt)
        return _text_result(f"reply #{len(history)}: {prompt}", conversation_id)
    return {"content": [{"type": "text", "text": f"Unknown tool: {name}"}], "isError": True}


def _handle_request(request: dict[str, Any]) -> None:
    method = str(request.get("method") or "")
    request_id = request.get("id")
    params = request.get("params")
    if not isinstance(params, dict):
        params = {}

    if method == "initialize":
        _write_json(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "fake-codex", "version": "0.0.1"},
                },
            }
        )
        return

    if not method or method == "notifications/initialized" or request_id is None:
        return

    if method == "tools/list":
        _write_json({"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOL_LIST}})
        return

    if method == "tools/call":
        if MODE == "exit":
            sys.exit(3)
        if MODE == "slow":
            time.sleep(DELAY_SECONDS)
        if MODE == "chatty":
            _write_json({"jsonrpc": "2.0", "method": "codex/event", "params": {"msg": "working"}})
            _write_json({"jsonrpc": "2.0", "id": "srv-1", "method": "elicitation/create", "params": {}})
        if MODE == "rpc-error":
            _write_json({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": "model overloaded"}})
            return
        name = str(params.get("name") or "")
        arguments = params.get("arguments")
        if not isinstance(arguments, dict):
            arguments = {}
        result = _handle_tool_call(name, arguments)
        if MODE == "tool-error":
            result = {"content": [{"type": "text", "text": "sandbox denied"}], "isError": True}
        _write_json({"jsonrpc": "2.0", "id": request_id, "result": result})
        return

    _write_json({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Method not found: {method}"}})


def main() -> None:
    if "mcp-server" not in sys.argv[1:]:
        sys.stderr.write("usage: fake_codex_mcp.py mcp-server\n")
        sys.exit(2)
    sys.stderr.write(f"fake codex starting argv={' '.join(sys.argv[1:])}\n")
    sys.stderr.flush()
    for raw_line in sys.stdin:
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            _handle_request(parsed)


if __name__ == "__main__":
    main()
