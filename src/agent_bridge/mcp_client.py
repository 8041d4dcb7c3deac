from __future__ import annotations

import json
import logging
import queue
import time
from typing import Any

from agent_bridge.errors import BackendInvocationError, SessionNotRunningError
from agent_bridge.supervisor import ProcessRef, ProcessSupervisor, _queue_put

LOGGER = logging.getLogger("agent_bridge.mcp_client")

MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "agent-bridge", "version": "1.0.0"}
JSONRPC_METHOD_NOT_FOUND = -32601
LOG_PREVIEW_MAX_CHARS = 400


def _preview(value: Any) -> str:
    text = str(value)
    if len(text) > LOG_PREVIEW_MAX_CHARS:
        return f"{text[:LOG_PREVIEW_MAX_CHARS]}..."
    return text


def _parse_message(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _rpc_error_message(error: Any) -> str:
    if isinstance(error, dict):
        message = str(error.get("message") or "").strip()
        code = error.get("code")
        if message and code is not None:
            return f"{message} (code {code})"
        if message:
            return message
    return f"JSON-RPC error: {_preview(error)}"


class McpClient:
    """Minimal MCP client speaking newline-delimited JSON-RPC 2.0 over a
    supervised process's stdin/stdout.

    Responses are read from a listener attached to the supervisor's output
    pump, so the raw protocol traffic still lands in the capture store.
    """

    def __init__(self, supervisor: ProcessSupervisor, ref: ProcessRef):
        self.supervisor = supervisor
        self.ref = ref
        self._listener = supervisor.attach(ref)
        self._next_id = 0
        self.initialized = False
        self.server_info: dict[str, Any] = {}

    def close(self) -> None:
        # Wake any request still waiting on this listener.
        self.supervisor.detach(self.ref, self._listener)
        _queue_put(self._listener, None)

    def _write(self, payload: dict[str, Any]) -> None:
        self.supervisor.send_input(self.ref, json.dumps(payload) + "\n")

    def _reply_method_not_found(self, message: dict[str, Any]) -> None:
        method = str(message.get("method") or "")
        LOGGER.debug("Declining server request method=%s id=%s", method, message.get("id"))
        try:
            self._write(
                {
                    "jsonrpc": "2.0",
                    "id": message.get("id"),
                    "error": {"code": JSONRPC_METHOD_NOT_FOUND, "message": f"Method not supported by client: {method}"},
                }
            )
        except SessionNotRunningError:
            return

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        self._write(payload)

    def request(self, method: str, params: dict[str, Any] | None = None, timeout: float = 600.0) -> dict[str, Any]:
        self._next_id += 1
        request_id = self._next_id
        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params
        LOGGER.debug("MCP request key=%s id=%s method=%s params=%s", self.ref.conversation_key, request_id, method, _preview(params))
        self._write(payload)

        deadline = time.monotonic() + max(0.0, float(timeout))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BackendInvocationError(f"MCP request {method} timed out after {float(timeout):.1f}s.")
            try:
                line = self._listener.get(timeout=remaining)
            except queue.Empty:
                continue
            if line is None:
                raise SessionNotRunningError(f"Backend process for {self.ref.conversation_key} exited during {method}.")
            message = _parse_message(line)
            if message is None:
                continue
            if "method" in message:
                if "id" in message:
                    self._reply_method_not_found(message)
                continue
            if message.get("id") != request_id:
                continue
            if "error" in message:
                raise BackendInvocationError(_rpc_error_message(message["error"]))
            result = message.get("result")
            if isinstance(result, dict):
                return result
            return {"value": result}

    def initialize(self, timeout: float = 60.0) -> dict[str, Any]:
        result = self.request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": dict(CLIENT_INFO),
            },
            timeout=timeout,
        )
        self.notify("notifications/initialized")
        server_info = result.get("serverInfo")
        self.server_info = server_info if isinstance(server_info, dict) else {}
        self.initialized = True
        LOGGER.debug("MCP initialized key=%s server=%s", self.ref.conversation_key, self.server_info)
        return result

    def list_tools(self, timeout: float = 60.0) -> list[dict[str, Any]]:
        result = self.request("tools/list", {}, timeout=timeout)
        tools = result.get("tools")
        if not isinstance(tools, list):
            return []
        return [tool for tool in tools if isinstance(tool, dict)]

    def call_tool(self, name: str, arguments: dict[str, Any], timeout: float = 600.0) -> dict[str, Any]:
        return self.request("tools/call", {"name": name, "arguments": arguments}, timeout=timeout)
