from __future__ import annotations

import abc
import logging
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from agent_bridge.errors import BackendInvocationError, SpawnError
from agent_bridge.mcp_client import McpClient
from agent_bridge.registry import Session
from agent_bridge.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("agent_bridge.backends")

DEFAULT_CODEX_COMMAND = "codex"
CODEX_TOOL = "codex"
CODEX_REPLY_TOOL = "codex-reply"
HANDSHAKE_TIMEOUT_SECONDS = 60.0


@dataclass
class TurnOutcome:
    text: str
    backend_conversation_id: str | None = None
    raw: Any = None


class AgentBackend(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Identifier reported in logs and health payloads."""

    @abc.abstractmethod
    def command(self, settings: dict[str, Any]) -> list[str]:
        """Returns the argv that starts one long-lived backend process."""

    @abc.abstractmethod
    def invoke_first_turn(
        self,
        session: Session,
        supervisor: ProcessSupervisor,
        message: str,
        timeout: float,
    ) -> TurnOutcome:
        """Starts a conversation on the backend."""

    @abc.abstractmethod
    def invoke_continuation_turn(
        self,
        session: Session,
        supervisor: ProcessSupervisor,
        message: str,
        timeout: float,
    ) -> TurnOutcome:
        """Continues the conversation identified by the session's backend id."""

    def release(self, session: Session) -> None:
        """Drops any per-session state held by the backend."""


def extract_text(result: Any) -> str:
    if not isinstance(result, dict):
        return ""
    blocks = result.get("content")
    if blocks is None and isinstance(result.get("result"), dict):
        blocks = result["result"].get("content")
    if not isinstance(blocks, list):
        return ""
    texts = [
        block["text"]
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "".join(texts)


def extract_conversation_id(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    containers = [result]
    for nested_key in ("result", "structuredContent", "structured_content"):
        nested = result.get(nested_key)
        if isinstance(nested, dict):
            containers.append(nested)
    for container in containers:
        for id_key in ("conversationId", "conversation_id"):
            value = container.get(id_key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def discover_codex_tools(tools: Iterable[dict[str, Any]]) -> dict[str, str]:
    names = [str(tool.get("name") or "") for tool in tools if str(tool.get("name") or "")]
    lowered = [(name, name.lower()) for name in names]

    codex = next((name for name in names if name == CODEX_TOOL), None)
    if codex is None:
        codex = next((name for name, low in lowered if "codex" in low and "reply" not in low), None)
    codex_reply = next((name for name in names if name == CODEX_REPLY_TOOL), None)
    if codex_reply is None:
        codex_reply = next((name for name, low in lowered if "reply" in low), None)

    if not codex or not codex_reply:
        raise BackendInvocationError(f"Could not find codex tools. tools/list returned: {', '.join(names)}")
    return {"codex": codex, "codex_reply": codex_reply}


def _settings_model(settings: dict[str, Any]) -> str:
    for key in ("codexModel", "model"):
        value = str(settings.get(key) or "").strip()
        if value:
            return value
    return ""


def _settings_extra_args(settings: dict[str, Any]) -> list[str]:
    raw = settings.get("extraArgs")
    if raw is None:
        return []
    if isinstance(raw, str):
        return shlex.split(raw)
    if isinstance(raw, list):
        return [str(arg) for arg in raw if str(arg).strip()]
    raise SpawnError("settings.extraArgs must be a string or an array.")


class CodexMcpBackend(AgentBackend):
    """Drives `codex mcp-server`, one server process per conversation.

    The server keeps conversation state in memory, so even when it never
    reports a conversation id the same process still carries the context.
    """

    def __init__(self, command: str | list[str] | None = None):
        if command is None:
            command = DEFAULT_CODEX_COMMAND
        self.base_command = shlex.split(command) if isinstance(command, str) else [str(arg) for arg in command]
        if not self.base_command:
            raise ValueError("Codex command must not be empty.")

    @property
    def name(self) -> str:
        return "codex-mcp"

    def _resolve_executable(self) -> str:
        executable = self.base_command[0]
        candidate = Path(executable).expanduser()
        if candidate.is_absolute() or "/" in executable:
            if candidate.is_file():
                return str(candidate)
            raise SpawnError(f"Codex CLI not found at {executable}.")
        resolved = shutil.which(executable)
        if resolved:
            return resolved
        raise SpawnError(f"Codex CLI is not installed ({executable} was not found in PATH).")

    def command(self, settings: dict[str, Any]) -> list[str]:
        args = [self._resolve_executable(), *self.base_command[1:], "mcp-server"]
        model = _settings_model(settings)
        if model and model != "default":
            args.extend(["-m", model])
        args.extend(_settings_extra_args(settings))
        return args

    def _client(self, session: Session, supervisor: ProcessSupervisor, timeout: float) -> tuple[McpClient, dict[str, str]]:
        state = session.backend_state
        client = state.get("mcp_client")
        if not isinstance(client, McpClient) or client.ref is not session.process_ref:
            if isinstance(client, McpClient):
                client.close()
            client = McpClient(supervisor, session.process_ref)
            state["mcp_client"] = client
            state.pop("tools", None)
        handshake_timeout = min(float(timeout), HANDSHAKE_TIMEOUT_SECONDS)
        if not client.initialized:
            client.initialize(timeout=handshake_timeout)
        tools = state.get("tools")
        if not isinstance(tools, dict):
            tools = discover_codex_tools(client.list_tools(timeout=handshake_timeout))
            state["tools"] = tools
            LOGGER.debug("Discovered codex tools key=%s tools=%s", session.conversation_key, tools)
        return client, tools

    @staticmethod
    def _outcome(result: dict[str, Any]) -> TurnOutcome:
        text = extract_text(result)
        if result.get("isError"):
            raise BackendInvocationError(text or "Codex tool call failed.")
        return TurnOutcome(text=text, backend_conversation_id=extract_conversation_id(result), raw=result)

    def invoke_first_turn(
        self,
        session: Session,
        supervisor: ProcessSupervisor,
        message: str,
        timeout: float,
    ) -> TurnOutcome:
        client, tools = self._client(session, supervisor, timeout)
        result = client.call_tool(tools["codex"], {"prompt": message}, timeout=timeout)
        return self._outcome(result)

    def invoke_continuation_turn(
        self,
        session: Session,
        supervisor: ProcessSupervisor,
        message: str,
        timeout: float,
    ) -> TurnOutcome:
        client, tools = self._client(session, supervisor, timeout)
        if session.backend_conversation_id:
            arguments = {"conversationId": session.backend_conversation_id, "prompt": message}
            result = client.call_tool(tools["codex_reply"], arguments, timeout=timeout)
        else:
            result = client.call_tool(tools["codex"], {"prompt": message}, timeout=timeout)
        return self._outcome(result)

    def release(self, session: Session) -> None:
        client = session.backend_state.pop("mcp_client", None)
        session.backend_state.pop("tools", None)
        if isinstance(client, McpClient):
            client.close()
