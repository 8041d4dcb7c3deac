from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Iterator

import click
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from agent_bridge.backends import DEFAULT_CODEX_COMMAND, AgentBackend, CodexMcpBackend
from agent_bridge.capture import OutputCaptureStore
from agent_bridge.errors import BridgeError, NotFoundError, ValidationError
from agent_bridge.registry import (
    DEFAULT_IDLE_SWEEP_INTERVAL_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    IdleSessionReaper,
    SessionRegistry,
)
from agent_bridge.streaming import (
    DEFAULT_CHUNK_DELAY_SECONDS,
    DEFAULT_CHUNK_SIZE,
    EVENT_MESSAGE,
    TurnEvent,
    iter_turn_events,
    read_captured_output,
)
from agent_bridge.supervisor import ProcessSupervisor
from agent_bridge.transcripts import TranscriptStore
from agent_bridge.turns import DEFAULT_TURN_TIMEOUT_SECONDS, TurnProtocol, TurnRequest


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8766
OUTPUT_DIR_NAME = "output"
CONVERSATIONS_DIR_NAME = "conversations"
CONFIG_SECTION = "bridge"
BRIDGE_LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
SSE_HEADERS = {"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"}
TRANSCRIPT_MODEL_NAME = "codex"
EXPORT_FORMATS = ("true", "1", "markdown")

LOGGER = logging.getLogger("agent_bridge")
LOGGER.addHandler(logging.NullHandler())


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "agent-bridge"


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in BRIDGE_LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_bridge_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _uvicorn_log_level(bridge_level: str) -> str:
    normalized = _normalize_log_level(bridge_level)
    if normalized == "debug":
        return "info"
    return normalized


@dataclass
class BridgeConfig:
    codex_command: str | list[str] = DEFAULT_CODEX_COMMAND
    turn_timeout_seconds: float = DEFAULT_TURN_TIMEOUT_SECONDS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_delay_seconds: float = DEFAULT_CHUNK_DELAY_SECONDS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    idle_sweep_interval_seconds: float = DEFAULT_IDLE_SWEEP_INTERVAL_SECONDS
    default_working_directory: str | None = None


def _config_number(name: str, value: Any, allow_zero: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise click.ClickException(f"Config value {name} must be a number.")
    if value < 0 or (value == 0 and not allow_zero):
        raise click.ClickException(f"Config value {name} must be greater than zero.")
    return float(value)


def _load_bridge_config(config_file: Path | None) -> BridgeConfig:
    if config_file is None:
        return BridgeConfig()
    try:
        with Path(config_file).open("rb") as handle:
            document = tomllib.load(handle)
    except OSError as exc:
        raise click.ClickException(f"Failed to read config file {config_file}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise click.ClickException(f"Invalid TOML in {config_file}: {exc}") from exc

    section = document.get(CONFIG_SECTION, {})
    if not isinstance(section, dict):
        raise click.ClickException(f"[{CONFIG_SECTION}] in {config_file} must be a table.")
    known = {item.name for item in fields(BridgeConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise click.ClickException(f"Unknown [{CONFIG_SECTION}] keys in {config_file}: {', '.join(unknown)}")

    config = BridgeConfig()
    if "codex_command" in section:
        command = section["codex_command"]
        if isinstance(command, str) and command.strip():
            config.codex_command = command
        elif isinstance(command, list) and command and all(isinstance(arg, str) for arg in command):
            config.codex_command = list(command)
        else:
            raise click.ClickException("Config value codex_command must be a non-empty string or array of strings.")
    for name in ("turn_timeout_seconds", "chunk_delay_seconds", "idle_timeout_seconds", "idle_sweep_interval_seconds"):
        if name in section:
            setattr(config, name, _config_number(name, section[name], allow_zero=name == "chunk_delay_seconds"))
    if "chunk_size" in section:
        chunk_size = _config_number("chunk_size", section["chunk_size"])
        if int(chunk_size) != chunk_size:
            raise click.ClickException("Config value chunk_size must be an integer.")
        config.chunk_size = int(chunk_size)
    if "default_working_directory" in section:
        directory = section["default_working_directory"]
        if not isinstance(directory, str):
            raise click.ClickException("Config value default_working_directory must be a string.")
        resolved = Path(directory).expanduser()
        if not resolved.is_dir():
            raise click.ClickException(f"default_working_directory does not exist: {directory}")
        config.default_working_directory = str(resolved)
    return config


class BridgeState:
    """Process-wide bridge state: every route reaches sessions through here."""

    def __init__(self, data_dir: Path, config: BridgeConfig | None = None, backend: AgentBackend | None = None):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config = config or BridgeConfig()
        self.backend = backend or CodexMcpBackend(self.config.codex_command)
        self.capture = OutputCaptureStore(self.data_dir / OUTPUT_DIR_NAME)
        self.transcripts = TranscriptStore(self.data_dir / CONVERSATIONS_DIR_NAME)
        self.supervisor = ProcessSupervisor(self.capture, self.backend.command)
        self.registry = SessionRegistry(self.supervisor)
        self.protocol = TurnProtocol(self.registry, self.backend, self.config.turn_timeout_seconds)
        self.reaper = IdleSessionReaper(
            self.registry,
            max_idle_seconds=self.config.idle_timeout_seconds,
            interval_seconds=self.config.idle_sweep_interval_seconds,
            busy=self.protocol.in_flight,
        )

    def startup(self) -> None:
        self.reaper.start()
        LOGGER.info(
            "Bridge started data_dir=%s backend=%s idle_timeout=%.0fs",
            self.data_dir,
            self.backend.name,
            self.config.idle_timeout_seconds,
        )

    def shutdown(self) -> dict[str, int]:
        self.reaper.stop()
        for key in self.registry.keys():
            session = self.registry.get(key)
            if session is not None:
                self.backend.release(session)
        sessions = self.registry.shutdown()
        summary = self.supervisor.shutdown()
        summary["closed_sessions"] = sessions
        return summary

    def stream_turn(self, request: TurnRequest) -> Iterator[TurnEvent]:
        if request.working_directory is None and self.config.default_working_directory:
            request.working_directory = self.config.default_working_directory
        events = iter_turn_events(
            self.protocol,
            request,
            chunk_size=self.config.chunk_size,
            chunk_delay=self.config.chunk_delay_seconds,
        )
        for event in events:
            if event.event == EVENT_MESSAGE:
                self._record_transcript(request, str(event.data.get("content") or ""))
            yield event

    def _record_transcript(self, request: TurnRequest, reply: str) -> None:
        key = request.conversation_key
        if not self.transcripts.exists(key):
            return
        try:
            self.transcripts.append(key, "user", request.message)
            self.transcripts.append(key, "assistant", reply, model=TRANSCRIPT_MODEL_NAME)
        except OSError as exc:
            LOGGER.warning("Failed to record transcript for key=%s: %s", key, exc)

    def has_session(self, conversation_key: str) -> bool:
        return self.registry.has(conversation_key)

    def process_status(self, conversation_key: str) -> dict[str, Any]:
        ref = self.supervisor.get(conversation_key)
        session = self.registry.get(conversation_key)
        return {
            "conversationId": conversation_key,
            "hasProcess": ref is not None,
            "running": self.supervisor.is_running(ref),
            "session": session.payload() if session is not None else None,
        }

    def list_processes(self) -> list[str]:
        return self.supervisor.list_active()

    def kill_process(self, conversation_key: str) -> bool:
        session = self.registry.evict(conversation_key)
        if session is None:
            return self.supervisor.kill_session(conversation_key)
        if session.process_ref is self.supervisor.get(conversation_key):
            killed = self.supervisor.kill(session.process_ref)
        else:
            killed = self.supervisor.kill_session(conversation_key)
        self.backend.release(session)
        return killed

    def recover_output(self, conversation_key: str) -> str:
        return read_captured_output(self.capture, conversation_key)

    def delete_conversation(self, conversation_id: str) -> bool:
        self.transcripts.path(conversation_id)
        self.kill_process(conversation_id)
        self.capture.delete(conversation_id)
        return self.transcripts.delete(conversation_id)

    def health_payload(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "backend": self.backend.name,
            "sessions": self.registry.count(),
            "activeProcesses": len(self.supervisor.list_active()),
            "turns": self.protocol.stats(),
        }


def _required_query(value: str | None, name: str) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise HTTPException(status_code=400, detail=f"{name} is required")
    return normalized


def _http_error(exc: BridgeError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def build_app(state: BridgeState) -> FastAPI:
    app = FastAPI()
    app.state.bridge_state = state

    @app.on_event("startup")
    async def app_startup() -> None:
        state.startup()

    @app.on_event("shutdown")
    async def app_shutdown() -> None:
        try:
            summary = state.shutdown()
            if summary["tracked_processes"] > 0:
                click.echo(
                    "Shutdown cleanup completed: "
                    f"stopped_processes={summary['stopped_processes']} "
                    f"closed_sessions={summary['closed_sessions']}"
                )
        except Exception as exc:  # pragma: no cover - shutdown guard
            click.echo(f"Shutdown cleanup failed: {exc}", err=True)

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return state.health_payload()

    @app.post("/api/ai/chat/codex-mcp")
    async def api_codex_mcp_turn(request: Request):
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        try:
            turn = TurnRequest.from_payload(payload)
        except ValidationError as exc:
            return JSONResponse({"error": exc.message}, status_code=exc.status_code)

        events = state.stream_turn(turn)

        async def event_source():
            while True:
                if await request.is_disconnected():
                    LOGGER.info("Client disconnected mid-turn key=%s; process keeps running.", turn.conversation_key)
                    events.close()
                    return
                event = await asyncio.to_thread(next, events, None)
                if event is None:
                    return
                yield event.to_sse()
                if event.terminal:
                    return

        return StreamingResponse(event_source(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/api/ai/chat/codex-mcp")
    def api_codex_mcp_session(conversationKey: str | None = None) -> dict[str, Any]:
        key = _required_query(conversationKey, "conversationKey")
        return {"hasSession": state.has_session(key)}

    @app.get("/api/ai/process")
    def api_process_status(conversationId: str | None = None) -> dict[str, Any]:
        key = str(conversationId or "").strip()
        if not key:
            return {"processes": state.list_processes()}
        return state.process_status(key)

    @app.delete("/api/ai/process")
    def api_process_kill(conversationId: str | None = None):
        key = str(conversationId or "").strip()
        if not key:
            return JSONResponse({"success": False, "error": "conversationId is required"}, status_code=400)
        killed = state.kill_process(key)
        return {"success": killed, "message": "Process killed" if killed else "No active process found"}

    @app.get("/api/ai/process/output")
    def api_process_output(conversationId: str | None = None):
        key = str(conversationId or "").strip()
        if not key:
            return JSONResponse({"success": False, "error": "conversationId is required"}, status_code=400)
        try:
            output = state.recover_output(key)
        except NotFoundError as exc:
            return JSONResponse({"success": False, "error": exc.message}, status_code=exc.status_code)
        return {"success": True, "output": output}

    @app.get("/api/ai/conversations")
    def api_conversations(id: str | None = None, export: str | None = None):
        conversation_id = str(id or "").strip()
        if not conversation_id:
            return {"conversations": state.transcripts.list()}
        try:
            if str(export or "").strip().lower() in EXPORT_FORMATS:
                return PlainTextResponse(state.transcripts.export(conversation_id), media_type="text/markdown")
            return {"id": conversation_id, "messages": state.transcripts.read(conversation_id)}
        except BridgeError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/ai/conversations")
    async def api_create_conversation(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = {}
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload.")
        name = str(payload.get("name") or "").strip()
        conversation_id = state.transcripts.create(name or None)
        return {"id": conversation_id, "name": name}

    @app.delete("/api/ai/conversations")
    def api_delete_conversation(id: str | None = None, prune: int | None = None):
        conversation_id = str(id or "").strip()
        if not conversation_id:
            return JSONResponse({"error": "Conversation ID required"}, status_code=400)
        try:
            if prune is not None:
                if prune < 0:
                    raise ValidationError("prune must not be negative")
                removed = state.transcripts.prune(conversation_id, keep_last=prune)
                return {"success": True, "action": "pruned", "keepLast": prune, "removed": removed}
            state.delete_conversation(conversation_id)
        except BridgeError as exc:
            raise _http_error(exc) from exc
        return {"success": True, "action": "deleted"}

    return app


@click.command(help="Run the agent bridge HTTP server.")
@click.option(
    "--data-dir",
    default=os.environ.get("AGENT_BRIDGE_DATA_DIR", str(_default_data_dir())),
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for captured process output and conversation transcripts.",
)
@click.option(
    "--config-file",
    default=os.environ.get("AGENT_BRIDGE_CONFIG_FILE") or None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Optional TOML file with a [bridge] table.",
)
@click.option("--host", default=os.environ.get("AGENT_BRIDGE_HOST", DEFAULT_HOST), show_default=True)
@click.option("--port", default=int(os.environ.get("AGENT_BRIDGE_PORT", DEFAULT_PORT)), show_default=True, type=int)
@click.option(
    "--log-level",
    default=os.environ.get("AGENT_BRIDGE_LOG_LEVEL", "info"),
    show_default=True,
    type=click.Choice(BRIDGE_LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Bridge logging verbosity (applies to bridge logs and Uvicorn).",
)
@click.option("--reload", is_flag=True, default=False)
def main(
    data_dir: Path,
    config_file: Path | None,
    host: str,
    port: int,
    log_level: str,
    reload: bool,
) -> None:
    normalized_log_level = _normalize_log_level(log_level)
    _configure_bridge_logging(normalized_log_level)
    LOGGER.info("Starting agent bridge host=%s port=%s log_level=%s reload=%s", host, port, normalized_log_level, reload)

    config = _load_bridge_config(config_file)
    try:
        state = BridgeState(data_dir=data_dir, config=config)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    app = build_app(state)

    uvicorn.run(app, host=host, port=port, reload=reload, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
