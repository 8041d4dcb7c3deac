from __future__ import annotations

import json
import logging
import re
import secrets
import time
from pathlib import Path
from threading import Lock
from typing import Any

from agent_bridge.errors import ValidationError

LOGGER = logging.getLogger("agent_bridge.transcripts")

TRANSCRIPT_SUFFIX = ".jsonl"
MESSAGE_ROLES = ("user", "assistant", "system")
MODEL_NAMES = {
    "claude": "Claude",
    "gemini": "Gemini",
    "codex": "Codex",
    "docker": "Local Model",
}
DEFAULT_PRUNE_KEEP_LAST = 100
_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix() -> str:
    return secrets.token_hex(3)


def new_message_id() -> str:
    return f"msg_{_now_ms()}_{_random_suffix()}"


class TranscriptStore:
    """Append-only JSONL conversation transcripts, one file per conversation."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def path(self, conversation_id: str) -> Path:
        normalized = str(conversation_id or "").strip()
        if not _CONVERSATION_ID_RE.match(normalized) or normalized in {".", ".."}:
            raise ValidationError(f"Invalid conversation id: {conversation_id!r}")
        return self.root / f"{normalized}{TRANSCRIPT_SUFFIX}"

    def exists(self, conversation_id: str) -> bool:
        try:
            return self.path(conversation_id).is_file()
        except ValidationError:
            return False

    def create(self, name: str | None = None) -> str:
        conversation_id = f"conv_{_now_ms()}_{_random_suffix()}"
        label = str(name or "").strip()
        header = {
            "id": "msg_init",
            "ts": _now_ms(),
            "role": "system",
            "content": f"Conversation started: {label}" if label else "Conversation started",
            "metadata": {},
        }
        with self._lock:
            self.path(conversation_id).write_text(json.dumps(header) + "\n", encoding="utf-8")
        LOGGER.debug("Created transcript id=%s", conversation_id)
        return conversation_id

    def append(self, conversation_id: str, role: str, content: str, **extra: Any) -> dict[str, Any]:
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"role must be one of: {', '.join(MESSAGE_ROLES)}")
        message: dict[str, Any] = {"id": new_message_id(), "ts": _now_ms(), "role": role, "content": str(content)}
        message.update({key: value for key, value in extra.items() if value is not None})
        path = self.path(conversation_id)
        with self._lock:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(message) + "\n")
        return message

    def read(self, conversation_id: str) -> list[dict[str, Any]]:
        path = self.path(conversation_id)
        if not path.is_file():
            return []
        messages: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.warning("Skipping malformed transcript line in %s", path.name)
                continue
            if isinstance(parsed, dict):
                messages.append(parsed)
        return messages

    def list(self) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for path in self.root.glob(f"*{TRANSCRIPT_SUFFIX}"):
            conversation_id = path.name[: -len(TRANSCRIPT_SUFFIX)]
            messages = self.read(conversation_id)
            updated_at = messages[-1].get("ts", 0) if messages else 0
            summaries.append({"id": conversation_id, "messageCount": len(messages), "updatedAt": updated_at})
        return sorted(summaries, key=lambda item: item["updatedAt"], reverse=True)

    def export(self, conversation_id: str) -> str:
        blocks: list[str] = []
        for message in self.read(conversation_id):
            role = message.get("role")
            if role == "system":
                continue
            if role == "user":
                blocks.append(f"**User**: {message.get('content', '')}")
                continue
            name = MODEL_NAMES.get(str(message.get("model") or ""), "Assistant")
            blocks.append(f"**{name}**: {message.get('content', '')}")
        return "\n\n---\n\n".join(blocks)

    def prune(self, conversation_id: str, keep_last: int = DEFAULT_PRUNE_KEEP_LAST) -> int:
        keep = max(0, int(keep_last))
        messages = self.read(conversation_id)
        if len(messages) <= keep:
            return 0
        kept = messages[-keep:] if keep else []
        path = self.path(conversation_id)
        with self._lock:
            path.write_text("".join(json.dumps(message) + "\n" for message in kept), encoding="utf-8")
        return len(messages) - len(kept)

    def delete(self, conversation_id: str) -> bool:
        path = self.path(conversation_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        LOGGER.debug("Deleted transcript id=%s", conversation_id)
        return True
