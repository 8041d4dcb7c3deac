from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import BinaryIO

LOGGER = logging.getLogger("agent_bridge.capture")

OUTPUT_SUFFIX = ".out"
SESSION_NAME_PREFIX_MAX_CHARS = 40
SESSION_NAME_HASH_CHARS = 12
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def session_name(conversation_key: str) -> str:
    """Deterministic, filesystem-safe identifier for a conversation key.

    The readable prefix is only a hint; uniqueness comes from the digest so two
    keys that sanitize to the same prefix still map to different sessions.
    """
    key = str(conversation_key)
    prefix = _UNSAFE_NAME_CHARS_RE.sub("-", key).strip("-.")[:SESSION_NAME_PREFIX_MAX_CHARS] or "session"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:SESSION_NAME_HASH_CHARS]
    return f"{prefix}-{digest}"


class OutputCaptureStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, conversation_key: str) -> Path:
        return self.root / f"{session_name(conversation_key)}{OUTPUT_SUFFIX}"

    def exists(self, conversation_key: str) -> bool:
        return self.path(conversation_key).is_file()

    def open_writer(self, conversation_key: str) -> BinaryIO:
        path = self.path(conversation_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.open("ab")

    def append(self, conversation_key: str, text: str) -> None:
        with self.open_writer(conversation_key) as handle:
            handle.write(text.encode("utf-8", errors="replace"))
            handle.flush()

    def read(self, conversation_key: str) -> str | None:
        path = self.path(conversation_key)
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None

    def delete(self, conversation_key: str) -> bool:
        path = self.path(conversation_key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        LOGGER.debug("Deleted captured output key=%s path=%s", conversation_key, path)
        return True
