from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from agent_bridge.backends import AgentBackend, TurnOutcome
from agent_bridge.registry import Session
from agent_bridge.supervisor import ProcessSupervisor

FAKE_CODEX_SERVER = ROOT / "tests" / "fixtures" / "fake_codex_mcp.py"

# Reads stdin until EOF and echoes every line back.
ECHO_SCRIPT = "import sys\nfor line in sys.stdin:\n    sys.stdout.write('echo: ' + line)\n    sys.stdout.flush()\n"


def echo_command(_settings: dict[str, Any] | None = None) -> list[str]:
    return [sys.executable, "-u", "-c", ECHO_SCRIPT]


def fake_codex_command() -> list[str]:
    return [sys.executable, "-u", str(FAKE_CODEX_SERVER)]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RecordingBackend(AgentBackend):
    """Backend double that runs a plain echo process and scripts its outcomes.

    `first_results` / `reply_results` are consumed in order; each entry is a
    TurnOutcome to return or an exception instance to raise.
    """

    def __init__(self, first_id_prefix: str = "backend-conv", delay: float = 0.0):
        self.calls: list[tuple[str, str, str]] = []
        self.first_results: list[Any] = []
        self.reply_results: list[Any] = []
        self.released: list[str] = []
        self.first_id_prefix = first_id_prefix
        self.delay = delay
        self.timeline: list[str] = []
        self._lock = threading.Lock()
        self._issued = 0

    @property
    def name(self) -> str:
        return "recording"

    def command(self, settings: dict[str, Any]) -> list[str]:
        return echo_command(settings)

    def _next(self, scripted: list[Any], default: TurnOutcome) -> TurnOutcome:
        if scripted:
            result = scripted.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return default

    def _record(self, kind: str, session: Session, message: str) -> None:
        with self._lock:
            self.calls.append((kind, session.conversation_key, message))
            self.timeline.append(f"start:{message}")
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.timeline.append(f"end:{message}")

    def invoke_first_turn(
        self,
        session: Session,
        supervisor: ProcessSupervisor,
        message: str,
        timeout: float,
    ) -> TurnOutcome:
        self._record("first", session, message)
        with self._lock:
            self._issued += 1
            default = TurnOutcome(text=f"first: {message}", backend_conversation_id=f"{self.first_id_prefix}-{self._issued}")
        return self._next(self.first_results, default)

    def invoke_continuation_turn(
        self,
        session: Session,
        supervisor: ProcessSupervisor,
        message: str,
        timeout: float,
    ) -> TurnOutcome:
        self._record("reply", session, message)
        default = TurnOutcome(text=f"reply: {message}", backend_conversation_id=session.backend_conversation_id)
        return self._next(self.reply_results, default)

    def release(self, session: Session) -> None:
        self.released.append(session.conversation_key)
