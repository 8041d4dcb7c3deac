from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from agent_bridge.backends import AgentBackend, TurnOutcome
from agent_bridge.errors import BackendInvocationError, BridgeError, SessionNotRunningError, ValidationError
from agent_bridge.locks import KeyedLocks
from agent_bridge.registry import SessionRegistry

LOGGER = logging.getLogger("agent_bridge.turns")

TURN_KIND_FIRST = "first_turn"
TURN_KIND_FALLBACK = "fallback_turn"
TURN_KIND_REPLY = "reply"
TURN_KINDS = (TURN_KIND_FIRST, TURN_KIND_FALLBACK, TURN_KIND_REPLY)
DEFAULT_TURN_TIMEOUT_SECONDS = 600.0

StatusCallback = Callable[[dict[str, Any]], None]
CommitCallback = Callable[[], bool]


def _coerce_bool(value: Any, default: bool, field_name: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off", ""}:
            return False
    if isinstance(value, (int, float)) and value in {0, 1}:
        return bool(value)
    raise ValidationError(f"{field_name} must be a boolean.")


@dataclass
class TurnRequest:
    conversation_key: str
    message: str
    settings: dict[str, Any] = field(default_factory=dict)
    working_directory: str | None = None
    is_first_message: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> TurnRequest:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload.")
        conversation_key = str(payload.get("conversationKey") or "").strip()
        raw_message = payload.get("message")
        message = raw_message if isinstance(raw_message, str) else str(raw_message or "")
        if not conversation_key or not message.strip():
            raise ValidationError("conversationKey and message are required")

        settings = payload.get("settings")
        if settings is None:
            settings = {}
        if not isinstance(settings, dict):
            raise ValidationError("settings must be an object.")

        working_directory = str(payload.get("cwd") or payload.get("workingDirectory") or "").strip() or None
        return cls(
            conversation_key=conversation_key,
            message=message,
            settings=dict(settings),
            working_directory=working_directory,
            is_first_message=_coerce_bool(payload.get("isFirstMessage"), default=False, field_name="isFirstMessage"),
        )


def classify(session_exists: bool, backend_conversation_id: str | None, is_first_message: bool = False) -> str:
    """Decide which backend call an inbound message gets.

    Only a recorded backend conversation id makes a session eligible for a
    continuation; an existing session without one is re-initiated.
    """
    if not session_exists or is_first_message:
        return TURN_KIND_FIRST
    if not backend_conversation_id:
        return TURN_KIND_FALLBACK
    return TURN_KIND_REPLY


class TurnProtocol:
    def __init__(
        self,
        registry: SessionRegistry,
        backend: AgentBackend,
        turn_timeout_seconds: float = DEFAULT_TURN_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.backend = backend
        self.turn_timeout_seconds = float(turn_timeout_seconds)
        self._turn_locks = KeyedLocks()
        self._stats_lock = Lock()
        self._counts = {kind: 0 for kind in TURN_KINDS}
        self._failures = 0

    def _record(self, kind: str | None = None, failed: bool = False) -> None:
        with self._stats_lock:
            if kind is not None:
                self._counts[kind] += 1
            if failed:
                self._failures += 1

    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            payload = dict(self._counts)
            payload["failed"] = self._failures
        return payload

    def in_flight(self, conversation_key: str) -> bool:
        return conversation_key in self._turn_locks

    def run(
        self,
        request: TurnRequest,
        on_status: StatusCallback | None = None,
        commit: CommitCallback | None = None,
    ) -> TurnOutcome:
        """Run one turn under the per-key lock.

        `commit` is asked before a successful outcome is written back to the
        session; returning False leaves the session as it was.
        """
        emit = on_status or (lambda _payload: None)
        key = request.conversation_key
        with self._turn_locks.hold(key):
            previous = self.registry.get(key)
            session = self.registry.get_or_create(key, request.settings, request.working_directory)
            session_exists = previous is not None and session is previous
            kind = classify(session_exists, session.backend_conversation_id, request.is_first_message)
            self._record(kind)
            if kind == TURN_KIND_FALLBACK:
                LOGGER.warning(
                    "Fallback turn for key=%s: session exists without a backend conversation id (turns=%d).",
                    key,
                    session.turn_count,
                )
            else:
                LOGGER.debug("Turn key=%s kind=%s", key, kind)
            emit({"status": kind})

            try:
                if kind == TURN_KIND_REPLY:
                    outcome = self.backend.invoke_continuation_turn(
                        session, self.registry.supervisor, request.message, self.turn_timeout_seconds
                    )
                else:
                    outcome = self.backend.invoke_first_turn(
                        session, self.registry.supervisor, request.message, self.turn_timeout_seconds
                    )
            except SessionNotRunningError:
                self._record(failed=True)
                self.backend.release(session)
                self.registry.evict(key)
                raise
            except BridgeError:
                self._record(failed=True)
                raise
            except Exception as exc:
                self._record(failed=True)
                LOGGER.exception("Backend %s failed for key=%s", self.backend.name, key)
                raise BackendInvocationError(f"Backend invocation failed: {exc}") from exc

            if commit is not None and not commit():
                self._record(failed=True)
                LOGGER.warning("Turn for key=%s finished after its stream timed out; result discarded.", key)
                return outcome

            if kind == TURN_KIND_REPLY:
                if outcome.backend_conversation_id:
                    session.backend_conversation_id = outcome.backend_conversation_id
            else:
                emit({"conversationId": outcome.backend_conversation_id})
                if outcome.backend_conversation_id:
                    session.backend_conversation_id = outcome.backend_conversation_id
                elif request.is_first_message:
                    session.backend_conversation_id = None
            session.turn_count += 1
            session.touch()
            return outcome
