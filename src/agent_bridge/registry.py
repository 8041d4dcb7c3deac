from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Callable

from agent_bridge.locks import KeyedLocks
from agent_bridge.supervisor import ProcessRef, ProcessSupervisor

LOGGER = logging.getLogger("agent_bridge.registry")

DEFAULT_IDLE_TIMEOUT_SECONDS = 15 * 60
DEFAULT_IDLE_SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass
class Session:
    conversation_key: str
    process_ref: ProcessRef
    working_directory: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    backend_conversation_id: str | None = None
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)
    turn_count: int = 0
    backend_state: dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        self.last_active_at = time.time()

    def payload(self) -> dict[str, Any]:
        return {
            "conversationKey": self.conversation_key,
            "sessionName": self.process_ref.session_name,
            "generation": self.process_ref.generation,
            "pid": self.process_ref.pid,
            "conversationId": self.backend_conversation_id,
            "workingDirectory": self.working_directory,
            "turnCount": self.turn_count,
            "createdAt": self.created_at,
            "lastActiveAt": self.last_active_at,
        }


class SessionRegistry:
    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor
        self._lock = Lock()
        self._create_locks = KeyedLocks()
        self._sessions: dict[str, Session] = {}
        supervisor.add_exit_callback(self._on_process_exit)

    def _on_process_exit(self, ref: ProcessRef) -> None:
        with self._lock:
            session = self._sessions.get(ref.conversation_key)
            if session is None or session.process_ref is not ref:
                return
            del self._sessions[ref.conversation_key]
        LOGGER.info("Session process exited; evicted key=%s generation=%s", ref.conversation_key, ref.generation)

    def get_or_create(
        self,
        conversation_key: str,
        settings: dict[str, Any] | None = None,
        working_directory: str | None = None,
    ) -> Session:
        with self._create_locks.hold(conversation_key):
            with self._lock:
                session = self._sessions.get(conversation_key)
            if session is not None:
                if self.supervisor.is_running(session.process_ref):
                    session.touch()
                    return session
                LOGGER.info(
                    "Session process exited; evicting key=%s generation=%s",
                    conversation_key,
                    session.process_ref.generation,
                )
                self.evict(conversation_key)

            frozen_settings = dict(settings or {})
            process_ref = self.supervisor.create_session(conversation_key, working_directory, frozen_settings)
            session = Session(
                conversation_key=conversation_key,
                process_ref=process_ref,
                working_directory=working_directory,
                settings=frozen_settings,
            )
            with self._lock:
                self._sessions[conversation_key] = session
            LOGGER.debug("Registered session key=%s generation=%s", conversation_key, process_ref.generation)
            return session

    def has(self, conversation_key: str) -> bool:
        with self._lock:
            return conversation_key in self._sessions

    def get(self, conversation_key: str) -> Session | None:
        with self._lock:
            return self._sessions.get(conversation_key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def evict(self, conversation_key: str) -> Session | None:
        with self._lock:
            session = self._sessions.pop(conversation_key, None)
        if session is not None:
            LOGGER.debug("Evicted session key=%s", conversation_key)
        return session

    def reap_idle(
        self,
        max_idle_seconds: float,
        now: float | None = None,
        busy: Callable[[str], bool] | None = None,
    ) -> list[str]:
        """Kill and evict sessions idle past the cutoff; keys for which
        `busy` returns True are left alone."""
        cutoff = (time.time() if now is None else now) - max(0.0, float(max_idle_seconds))
        with self._lock:
            idle = [key for key, session in self._sessions.items() if session.last_active_at < cutoff]
        reaped: list[str] = []
        for key in idle:
            with self._create_locks.hold(key):
                session = self.get(key)
                if session is None or session.last_active_at >= cutoff:
                    continue
                if busy is not None and busy(key):
                    LOGGER.debug("Skipping idle reap for key=%s: turn in flight", key)
                    continue
                self.supervisor.kill(session.process_ref)
                self.evict(key)
                reaped.append(key)
        if reaped:
            LOGGER.warning("Reaped %d idle session(s): %s", len(reaped), ", ".join(reaped))
        return reaped

    def shutdown(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self.supervisor.kill(session.process_ref)
        return len(sessions)


class IdleSessionReaper:
    def __init__(
        self,
        registry: SessionRegistry,
        max_idle_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        interval_seconds: float = DEFAULT_IDLE_SWEEP_INTERVAL_SECONDS,
        busy: Callable[[str], bool] | None = None,
    ):
        self.registry = registry
        self.busy = busy
        self.max_idle_seconds = float(max_idle_seconds)
        self.interval_seconds = max(0.05, float(interval_seconds))
        self._stop = Event()
        self._thread: Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="idle-session-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.registry.reap_idle(self.max_idle_seconds, busy=self.busy)
            except Exception:
                LOGGER.exception("Idle session sweep failed.")
