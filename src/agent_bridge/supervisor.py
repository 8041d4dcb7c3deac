from __future__ import annotations

import logging
import os
import queue
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock, Thread
from typing import Any, BinaryIO, Callable

from agent_bridge.capture import OutputCaptureStore, session_name
from agent_bridge.errors import SessionNotRunningError, SpawnError
from agent_bridge.locks import KeyedLocks

LOGGER = logging.getLogger("agent_bridge.supervisor")

OUTPUT_LISTENER_QUEUE_MAX = 1024
DEFAULT_STOP_TIMEOUT_SECONDS = 4.0
SESSION_ENV_VAR = "AGENT_BRIDGE_SESSION"

CommandFactory = Callable[[dict[str, Any]], list[str]]
ExitCallback = Callable[["ProcessRef"], None]


def _iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass
class ProcessRef:
    conversation_key: str
    session_name: str
    generation: int
    process: subprocess.Popen
    working_directory: str
    argv: list[str]
    started_at: str = field(default_factory=_iso_now)
    listeners: set[queue.Queue[str | None]] = field(default_factory=set)
    output_closed: bool = False
    write_lock: Lock = field(default_factory=Lock)

    @property
    def pid(self) -> int:
        return int(self.process.pid)


def _queue_put(listener: queue.Queue[str | None], value: str | None) -> None:
    try:
        listener.put_nowait(value)
        return
    except queue.Full:
        pass

    try:
        listener.get_nowait()
    except queue.Empty:
        return

    try:
        listener.put_nowait(value)
    except queue.Full:
        return


def _is_process_running(process: subprocess.Popen | None) -> bool:
    if process is None:
        return False
    return process.poll() is None


def _signal_process(process: subprocess.Popen, sig: int) -> None:
    try:
        pgid = os.getpgid(process.pid)
    except (ProcessLookupError, OSError):
        pgid = 0

    try:
        if pgid:
            os.killpg(pgid, sig)
        else:
            os.kill(process.pid, sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            os.kill(process.pid, sig)
        except (ProcessLookupError, PermissionError, OSError):
            return


def _stop_process(process: subprocess.Popen, timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
    if not _is_process_running(process):
        return

    _signal_process(process, signal.SIGTERM)
    try:
        process.wait(timeout=max(0.1, float(timeout_seconds)))
        return
    except subprocess.TimeoutExpired:
        pass

    _signal_process(process, signal.SIGKILL)
    try:
        process.wait(timeout=max(0.1, float(timeout_seconds)))
    except subprocess.TimeoutExpired:
        LOGGER.warning("Process pid=%s did not exit after SIGKILL.", process.pid)


def _stop_processes(processes: list[subprocess.Popen], timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> int:
    active = [process for process in processes if _is_process_running(process)]
    if not active:
        return 0

    for process in active:
        _signal_process(process, signal.SIGTERM)

    deadline = time.monotonic() + max(0.1, float(timeout_seconds))
    alive = active
    while time.monotonic() < deadline:
        alive = [process for process in alive if _is_process_running(process)]
        if not alive:
            return len(active)
        time.sleep(0.1)

    for process in alive:
        _signal_process(process, signal.SIGKILL)
    for process in alive:
        try:
            process.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Process pid=%s did not exit after SIGKILL.", process.pid)
    return len(active)


def _close_stream(stream: Any) -> None:
    if stream is None:
        return
    try:
        stream.close()
    except (OSError, ValueError):
        pass


class ProcessSupervisor:
    """Owns one external interactive process per conversation key.

    Every byte a process writes to stdout/stderr is appended to the capture
    store by a pump thread that lives exactly as long as the process output,
    independent of whoever is (or is not) currently waiting on a turn.
    """

    def __init__(
        self,
        capture: OutputCaptureStore,
        command_factory: CommandFactory,
        stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ):
        self.capture = capture
        self.command_factory = command_factory
        self.stop_timeout_seconds = float(stop_timeout_seconds)
        self._lock = Lock()
        self._create_locks = KeyedLocks()
        self._runtimes: dict[str, ProcessRef] = {}
        self._generation = 0
        self._exit_callbacks: list[ExitCallback] = []

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Registers a hook invoked from the pump thread once a process's output closes."""
        with self._lock:
            self._exit_callbacks.append(callback)

    def _tracked(self, conversation_key: str) -> ProcessRef | None:
        with self._lock:
            return self._runtimes.get(conversation_key)

    def _forget(self, ref: ProcessRef) -> None:
        with self._lock:
            if self._runtimes.get(ref.conversation_key) is ref:
                del self._runtimes[ref.conversation_key]

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    @staticmethod
    def _resolve_working_directory(working_directory: str | None) -> Path:
        if not working_directory:
            return Path.cwd()
        resolved = Path(str(working_directory)).expanduser()
        if not resolved.is_dir():
            raise SpawnError(f"Working directory does not exist: {working_directory}")
        return resolved.resolve()

    def create_session(
        self,
        conversation_key: str,
        working_directory: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> ProcessRef:
        with self._create_locks.hold(conversation_key):
            existing = self._tracked(conversation_key)
            if existing is not None:
                if self.is_running(existing):
                    if working_directory and Path(str(working_directory)).expanduser().resolve() != Path(existing.working_directory):
                        raise SpawnError(
                            f"Session {existing.session_name} is already bound to a running process "
                            f"(generation {existing.generation}) in {existing.working_directory}."
                        )
                    return existing
                LOGGER.debug(
                    "Reaping exited process key=%s generation=%s before respawn.",
                    conversation_key,
                    existing.generation,
                )
                self._forget(existing)
            return self._spawn(conversation_key, working_directory, settings or {})

    def _spawn(self, conversation_key: str, working_directory: str | None, settings: dict[str, Any]) -> ProcessRef:
        cwd = self._resolve_working_directory(working_directory)
        try:
            argv = [str(arg) for arg in self.command_factory(settings)]
        except SpawnError:
            raise
        except (RuntimeError, ValueError) as exc:
            raise SpawnError(str(exc)) from exc
        if not argv:
            raise SpawnError("Backend command is empty.")

        name = session_name(conversation_key)
        env = dict(os.environ)
        env[SESSION_ENV_VAR] = name

        writer = self.capture.open_writer(conversation_key)
        try:
            writer.write(f"$ {shlex.join(argv)}\n".encode("utf-8", errors="replace"))
            writer.flush()
            process = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as exc:
            writer.write(f"[spawn failed: {exc}]\n".encode("utf-8", errors="replace"))
            writer.close()
            raise SpawnError(f"Failed to start backend process ({argv[0]}): {exc}") from exc

        ref = ProcessRef(
            conversation_key=conversation_key,
            session_name=name,
            generation=self._next_generation(),
            process=process,
            working_directory=str(cwd),
            argv=argv,
        )
        with self._lock:
            self._runtimes[conversation_key] = ref

        pump = Thread(
            target=self._output_pump_loop,
            args=(ref, writer),
            name=f"output-pump-{name}",
            daemon=True,
        )
        pump.start()
        LOGGER.info(
            "Spawned backend process key=%s session=%s generation=%s pid=%s cwd=%s",
            conversation_key,
            name,
            ref.generation,
            ref.pid,
            cwd,
        )
        return ref

    def _broadcast(self, ref: ProcessRef, text: str) -> None:
        if not text:
            return
        with self._lock:
            listeners = list(ref.listeners)
        for listener in listeners:
            _queue_put(listener, text)

    def _output_pump_loop(self, ref: ProcessRef, writer: BinaryIO) -> None:
        stdout = ref.process.stdout
        try:
            with writer:
                if stdout is not None:
                    for raw_line in iter(stdout.readline, b""):
                        writer.write(raw_line)
                        writer.flush()
                        self._broadcast(ref, raw_line.decode("utf-8", errors="replace"))
        except (OSError, ValueError) as exc:
            LOGGER.debug("Output pump for key=%s stopped: %s", ref.conversation_key, exc)
        finally:
            _close_stream(stdout)
            with self._lock:
                ref.output_closed = True
                listeners = list(ref.listeners)
                ref.listeners.clear()
            for listener in listeners:
                _queue_put(listener, None)
            LOGGER.info(
                "Output closed key=%s generation=%s exit_code=%s",
                ref.conversation_key,
                ref.generation,
                ref.process.poll(),
            )
            self._notify_exit(ref)

    def _notify_exit(self, ref: ProcessRef) -> None:
        with self._lock:
            callbacks = list(self._exit_callbacks)
        for callback in callbacks:
            try:
                callback(ref)
            except Exception:
                LOGGER.exception("Exit callback failed for key=%s", ref.conversation_key)

    def attach(self, ref: ProcessRef) -> queue.Queue[str | None]:
        listener: queue.Queue[str | None] = queue.Queue(maxsize=OUTPUT_LISTENER_QUEUE_MAX)
        with self._lock:
            if ref.output_closed:
                raise SessionNotRunningError(f"Session {ref.session_name} is not running.")
            ref.listeners.add(listener)
        return listener

    def detach(self, ref: ProcessRef, listener: queue.Queue[str | None]) -> None:
        with self._lock:
            ref.listeners.discard(listener)

    def send_input(self, ref: ProcessRef, text: str) -> None:
        if not self.is_running(ref):
            raise SessionNotRunningError(f"Session {ref.session_name} is not running.")
        if not text:
            return
        stdin = ref.process.stdin
        if stdin is None:
            raise SessionNotRunningError(f"Session {ref.session_name} has no input channel.")
        with ref.write_lock:
            try:
                stdin.write(text.encode("utf-8", errors="replace"))
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                raise SessionNotRunningError(f"Session {ref.session_name} stopped accepting input.") from exc

    def is_running(self, ref: ProcessRef | None) -> bool:
        if ref is None:
            return False
        return _is_process_running(ref.process)

    def get(self, conversation_key: str) -> ProcessRef | None:
        return self._tracked(conversation_key)

    def list_active(self) -> list[str]:
        with self._lock:
            refs = list(self._runtimes.values())
        active: list[str] = []
        for ref in refs:
            if self.is_running(ref):
                active.append(ref.conversation_key)
            else:
                self._forget(ref)
        return sorted(active)

    def kill(self, ref: ProcessRef) -> bool:
        if not self.is_running(ref):
            self._forget(ref)
            return False
        LOGGER.info("Killing backend process key=%s generation=%s pid=%s", ref.conversation_key, ref.generation, ref.pid)
        _stop_process(ref.process, timeout_seconds=self.stop_timeout_seconds)
        _close_stream(ref.process.stdin)
        self._forget(ref)
        return True

    def kill_session(self, conversation_key: str) -> bool:
        ref = self._tracked(conversation_key)
        if ref is None:
            return False
        return self.kill(ref)

    def shutdown(self) -> dict[str, int]:
        with self._lock:
            refs = list(self._runtimes.values())
            self._runtimes.clear()
        stopped = _stop_processes([ref.process for ref in refs], timeout_seconds=self.stop_timeout_seconds)
        for ref in refs:
            _close_stream(ref.process.stdin)
        if refs:
            LOGGER.info("Supervisor shutdown stopped=%d tracked=%d", stopped, len(refs))
        return {"stopped_processes": stopped, "tracked_processes": len(refs)}
