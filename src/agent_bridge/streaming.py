from __future__ import annotations

import json
import logging
import queue
import time
from dataclasses import dataclass, field
from threading import Lock, Thread
from typing import Any, Callable, Iterator

from agent_bridge.capture import OutputCaptureStore
from agent_bridge.errors import BackendInvocationError, BridgeError, NotFoundError
from agent_bridge.turns import TurnProtocol, TurnRequest

LOGGER = logging.getLogger("agent_bridge.streaming")

EVENT_META = "meta"
EVENT_CHUNK = "chunk"
EVENT_MESSAGE = "message"
EVENT_DONE = "done"
EVENT_ERROR = "error"
DEFAULT_CHUNK_SIZE = 50
DEFAULT_CHUNK_DELAY_SECONDS = 0.01
TURN_TIMEOUT_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class TurnEvent:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"

    @property
    def terminal(self) -> bool:
        return self.event in {EVENT_DONE, EVENT_ERROR}


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    size = max(1, int(chunk_size))
    return [text[index : index + size] for index in range(0, len(text), size)]


def outcome_events(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_delay: float = DEFAULT_CHUNK_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[TurnEvent]:
    """Simulated incremental delivery of a complete answer."""
    for index, piece in enumerate(chunk_text(text, chunk_size)):
        if index and chunk_delay > 0:
            sleep(chunk_delay)
        yield TurnEvent(EVENT_CHUNK, {"content": piece})
    yield TurnEvent(EVENT_MESSAGE, {"role": "assistant", "content": text})
    yield TurnEvent(EVENT_DONE, {"ok": True})


def iter_turn_events(
    protocol: TurnProtocol,
    request: TurnRequest,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_delay: float = DEFAULT_CHUNK_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[TurnEvent]:
    """Ordered event stream for one turn, always ending in `done` or `error`.

    The turn itself runs on a worker thread so that a consumer that stops
    iterating (client disconnect) never leaves the per-key turn lock held.
    Once a timeout has been reported, a late result is not committed to the
    session.
    """
    yield TurnEvent(EVENT_META, {"status": "starting"})

    results: queue.Queue[Any] = queue.Queue()
    settle_lock = Lock()
    settled = {"timed_out": False, "committed": False}

    def on_status(payload: dict[str, Any]) -> None:
        results.put(TurnEvent(EVENT_META, dict(payload)))

    def commit() -> bool:
        with settle_lock:
            if settled["timed_out"]:
                return False
            settled["committed"] = True
            return True

    def worker() -> None:
        try:
            outcome = protocol.run(request, on_status=on_status, commit=commit)
        except BridgeError as exc:
            results.put(exc)
        except Exception as exc:
            LOGGER.exception("Turn worker crashed for key=%s", request.conversation_key)
            results.put(BackendInvocationError(str(exc) or exc.__class__.__name__))
        else:
            results.put(outcome)

    Thread(target=worker, name=f"turn-{request.conversation_key}", daemon=True).start()

    deadline: float | None = None
    while True:
        wait = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            item = results.get(timeout=wait)
        except queue.Empty:
            with settle_lock:
                if not settled["committed"]:
                    settled["timed_out"] = True
            if not settled["timed_out"]:
                # The result is already committed and on its way.
                deadline = None
                continue
            LOGGER.warning("Turn for key=%s exceeded %.1fs; reporting timeout.", request.conversation_key, protocol.turn_timeout_seconds)
            yield TurnEvent(
                EVENT_ERROR,
                {"message": f"Turn timed out after {protocol.turn_timeout_seconds:.1f}s; output is still being captured."},
            )
            return
        if isinstance(item, TurnEvent):
            if deadline is None and "status" in item.data:
                deadline = time.monotonic() + protocol.turn_timeout_seconds + TURN_TIMEOUT_GRACE_SECONDS
            yield item
            continue
        if isinstance(item, BridgeError):
            LOGGER.warning("Turn failed for key=%s: %s", request.conversation_key, item.message)
            yield TurnEvent(EVENT_ERROR, {"message": item.message})
            return
        outcome = item
        break

    yield from outcome_events(outcome.text, chunk_size=chunk_size, chunk_delay=chunk_delay, sleep=sleep)


def read_captured_output(capture: OutputCaptureStore, conversation_key: str) -> str:
    output = capture.read(conversation_key)
    if output is None:
        raise NotFoundError("No output file found")
    return output
