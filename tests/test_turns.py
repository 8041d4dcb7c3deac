from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from agent_bridge.backends import TurnOutcome
from agent_bridge.capture import OutputCaptureStore
from agent_bridge.errors import BackendInvocationError, SessionNotRunningError, ValidationError
from agent_bridge.registry import SessionRegistry
from agent_bridge.supervisor import ProcessSupervisor
from agent_bridge.turns import (
    TURN_KIND_FALLBACK,
    TURN_KIND_FIRST,
    TURN_KIND_REPLY,
    TurnProtocol,
    TurnRequest,
    classify,
)
from helpers import RecordingBackend


class ClassifyTests(unittest.TestCase):
    def test_classify_covers_every_state(self) -> None:
        self.assertEqual(classify(False, None), TURN_KIND_FIRST)
        self.assertEqual(classify(False, "backend-1"), TURN_KIND_FIRST)
        self.assertEqual(classify(True, None), TURN_KIND_FALLBACK)
        self.assertEqual(classify(True, ""), TURN_KIND_FALLBACK)
        self.assertEqual(classify(True, "backend-1"), TURN_KIND_REPLY)

    def test_is_first_message_forces_first_turn(self) -> None:
        self.assertEqual(classify(True, "backend-1", is_first_message=True), TURN_KIND_FIRST)
        self.assertEqual(classify(True, None, is_first_message=True), TURN_KIND_FIRST)


class TurnRequestTests(unittest.TestCase):
    def test_from_payload_requires_key_and_message(self) -> None:
        for payload in ({}, {"conversationKey": "conv-1"}, {"message": "hi"}, {"conversationKey": " ", "message": "hi"}):
            with self.subTest(payload=payload):
                with self.assertRaisesRegex(ValidationError, "conversationKey and message are required"):
                    TurnRequest.from_payload(payload)

    def test_from_payload_rejects_non_object(self) -> None:
        with self.assertRaises(ValidationError):
            TurnRequest.from_payload(["conv-1", "hi"])
        with self.assertRaisesRegex(ValidationError, "settings must be an object"):
            TurnRequest.from_payload({"conversationKey": "conv-1", "message": "hi", "settings": "fast"})

    def test_from_payload_normalizes_optional_fields(self) -> None:
        request = TurnRequest.from_payload(
            {
                "conversationKey": " conv-1 ",
                "message": "hello",
                "settings": {"model": "o4"},
                "workingDirectory": "/tmp",
                "isFirstMessage": "true",
            }
        )

        self.assertEqual(request.conversation_key, "conv-1")
        self.assertEqual(request.settings, {"model": "o4"})
        self.assertEqual(request.working_directory, "/tmp")
        self.assertTrue(request.is_first_message)

    def test_cwd_alias_and_bad_boolean(self) -> None:
        request = TurnRequest.from_payload({"conversationKey": "conv-1", "message": "hi", "cwd": "/srv"})
        self.assertEqual(request.working_directory, "/srv")
        self.assertFalse(request.is_first_message)

        with self.assertRaisesRegex(ValidationError, "isFirstMessage must be a boolean"):
            TurnRequest.from_payload({"conversationKey": "conv-1", "message": "hi", "isFirstMessage": "maybe"})


class TurnProtocolTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.backend = RecordingBackend()
        self.capture = OutputCaptureStore(Path(self.tmp.name) / "output")
        self.supervisor = ProcessSupervisor(self.capture, self.backend.command, stop_timeout_seconds=2.0)
        self.registry = SessionRegistry(self.supervisor)
        self.protocol = TurnProtocol(self.registry, self.backend, turn_timeout_seconds=5.0)

    def tearDown(self) -> None:
        self.registry.shutdown()
        self.supervisor.shutdown()
        self.tmp.cleanup()

    def _run(self, message: str, key: str = "conv-1", **kwargs) -> tuple[TurnOutcome, list[dict]]:
        statuses: list[dict] = []
        outcome = self.protocol.run(TurnRequest(conversation_key=key, message=message, **kwargs), on_status=statuses.append)
        return outcome, statuses

    def test_new_key_then_continuation(self) -> None:
        outcome, statuses = self._run("hello")

        self.assertEqual(statuses, [{"status": TURN_KIND_FIRST}, {"conversationId": "backend-conv-1"}])
        self.assertEqual(outcome.text, "first: hello")
        self.assertEqual(self.registry.get("conv-1").backend_conversation_id, "backend-conv-1")

        outcome, statuses = self._run("follow up")

        self.assertEqual(statuses, [{"status": TURN_KIND_REPLY}])
        self.assertEqual(outcome.text, "reply: follow up")
        self.assertEqual([call[0] for call in self.backend.calls], ["first", "reply"])
        self.assertEqual(self.registry.get("conv-1").turn_count, 2)

    def test_missing_backend_id_triggers_fallback_turn(self) -> None:
        self.backend.first_results = [TurnOutcome(text="no id here"), TurnOutcome(text="second", backend_conversation_id="late-id")]

        _, first_statuses = self._run("hello")
        with self.assertLogs("agent_bridge.turns", level="WARNING") as logs:
            _, second_statuses = self._run("again")
        _, third_statuses = self._run("third")

        self.assertEqual(first_statuses, [{"status": TURN_KIND_FIRST}, {"conversationId": None}])
        self.assertEqual(second_statuses, [{"status": TURN_KIND_FALLBACK}, {"conversationId": "late-id"}])
        self.assertEqual(third_statuses, [{"status": TURN_KIND_REPLY}])
        self.assertIn("Fallback turn", logs.output[0])
        self.assertEqual(self.protocol.stats()[TURN_KIND_FALLBACK], 1)

    def test_is_first_message_replaces_stored_id(self) -> None:
        self._run("hello")
        self.backend.first_results = [TurnOutcome(text="restart", backend_conversation_id=None)]

        _, statuses = self._run("start over", is_first_message=True)

        self.assertEqual(statuses, [{"status": TURN_KIND_FIRST}, {"conversationId": None}])
        self.assertIsNone(self.registry.get("conv-1").backend_conversation_id)
        self.assertEqual([call[0] for call in self.backend.calls], ["first", "first"])

    def test_failed_turn_leaves_session_unchanged(self) -> None:
        self._run("hello")
        session = self.registry.get("conv-1")
        self.backend.reply_results = [BackendInvocationError("codex exploded")]

        with self.assertRaisesRegex(BackendInvocationError, "codex exploded"):
            self._run("follow up")

        self.assertIs(self.registry.get("conv-1"), session)
        self.assertEqual(session.backend_conversation_id, "backend-conv-1")
        self.assertEqual(session.turn_count, 1)
        self.assertEqual(self.protocol.stats()["failed"], 1)

        outcome, statuses = self._run("retry")
        self.assertEqual(statuses, [{"status": TURN_KIND_REPLY}])
        self.assertEqual(outcome.text, "reply: retry")

    def test_declined_commit_discards_late_result(self) -> None:
        self._run("hello")
        session = self.registry.get("conv-1")
        self.backend.first_results = [TurnOutcome(text="late", backend_conversation_id="late-id")]

        with self.assertLogs("agent_bridge.turns", level="WARNING") as logs:
            outcome = self.protocol.run(
                TurnRequest(conversation_key="conv-1", message="again", is_first_message=True),
                commit=lambda: False,
            )

        self.assertEqual(outcome.text, "late")
        self.assertEqual(session.backend_conversation_id, "backend-conv-1")
        self.assertEqual(session.turn_count, 1)
        self.assertIn("result discarded", logs.output[0])

    def test_unexpected_backend_exception_is_wrapped(self) -> None:
        self.backend.first_results = [KeyError("content")]

        with self.assertLogs("agent_bridge.turns", level="ERROR"):
            with self.assertRaises(BackendInvocationError):
                self._run("hello")

        self.assertIsNone(self.registry.get("conv-1").backend_conversation_id)

    def test_session_not_running_evicts_and_releases(self) -> None:
        self._run("hello")
        self.backend.reply_results = [SessionNotRunningError("backend exited")]

        with self.assertRaises(SessionNotRunningError):
            self._run("follow up")

        self.assertFalse(self.registry.has("conv-1"))
        self.assertEqual(self.backend.released, ["conv-1"])

        _, statuses = self._run("after crash")
        self.assertEqual(statuses[0], {"status": TURN_KIND_FIRST})

    def test_turns_on_one_key_are_serialized(self) -> None:
        self.backend.delay = 0.2
        first_started = threading.Event()
        original_record = self.backend._record

        def record(kind, session, message):
            if message == "m1":
                first_started.set()
            original_record(kind, session, message)

        self.backend._record = record
        first = threading.Thread(target=self._run, args=("m1",))
        second = threading.Thread(target=self._run, args=("m2",))

        first.start()
        self.assertTrue(first_started.wait(timeout=5.0))
        self.assertTrue(self.protocol.in_flight("conv-1"))
        second.start()
        first.join(timeout=10.0)
        second.join(timeout=10.0)

        self.assertEqual(self.backend.timeline, ["start:m1", "end:m1", "start:m2", "end:m2"])
        self.assertEqual([call[0] for call in self.backend.calls], ["first", "reply"])
        self.assertFalse(self.protocol.in_flight("conv-1"))

    def test_different_keys_get_independent_sessions(self) -> None:
        self._run("hello", key="a")
        self._run("hello", key="b")

        self.assertIsNot(self.registry.get("a").process_ref, self.registry.get("b").process_ref)
        self.assertEqual(self.supervisor.list_active(), ["a", "b"])
        self.assertEqual(self.protocol.stats()[TURN_KIND_FIRST], 2)


if __name__ == "__main__":
    unittest.main()
