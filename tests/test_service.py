import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from shardlock.core.audit import read_audit
from shardlock.core.errors import (
    ChallengeNotFound,
    InvalidAccessCode,
    PersistenceFailure,
    RewardDispatchFailed,
    SubChallengeInactive,
    ValidationFailed,
)
from shardlock.core.models import AgentIdentity, ProgressState
from shardlock.core.rewards import dispatch_with_retry

from _support import (
    AGENT_ONE,
    AGENT_TWO,
    RecordingDispatcher,
    build_catalog,
    build_service,
    cipher_01,
    private_challenge,
)


def _vex_archive():
    return {
        "challenge": {
            "id": "vex",
            "title": "Vex Archive",
            "target_code": "VEX-ARC",
            "code_format": "VVV-AAA",
            "slot_value": "target",
            "completion_reward_id": "EMBLEM-VEX",
        },
        "sub_challenges": [
            {
                "fragments": ["V1", "V2", "V3"],
                "type": "logic",
                "groups": [{"access_code": "ALPHA-7", "prompt": ["sequence"]}],
                "expected_output": "temporal",
                "reward_id": "R-V",
            },
            {
                "fragments": ["A1", "A2", "A3"],
                "type": "lookup",
                "groups": [{"access_code": "ARC-44", "prompt": ["archivist"]}],
                "expected_output": "Osiris",
                "reward_id": "R-A",
            },
        ],
    }


def _relay():
    data = cipher_01(id="relay", code_format="A-B", completion_reward_id="EMBLEM-RELAY")
    data["fragment_slots"] = {}
    data["sub_challenges"][0]["fragments"] = ["A1"]
    data["sub_challenges"].append(
        dict(data["sub_challenges"][0], fragments=["B1"], expected_output="FOXTROT", reward_id="REWARD-B1")
    )
    return data


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.db_path = self.tmp / "shardlock.db"
        self.audit_path = str(self.tmp / "audit.jsonl")
        inactive = private_challenge(2, "half-off")
        inactive["sub_challenges"][1]["active"] = False
        self.catalog = build_catalog(cipher_01(), private_challenge(3), _vex_archive(), inactive, _relay())
        self.dispatcher = RecordingDispatcher()
        self.service = build_service(self.db_path, self.catalog, self.dispatcher, self.audit_path)

    def tearDown(self):
        self.service.store.conn.close()
        self._tmp.cleanup()


class SharedChallengeScenarioTests(ServiceTestCase):
    def test_cipher_walkthrough(self):
        access = self.service.submit_access_code("cipher-01", 0, AGENT_ONE, "X1")
        self.assertEqual(access.prompt_lines, ["The signal repeats: DOLG."])

        with self.assertRaises(ValidationFailed):
            self.service.submit_answer("cipher-01", 0, AGENT_ONE, "echo")

        result = self.service.submit_answer("cipher-01", 0, AGENT_ONE, "ECHO")
        self.assertTrue(result.fragment_unlocked)
        self.assertTrue(result.slot_written)
        self.assertTrue(result.reward_dispatched)
        self.assertEqual(result.reward_id, "REWARD-A1")
        self.assertFalse(result.challenge_complete)
        view = self.service.challenge_view("cipher-01")
        self.assertEqual(view["final_code"]["AAA"]["A1"], "ECHO")
        self.assertEqual(view["completion"], 11)

        second = self.service.submit_answer("cipher-01", 0, AGENT_TWO, "ECHO")
        self.assertFalse(second.slot_written)
        self.assertFalse(second.reward_dispatched)
        self.assertIsNone(second.reward_id)
        self.assertEqual(self.dispatcher.calls, [("agent-1", "REWARD-A1")])

        events = [e["event"] for e in read_audit(self.audit_path)]
        self.assertIn("access_granted", events)
        self.assertIn("answer_rejected", events)
        self.assertIn("slot_conflict", events)

    def test_completion_reward_goes_to_the_agent_who_fills_the_grid(self):
        first = self.service.submit_answer("relay", 0, AGENT_ONE, "ECHO")
        self.assertFalse(first.challenge_complete)

        last = self.service.submit_answer("relay", 1, AGENT_TWO, "FOXTROT")
        self.assertTrue(last.challenge_complete)
        self.assertTrue(last.agent_complete)
        self.assertEqual(last.reward_id, "REWARD-B1")

        self.assertTrue(self.service.challenge_view("relay")["is_complete"])
        self.assertTrue(self.service.get_progress("relay", AGENT_ONE).complete)

        again = self.service.submit_answer("relay", 1, AGENT_ONE, "FOXTROT")
        self.assertFalse(again.slot_written)
        self.assertEqual(
            self.dispatcher.calls,
            [("agent-1", "REWARD-A1"), ("agent-2", "REWARD-B1"), ("agent-2", "EMBLEM-RELAY")],
        )
        self.assertEqual(
            [r["agent_id"] for r in self.service.store.rewards("sent") if r["reward_id"] == "EMBLEM-RELAY"],
            ["agent-2"],
        )
        completions = [e["agent"] for e in read_audit(self.audit_path) if e["event"] == "challenge_complete"]
        self.assertEqual(completions, ["agent-2"])

    def test_challenge_view_hides_answers(self):
        view = self.service.challenge_view("cipher-01")
        flat = repr(view)
        self.assertNotIn("ECHO", flat)
        self.assertNotIn("X1", flat)

    def test_concurrent_correct_submissions_dispatch_once(self):
        workers = 6
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def run(n: int) -> None:
            service = build_service(self.db_path, self.catalog, self.dispatcher)
            try:
                barrier.wait()
                result = service.submit_answer("cipher-01", 0, AgentIdentity(f"racer-{n}"), "ECHO")
                with lock:
                    results.append(result)
            finally:
                service.store.conn.close()

        threads = [threading.Thread(target=run, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(results), workers)
        self.assertEqual(sum(1 for r in results if r.slot_written), 1)
        self.assertEqual(len(self.dispatcher.calls), 1)


class PrivateChallengeTests(ServiceTestCase):
    def test_resubmission_is_idempotent(self):
        first = self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertTrue(first.fragment_unlocked)
        again = self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertFalse(again.fragment_unlocked)
        self.assertFalse(again.reward_dispatched)
        self.assertEqual(self.dispatcher.calls, [("agent-1", "R1")])

    def test_agents_progress_independently(self):
        self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        other = self.service.submit_answer("solo", 0, AGENT_TWO, "answer-1")
        self.assertTrue(other.fragment_unlocked)
        self.assertTrue(other.reward_dispatched)
        self.assertEqual(len(self.dispatcher.calls), 2)

    def test_completion_requires_all_fragments(self):
        for i in range(1, 3):
            result = self.service.submit_answer("solo", i - 1, AGENT_ONE, f"answer-{i}")
            self.assertFalse(result.agent_complete)
        self.assertEqual(self.service.get_progress("solo", AGENT_ONE).state, ProgressState.IN_PROGRESS)

        result = self.service.submit_answer("solo", 2, AGENT_ONE, "answer-3")
        self.assertTrue(result.agent_complete)
        self.assertFalse(result.challenge_complete)
        self.assertEqual(self.service.get_progress("solo", AGENT_ONE).state, ProgressState.COMPLETE)

        # complete is terminal, further answers are accepted as no-ops
        repeat = self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertFalse(repeat.fragment_unlocked)
        self.assertTrue(repeat.agent_complete)

    def test_inactive_sub_challenge_not_required(self):
        result = self.service.submit_answer("half-off", 0, AGENT_ONE, "answer-1")
        self.assertTrue(result.agent_complete)
        with self.assertRaises(SubChallengeInactive):
            self.service.submit_answer("half-off", 1, AGENT_ONE, "answer-2")

    def test_target_characters_fill_the_grid(self):
        self.service.submit_answer("vex", 0, AGENT_ONE, "temporal")
        progress = self.service.get_progress("vex", AGENT_ONE)
        self.assertEqual(progress.current_progress, "VEX-XXX")
        self.assertEqual(progress.unlocked_fragments, {"V1", "V2", "V3"})

        final = self.service.submit_answer("vex", 1, AGENT_ONE, "Osiris")
        self.assertTrue(final.agent_complete)
        self.assertEqual(self.service.get_progress("vex", AGENT_ONE).current_progress, "VEX-ARC")
        self.assertEqual(
            self.dispatcher.calls,
            [("agent-1", "R-V"), ("agent-1", "R-A"), ("agent-1", "EMBLEM-VEX")],
        )


class ErrorHandlingTests(ServiceTestCase):
    def test_gate_errors(self):
        with self.assertRaises(ChallengeNotFound):
            self.service.submit_access_code("nope", 0, AGENT_ONE, "X1")
        with self.assertRaises(InvalidAccessCode):
            self.service.submit_access_code("solo", 1, AGENT_ONE, "GATE-1")
        self.assertIn("access_denied", [e["event"] for e in read_audit(self.audit_path)])

    def test_hints_unlock_with_failed_attempts(self):
        self.assertEqual(self.service.hints("cipher-01", 0, AGENT_ONE), [])
        for _ in range(2):
            with self.assertRaises(ValidationFailed):
                self.service.submit_answer("cipher-01", 0, AGENT_ONE, "nope")
        self.assertEqual(self.service.hints("cipher-01", 0, AGENT_ONE), ["Think Caesar.", "D becomes A."])
        self.assertEqual(self.service.hints("cipher-01", 0, AGENT_TWO), [])

    def test_reward_failure_keeps_the_unlock(self):
        self.service.dispatcher = RecordingDispatcher(fail_times=5)
        result = self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertTrue(result.fragment_unlocked)
        self.assertFalse(result.reward_dispatched)
        self.assertIn("R1", result.reward_error)
        self.assertEqual(self.service.get_progress("solo", AGENT_ONE).unlocked_fragments, {"A1"})
        self.assertEqual([r["reward_id"] for r in self.service.store.rewards("failed")], ["R1"])

        # the ledger entry is spent, a retry does not re-dispatch
        again = self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertIsNone(again.reward_error)
        self.assertEqual(self.service.dispatcher.calls, [])

    def test_reward_dispatch_retries_once(self):
        self.service.dispatcher = RecordingDispatcher(fail_times=1)
        result = self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertTrue(result.reward_dispatched)
        self.assertEqual(self.service.dispatcher.calls, [("agent-1", "R1")])

    def test_persistent_store_errors_surface_without_partial_state(self):
        busy = sqlite3.OperationalError("database is locked")
        with mock.patch.object(self.service.assembler, "apply_unlock", side_effect=busy) as patched:
            with self.assertRaises(PersistenceFailure):
                self.service.submit_answer("solo", 0, AGENT_ONE, "answer-1")
        self.assertEqual(patched.call_count, 2)
        self.assertIsNone(self.service.store.get("solo", "agent-1"))
        self.assertEqual(self.dispatcher.calls, [])

    def test_negative_retry_count_fails_inside_the_error_taxonomy(self):
        with self.assertRaises(RewardDispatchFailed):
            dispatch_with_retry(RecordingDispatcher(fail_times=1), AGENT_ONE, "R", retries=-1)
        healthy = RecordingDispatcher()
        dispatch_with_retry(healthy, AGENT_ONE, "R", retries=-1)
        self.assertEqual(healthy.calls, [("agent-1", "R")])

        self.service.retries = -1
        busy = sqlite3.OperationalError("database is locked")
        with mock.patch.object(self.service.store, "list_for_agent", side_effect=busy) as patched:
            with self.assertRaises(PersistenceFailure):
                self.service.agent_overview("agent-1")
        self.assertEqual(patched.call_count, 1)

    def test_progress_read_does_not_create_records(self):
        progress = self.service.get_progress("solo", AGENT_ONE)
        self.assertEqual(progress.state, ProgressState.NOT_STARTED)
        self.assertEqual(self.service.agent_overview("agent-1"), [])


if __name__ == "__main__":
    unittest.main()
