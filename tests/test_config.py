import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from shardlock.core.config import CONFIG_ENV, load_master_config, resolve_config_path
from shardlock.core.models import AgentIdentity
from shardlock.core.registry import build_dispatcher, load_dispatcher
from shardlock.core.rewards import AuditRewardDispatcher
from shardlock.core.audit import read_audit


DISPATCHER_SOURCE = '''
class Dispatcher:
    sent = []

    def dispatch(self, agent, reward_id):
        Dispatcher.sent.append((agent.agent_id, reward_id))
'''


class ConfigTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _write_config(self, data):
        path = self.root / "shardlock.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    def test_relative_paths_resolve_against_the_config(self):
        path = self._write_config({"challenges": ["catalog/a.yaml"], "rewards": {"retries": 2}})
        cfg = load_master_config(path)
        self.assertEqual(Path(cfg.db_path), (self.root / "shardlock.db").resolve())
        self.assertEqual(Path(cfg.audit_path), (self.root / "shardlock_audit.jsonl").resolve())
        self.assertEqual([Path(p) for p in cfg.challenge_paths], [(self.root / "catalog" / "a.yaml").resolve()])
        self.assertEqual(cfg.rewards.retries, 2)
        self.assertIsNone(cfg.rewards.dispatcher_path)

    def test_retries_must_be_a_non_negative_integer(self):
        with self.assertRaisesRegex(ValueError, "rewards.retries"):
            load_master_config(self._write_config({"rewards": {"retries": -1}}))
        with self.assertRaisesRegex(ValueError, "rewards.retries"):
            load_master_config(self._write_config({"rewards": {"retries": "twice"}}))
        self.assertEqual(load_master_config(self._write_config({"rewards": {"retries": 0}})).rewards.retries, 0)

    def test_missing_config(self):
        with self.assertRaises(FileNotFoundError):
            load_master_config(self.root / "nope.yaml")

    def test_env_variable_is_used_when_path_is_missing(self):
        path = self._write_config({})
        with mock.patch.dict(os.environ, {CONFIG_ENV: str(path)}):
            self.assertEqual(resolve_config_path("missing.yaml"), str(path))

    def test_default_dispatcher_writes_audit(self):
        cfg = load_master_config(self._write_config({"audit": {"path": "audit.jsonl"}}))
        dispatcher = build_dispatcher(cfg)
        self.assertIsInstance(dispatcher, AuditRewardDispatcher)
        dispatcher.dispatch(AgentIdentity("agent-1", bungie_id="4611"), "R1")
        events = read_audit(cfg.audit_path)
        self.assertEqual(events[0]["event"], "reward_dispatch")
        self.assertEqual(events[0]["reward_id"], "R1")

    def test_custom_dispatcher_from_file(self):
        (self.root / "emblems.py").write_text(DISPATCHER_SOURCE, encoding="utf-8")
        cfg = load_master_config(self._write_config({"rewards": {"dispatcher": "emblems.py"}}))
        dispatcher = build_dispatcher(cfg)
        dispatcher.dispatch(AgentIdentity("agent-1"), "R9")
        self.assertEqual(type(dispatcher).sent, [("agent-1", "R9")])

        with self.assertRaises(FileNotFoundError):
            load_dispatcher(self.root / "missing.py")


if __name__ == "__main__":
    unittest.main()
