from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS agent_progress (
  challenge_id TEXT NOT NULL,
  agent_id TEXT NOT NULL,
  bungie_id TEXT NOT NULL DEFAULT '',
  display_name TEXT NOT NULL DEFAULT '',
  current_progress TEXT NOT NULL DEFAULT '',
  complete INTEGER NOT NULL DEFAULT 0,
  last_updated TEXT NOT NULL,
  PRIMARY KEY (challenge_id, agent_id)
);

CREATE TABLE IF NOT EXISTS unlocked_fragments (
  challenge_id TEXT NOT NULL,
  agent_id TEXT NOT NULL,
  fragment_id TEXT NOT NULL,
  unlocked_at TEXT NOT NULL,
  PRIMARY KEY (challenge_id, agent_id, fragment_id)
);

CREATE TABLE IF NOT EXISTS agent_slots (
  challenge_id TEXT NOT NULL,
  agent_id TEXT NOT NULL,
  group_name TEXT NOT NULL,
  slot_name TEXT NOT NULL,
  value TEXT NOT NULL,
  PRIMARY KEY (challenge_id, agent_id, group_name, slot_name)
);

CREATE TABLE IF NOT EXISTS grid_slots (
  challenge_id TEXT NOT NULL,
  group_name TEXT NOT NULL,
  slot_name TEXT NOT NULL,
  value TEXT NOT NULL DEFAULT '',
  filled_by TEXT,
  filled_at TEXT,
  PRIMARY KEY (challenge_id, group_name, slot_name)
);

CREATE TABLE IF NOT EXISTS challenge_state (
  challenge_id TEXT PRIMARY KEY,
  is_complete INTEGER NOT NULL DEFAULT 0,
  completed_by TEXT,
  completed_at TEXT
);

CREATE TABLE IF NOT EXISTS failed_attempts (
  challenge_id TEXT NOT NULL,
  agent_id TEXT NOT NULL,
  sub_index INTEGER NOT NULL,
  count INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (challenge_id, agent_id, sub_index)
);

CREATE TABLE IF NOT EXISTS reward_ledger (
  challenge_id TEXT NOT NULL,
  agent_id TEXT NOT NULL,
  reward_key TEXT NOT NULL,
  reward_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  claimed_at TEXT NOT NULL,
  PRIMARY KEY (challenge_id, agent_id, reward_key)
);

CREATE INDEX IF NOT EXISTS idx_progress_agent ON agent_progress(agent_id);
"""


def connect(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """Open a connection in autocommit mode; callers open transactions explicitly."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)


def fetch_one(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...] = ()) -> Any | None:
    cur = conn.execute(sql, params)
    row = cur.fetchone()
    return row


def fetch_all(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...] = ()) -> list[Any]:
    cur = conn.execute(sql, params)
    rows = cur.fetchall()
    return list(rows)
