from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from shardlock.core.catalog import Catalog
from shardlock.core.codeformat import FinalCode, SlotRef, grid_is_full, render_partial
from shardlock.core.db import fetch_all, fetch_one
from shardlock.core.errors import PersistenceFailure
from shardlock.core.models import AgentIdentity, AgentProgress, Challenge


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressStore:
    """Per (challenge, agent) progress plus the shared final-code grids.

    Every mutation is a conditional statement (``INSERT OR IGNORE``,
    ``UPDATE ... WHERE value = ''``) so concurrent writers on separate
    connections never overwrite each other. ``atomic()`` groups them into a
    single immediate transaction.
    """

    def __init__(self, conn: sqlite3.Connection, catalog: Catalog):
        self.conn = conn
        self.catalog = catalog
        self._depth = 0
        self._grids_ready: set[str] = set()

    @contextmanager
    def atomic(self) -> Iterator["ProgressStore"]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._depth = 0

    # -- shared grid -------------------------------------------------------

    def ensure_grid(self, challenge: Challenge) -> None:
        if challenge.challenge_id in self._grids_ready:
            return
        with self.atomic():
            self.conn.execute(
                "INSERT OR IGNORE INTO challenge_state(challenge_id) VALUES (?)",
                (challenge.challenge_id,),
            )
            if challenge.is_shared:
                self.conn.executemany(
                    "INSERT OR IGNORE INTO grid_slots(challenge_id, group_name, slot_name) VALUES (?,?,?)",
                    [(challenge.challenge_id, ref.group, ref.slot) for ref in challenge.code_format.slots],
                )
        # an enclosing transaction may still roll these rows back
        if not self._depth:
            self._grids_ready.add(challenge.challenge_id)

    def shared_grid(self, challenge: Challenge) -> FinalCode:
        self.ensure_grid(challenge)
        grid = challenge.code_format.empty_grid()
        rows = fetch_all(
            self.conn,
            "SELECT group_name, slot_name, value FROM grid_slots WHERE challenge_id = ?",
            (challenge.challenge_id,),
        )
        for r in rows:
            if r["group_name"] in grid and r["slot_name"] in grid[r["group_name"]]:
                grid[r["group_name"]][r["slot_name"]] = r["value"]
        return grid

    def shared_slot_value(self, challenge_id: str, ref: SlotRef) -> str:
        row = fetch_one(
            self.conn,
            "SELECT value FROM grid_slots WHERE challenge_id = ? AND group_name = ? AND slot_name = ?",
            (challenge_id, ref.group, ref.slot),
        )
        return row["value"] if row else ""

    def fill_shared_slot(self, challenge_id: str, ref: SlotRef, value: str, agent_id: str) -> bool:
        """Write a shared slot only if it is still empty. True if this call wrote it."""
        cur = self.conn.execute(
            """
            UPDATE grid_slots SET value = ?, filled_by = ?, filled_at = ?
            WHERE challenge_id = ? AND group_name = ? AND slot_name = ? AND value = ''
            """,
            (value, agent_id, utcnow().isoformat(), challenge_id, ref.group, ref.slot),
        )
        return cur.rowcount == 1

    def mark_challenge_complete(self, challenge_id: str, agent_id: str) -> bool:
        """Flip the shared completion flag. True only for the call that flipped it."""
        cur = self.conn.execute(
            """
            UPDATE challenge_state SET is_complete = 1, completed_by = ?, completed_at = ?
            WHERE challenge_id = ? AND is_complete = 0
            """,
            (agent_id, utcnow().isoformat(), challenge_id),
        )
        return cur.rowcount == 1

    def is_challenge_complete(self, challenge_id: str) -> bool:
        row = fetch_one(
            self.conn,
            "SELECT is_complete FROM challenge_state WHERE challenge_id = ?",
            (challenge_id,),
        )
        return bool(row and row["is_complete"])

    # -- agent progress ----------------------------------------------------

    def blank(self, challenge: Challenge, agent: AgentIdentity) -> AgentProgress:
        grid = self.shared_grid(challenge) if challenge.is_shared else challenge.code_format.empty_grid()
        return AgentProgress(
            challenge_id=challenge.challenge_id,
            agent_id=agent.agent_id,
            bungie_id=agent.bungie_id,
            display_name=agent.display_name,
            unlocked_fragments=set(),
            grid=grid,
            current_progress=render_partial(grid, challenge.code_format),
            complete=challenge.is_shared and grid_is_full(grid),
            last_updated=utcnow(),
        )

    def _load_written(self, challenge: Challenge, agent_id: str) -> AgentProgress:
        progress = self._load(challenge, agent_id)
        if progress is None:
            raise PersistenceFailure(f"progress row for {agent_id} on {challenge.challenge_id} vanished mid-write")
        return progress

    def _load(self, challenge: Challenge, agent_id: str) -> AgentProgress | None:
        row = fetch_one(
            self.conn,
            "SELECT * FROM agent_progress WHERE challenge_id = ? AND agent_id = ?",
            (challenge.challenge_id, agent_id),
        )
        if row is None:
            return None

        fragments = {
            r["fragment_id"]
            for r in fetch_all(
                self.conn,
                "SELECT fragment_id FROM unlocked_fragments WHERE challenge_id = ? AND agent_id = ?",
                (challenge.challenge_id, agent_id),
            )
        }
        attempts = {
            int(r["sub_index"]): int(r["count"])
            for r in fetch_all(
                self.conn,
                "SELECT sub_index, count FROM failed_attempts WHERE challenge_id = ? AND agent_id = ?",
                (challenge.challenge_id, agent_id),
            )
        }

        if challenge.is_shared:
            grid = self.shared_grid(challenge)
            complete = bool(row["complete"]) or grid_is_full(grid)
            current = render_partial(grid, challenge.code_format)
        else:
            grid = challenge.code_format.empty_grid()
            for r in fetch_all(
                self.conn,
                "SELECT group_name, slot_name, value FROM agent_slots WHERE challenge_id = ? AND agent_id = ?",
                (challenge.challenge_id, agent_id),
            ):
                if r["group_name"] in grid and r["slot_name"] in grid[r["group_name"]]:
                    grid[r["group_name"]][r["slot_name"]] = r["value"]
            complete = bool(row["complete"])
            current = row["current_progress"]

        return AgentProgress(
            challenge_id=challenge.challenge_id,
            agent_id=agent_id,
            bungie_id=row["bungie_id"],
            display_name=row["display_name"],
            unlocked_fragments=fragments,
            grid=grid,
            current_progress=current,
            complete=complete,
            last_updated=datetime.fromisoformat(row["last_updated"]),
            failed_attempts=attempts,
        )

    def get(self, challenge_id: str, agent_id: str) -> AgentProgress | None:
        return self._load(self.catalog.get(challenge_id), agent_id)

    def get_or_create(self, challenge_id: str, agent: AgentIdentity) -> AgentProgress:
        challenge = self.catalog.get(challenge_id)
        self.ensure_grid(challenge)
        with self.atomic():
            blank = self.blank(challenge, agent)
            self.conn.execute(
                """
                INSERT OR IGNORE INTO agent_progress
                  (challenge_id, agent_id, bungie_id, display_name, current_progress, complete, last_updated)
                VALUES (?,?,?,?,?,0,?)
                """,
                (
                    challenge_id,
                    agent.agent_id,
                    agent.bungie_id,
                    agent.display_name,
                    blank.current_progress,
                    blank.last_updated.isoformat(),
                ),
            )
            if agent.bungie_id or agent.display_name:
                self.conn.execute(
                    """
                    UPDATE agent_progress
                    SET bungie_id = COALESCE(NULLIF(?, ''), bungie_id),
                        display_name = COALESCE(NULLIF(?, ''), display_name)
                    WHERE challenge_id = ? AND agent_id = ?
                    """,
                    (agent.bungie_id, agent.display_name, challenge_id, agent.agent_id),
                )
            progress = self._load_written(challenge, agent.agent_id)
        return progress

    def commit(self, challenge_id: str, progress: AgentProgress) -> AgentProgress:
        """Persist ``progress`` and return the record as now stored.

        Fragments are merged into the stored set, private slot values are
        upserted, and ``complete`` is recomputed from what is stored, so a
        commit racing another for the same agent cannot drop either update.
        """
        challenge = self.catalog.get(challenge_id)
        self.ensure_grid(challenge)
        now = utcnow()
        with self.atomic():
            self.conn.execute(
                """
                INSERT INTO agent_progress
                  (challenge_id, agent_id, bungie_id, display_name, current_progress, complete, last_updated)
                VALUES (?,?,?,?,'',0,?)
                ON CONFLICT(challenge_id, agent_id) DO UPDATE SET
                  bungie_id = excluded.bungie_id,
                  display_name = excluded.display_name,
                  last_updated = excluded.last_updated
                """,
                (challenge_id, progress.agent_id, progress.bungie_id, progress.display_name, now.isoformat()),
            )
            self.conn.executemany(
                "INSERT OR IGNORE INTO unlocked_fragments(challenge_id, agent_id, fragment_id, unlocked_at) VALUES (?,?,?,?)",
                [(challenge_id, progress.agent_id, fid, now.isoformat()) for fid in sorted(progress.unlocked_fragments)],
            )

            if challenge.is_shared:
                grid = self.shared_grid(challenge)
                complete = grid_is_full(grid)
            else:
                self.conn.executemany(
                    """
                    INSERT OR REPLACE INTO agent_slots(challenge_id, agent_id, group_name, slot_name, value)
                    VALUES (?,?,?,?,?)
                    """,
                    [
                        (challenge_id, progress.agent_id, group, slot, value)
                        for group, row in progress.grid.items()
                        for slot, value in row.items()
                        if value
                    ],
                )
                stored = self._load_written(challenge, progress.agent_id)
                grid = stored.grid
                complete = challenge.required_fragments <= stored.unlocked_fragments

            self.conn.execute(
                """
                UPDATE agent_progress
                SET current_progress = ?, complete = MAX(complete, ?)
                WHERE challenge_id = ? AND agent_id = ?
                """,
                (render_partial(grid, challenge.code_format), int(complete), challenge_id, progress.agent_id),
            )
            refreshed = self._load_written(challenge, progress.agent_id)
        return refreshed

    def list_for_agent(self, agent_id: str) -> list[AgentProgress]:
        rows = fetch_all(
            self.conn,
            "SELECT challenge_id FROM agent_progress WHERE agent_id = ? ORDER BY challenge_id",
            (agent_id,),
        )
        out: list[AgentProgress] = []
        for r in rows:
            if r["challenge_id"] not in self.catalog:
                continue
            progress = self._load(self.catalog.get(r["challenge_id"]), agent_id)
            if progress is not None:
                out.append(progress)
        return out

    # -- attempts and rewards ----------------------------------------------

    def record_failed_attempt(self, challenge_id: str, agent: AgentIdentity, index: int) -> int:
        with self.atomic():
            self.get_or_create(challenge_id, agent)
            self.conn.execute(
                """
                INSERT INTO failed_attempts(challenge_id, agent_id, sub_index, count) VALUES (?,?,?,1)
                ON CONFLICT(challenge_id, agent_id, sub_index) DO UPDATE SET count = count + 1
                """,
                (challenge_id, agent.agent_id, index),
            )
            row = fetch_one(
                self.conn,
                "SELECT count FROM failed_attempts WHERE challenge_id = ? AND agent_id = ? AND sub_index = ?",
                (challenge_id, agent.agent_id, index),
            )
        return int(row["count"])

    def failed_attempts(self, challenge_id: str, agent_id: str, index: int) -> int:
        row = fetch_one(
            self.conn,
            "SELECT count FROM failed_attempts WHERE challenge_id = ? AND agent_id = ? AND sub_index = ?",
            (challenge_id, agent_id, index),
        )
        return int(row["count"]) if row else 0

    def claim_reward(self, challenge_id: str, agent_id: str, reward_key: str, reward_id: str) -> bool:
        """Reserve a reward for dispatch. True only the first time for this key."""
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO reward_ledger(challenge_id, agent_id, reward_key, reward_id, claimed_at)
            VALUES (?,?,?,?,?)
            """,
            (challenge_id, agent_id, reward_key, reward_id, utcnow().isoformat()),
        )
        return cur.rowcount == 1

    def mark_reward(self, challenge_id: str, agent_id: str, reward_key: str, status: str) -> None:
        with self.atomic():
            self.conn.execute(
                "UPDATE reward_ledger SET status = ? WHERE challenge_id = ? AND agent_id = ? AND reward_key = ?",
                (status, challenge_id, agent_id, reward_key),
            )

    def rewards(self, status: str | None = None) -> list[dict]:
        sql = "SELECT challenge_id, agent_id, reward_key, reward_id, status, claimed_at FROM reward_ledger"
        params: tuple = ()
        if status:
            sql += " WHERE status = ?"
            params = (status,)
        return [dict(r) for r in fetch_all(self.conn, sql + " ORDER BY claimed_at", params)]
