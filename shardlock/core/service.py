from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable, TypeVar

from shardlock.core.assembler import CodeAssembler
from shardlock.core.audit import append_audit
from shardlock.core.catalog import Catalog
from shardlock.core.codeformat import completion_percentage, split_target_code
from shardlock.core.errors import InvalidAccessCode, PersistenceFailure, RewardDispatchFailed, ValidationFailed
from shardlock.core.gate import AccessGate
from shardlock.core.models import (
    AccessResult,
    AgentIdentity,
    AgentProgress,
    Challenge,
    SubChallenge,
    SubmissionResult,
    UnlockOutcome,
)
from shardlock.core.progress import ProgressStore
from shardlock.core.rewards import RewardDispatcher, dispatch_with_retry
from shardlock.core.validator import FragmentValidator


logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPLETION_REWARD_KEY = "complete"


class ShardService:
    """The operations the calling layer (CLI, HTTP adapter) drives."""

    def __init__(
        self,
        catalog: Catalog,
        store: ProgressStore,
        dispatcher: RewardDispatcher,
        audit_path: str | None = None,
        retries: int = 1,
    ):
        self.catalog = catalog
        self.store = store
        self.dispatcher = dispatcher
        self.audit_path = audit_path
        self.retries = retries
        self.gate = AccessGate(catalog)
        self.validator = FragmentValidator(catalog)
        self.assembler = CodeAssembler(store)

    def _audit(self, event: dict[str, Any]) -> None:
        append_audit(event, self.audit_path)

    def _persist(self, fn: Callable[[], T]) -> T:
        """Run a store unit, retrying transient SQLite errors."""
        attempt = 0
        while True:
            try:
                return fn()
            except sqlite3.OperationalError as e:
                if attempt >= self.retries:
                    raise PersistenceFailure(str(e)) from e
                attempt += 1
                logger.warning("store busy, retrying (%d/%d): %s", attempt, self.retries, e)
            except sqlite3.Error as e:
                raise PersistenceFailure(str(e)) from e

    # -- access gate -------------------------------------------------------

    def submit_access_code(
        self, challenge_id: str, index: int, agent: AgentIdentity, code: str
    ) -> AccessResult:
        try:
            lines = self.gate.evaluate(challenge_id, index, code)
        except InvalidAccessCode:
            self._audit({"event": "access_denied", "agent": agent.agent_id, "challenge_id": challenge_id, "index": index})
            raise
        self._audit({"event": "access_granted", "agent": agent.agent_id, "challenge_id": challenge_id, "index": index})
        return AccessResult(prompt_lines=lines)

    # -- answers -----------------------------------------------------------

    def _slot_value(self, challenge: Challenge, sub: SubChallenge, fragment_id: str) -> str:
        if challenge.slot_value == "target":
            ref = challenge.fragment_slots[fragment_id]
            return split_target_code(challenge.target_code, challenge.code_format)[ref.group][ref.slot]
        return sub.expected_output.strip()

    def _unlock(
        self, challenge: Challenge, sub: SubChallenge, index: int, agent: AgentIdentity
    ) -> tuple[list[UnlockOutcome], list[tuple[str, str]]]:
        cid = challenge.challenge_id
        with self.store.atomic():
            outcomes = [
                self.assembler.apply_unlock(challenge, agent, fid, self._slot_value(challenge, sub, fid))
                for fid in sub.fragment_ids
            ]
            # shared grids pay out to whoever filled the slot, private ones to every first unlock
            if challenge.is_shared:
                earned = any(o.slot_written for o in outcomes)
            else:
                earned = any(o.fragment_unlocked for o in outcomes)

            claims: list[tuple[str, str]] = []
            sub_key = f"sub:{index}"
            if earned and self.store.claim_reward(cid, agent.agent_id, sub_key, sub.reward_id):
                claims.append((sub_key, sub.reward_id))
            if (
                challenge.completion_reward_id
                and any(o.completed_now for o in outcomes)
                and self.store.claim_reward(cid, agent.agent_id, COMPLETION_REWARD_KEY, challenge.completion_reward_id)
            ):
                claims.append((COMPLETION_REWARD_KEY, challenge.completion_reward_id))
        return outcomes, claims

    def submit_answer(
        self, challenge_id: str, index: int, agent: AgentIdentity, answer: str
    ) -> SubmissionResult:
        try:
            result = self.validator.validate(challenge_id, index, agent.agent_id, answer)
        except ValidationFailed:
            attempts = self._persist(lambda: self.store.record_failed_attempt(challenge_id, agent, index))
            self._audit(
                {
                    "event": "answer_rejected",
                    "agent": agent.agent_id,
                    "challenge_id": challenge_id,
                    "index": index,
                    "attempts": attempts,
                }
            )
            raise

        challenge, sub = self.catalog.resolve(challenge_id, index)
        outcomes, claims = self._persist(lambda: self._unlock(challenge, sub, index, agent))

        for o in outcomes:
            if o.fragment_unlocked:
                self._audit(
                    {"event": "fragment_unlocked", "agent": agent.agent_id, "challenge_id": challenge_id, "fragment": o.fragment_id}
                )
            if o.conflict is not None:
                self._audit(
                    {
                        "event": "slot_conflict",
                        "agent": agent.agent_id,
                        "challenge_id": challenge_id,
                        "slot": f"{o.conflict.group}.{o.conflict.slot}",
                        "agrees": o.conflict.agrees,
                    }
                )
            if o.completed_now:
                self._audit({"event": "challenge_complete", "agent": agent.agent_id, "challenge_id": challenge_id})

        reward_id = None
        reward_dispatched = False
        reward_error = None
        for key, rid in claims:
            try:
                dispatch_with_retry(self.dispatcher, agent, rid, self.retries)
            except RewardDispatchFailed as e:
                logger.error("reward %s not delivered to %s: %s", rid, agent.agent_id, e.cause)
                self._audit(
                    {"event": "reward_dispatch_failed", "agent": agent.agent_id, "reward_id": rid, "error": str(e.cause)}
                )
                self._persist(lambda: self.store.mark_reward(challenge_id, agent.agent_id, key, "failed"))
                if key != COMPLETION_REWARD_KEY:
                    reward_id = rid
                reward_error = str(e)
                continue
            self._persist(lambda: self.store.mark_reward(challenge_id, agent.agent_id, key, "sent"))
            if key != COMPLETION_REWARD_KEY:
                reward_id = rid
                reward_dispatched = True

        last = outcomes[-1]
        return SubmissionResult(
            fragment_unlocked=any(o.fragment_unlocked for o in outcomes),
            reward_id=reward_id,
            reward_dispatched=reward_dispatched,
            challenge_complete=last.challenge_complete,
            agent_complete=last.agent_complete,
            slot_written=any(o.slot_written for o in outcomes),
            outcomes=outcomes,
            reward_error=reward_error,
        )

    def hints(self, challenge_id: str, index: int, agent: AgentIdentity) -> list[str]:
        attempts = self.store.failed_attempts(challenge_id, agent.agent_id, index)
        return self.validator.hints(challenge_id, index, attempts)

    # -- read paths --------------------------------------------------------

    def get_progress(self, challenge_id: str, agent: AgentIdentity) -> AgentProgress:
        challenge = self.catalog.get(challenge_id)
        progress = self._persist(lambda: self.store.get(challenge_id, agent.agent_id))
        if progress is None:
            return self.store.blank(challenge, agent)
        return progress

    def agent_overview(self, agent_id: str) -> list[AgentProgress]:
        return self._persist(lambda: self.store.list_for_agent(agent_id))

    def list_available(self) -> list[Challenge]:
        return self.catalog.active()

    def challenge_view(self, challenge_id: str) -> dict[str, Any]:
        challenge = self.catalog.get(challenge_id)
        view = challenge.summary()
        if challenge.is_shared:
            grid = self._persist(lambda: self.store.shared_grid(challenge))
            view["final_code"] = grid
            view["completion"] = completion_percentage(grid, challenge.code_format)
            view["is_complete"] = self.store.is_challenge_complete(challenge_id)
        return view
