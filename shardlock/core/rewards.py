from __future__ import annotations

import logging
from typing import Protocol

from shardlock.core.audit import append_audit
from shardlock.core.errors import RewardDispatchFailed
from shardlock.core.models import AgentIdentity


logger = logging.getLogger(__name__)


class RewardDispatcher(Protocol):
    def dispatch(self, agent: AgentIdentity, reward_id: str) -> None: ...


class AuditRewardDispatcher:
    """Records rewards in the audit log; the badge/emblem service reads them from there."""

    def __init__(self, audit_path: str | None):
        self.audit_path = audit_path

    def dispatch(self, agent: AgentIdentity, reward_id: str) -> None:
        append_audit(
            {
                "event": "reward_dispatch",
                "agent": agent.agent_id,
                "bungie_id": agent.bungie_id,
                "reward_id": reward_id,
            },
            self.audit_path,
        )


def dispatch_with_retry(
    dispatcher: RewardDispatcher,
    agent: AgentIdentity,
    reward_id: str,
    retries: int = 1,
) -> None:
    attempts = max(retries, 0) + 1
    for attempt in range(1, attempts + 1):
        try:
            dispatcher.dispatch(agent, reward_id)
            return
        except Exception as e:
            if attempt == attempts:
                raise RewardDispatchFailed(reward_id, e) from e
            logger.warning(
                "reward %s for %s failed (attempt %d/%d): %s",
                reward_id,
                agent.agent_id,
                attempt,
                attempts,
                e,
            )
