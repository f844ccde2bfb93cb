from __future__ import annotations

from shardlock.core.catalog import Catalog
from shardlock.core.errors import ValidationFailed
from shardlock.core.models import ValidationResult


class FragmentValidator:
    """Checks answers against a sub-challenge's expected output.

    Stateless: a match only reports which fragments and reward it earns. The
    caller applies the unlock, so a retried submission validates the same way.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def validate(
        self,
        challenge_id: str,
        index: int,
        agent_id: str,
        submitted_answer: str,
    ) -> ValidationResult:
        challenge, sub = self.catalog.resolve(challenge_id, index)
        policy = challenge.answer_policy
        if policy.normalize(submitted_answer) != policy.normalize(sub.expected_output):
            raise ValidationFailed(challenge_id, index)
        return ValidationResult(fragment_ids=sub.fragment_ids, reward_id=sub.reward_id)

    def hints(self, challenge_id: str, index: int, failed_attempts: int) -> list[str]:
        challenge, sub = self.catalog.resolve(challenge_id, index)
        if not challenge.hint_policy.attempt_gated:
            return list(sub.hint_lines)
        shown = min(max(failed_attempts, 0), len(sub.hint_lines))
        return list(sub.hint_lines[:shown])
