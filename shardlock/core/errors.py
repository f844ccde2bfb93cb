from __future__ import annotations

from dataclasses import dataclass


class ShardlockError(Exception):
    """Base class for errors surfaced to the calling layer."""


class CatalogError(ValueError):
    """A challenge definition is malformed."""


class ChallengeNotFound(ShardlockError):
    def __init__(self, challenge_id: str):
        super().__init__(f"Unknown challenge: {challenge_id}")
        self.challenge_id = challenge_id


class SubChallengeNotFound(ShardlockError):
    def __init__(self, challenge_id: str, index: int):
        super().__init__(f"Challenge {challenge_id} has no sub-challenge #{index}")
        self.challenge_id = challenge_id
        self.index = index


class ChallengeInactive(ShardlockError):
    def __init__(self, challenge_id: str):
        super().__init__(f"Challenge {challenge_id} is not active")
        self.challenge_id = challenge_id


class SubChallengeInactive(ShardlockError):
    def __init__(self, challenge_id: str, index: int):
        super().__init__(f"Sub-challenge #{index} of {challenge_id} is not active")
        self.challenge_id = challenge_id
        self.index = index


class InvalidAccessCode(ShardlockError):
    def __init__(self, challenge_id: str, index: int):
        super().__init__(f"Access code rejected for {challenge_id} #{index}")
        self.challenge_id = challenge_id
        self.index = index


class ValidationFailed(ShardlockError):
    def __init__(self, challenge_id: str, index: int):
        super().__init__(f"Wrong answer for {challenge_id} #{index}")
        self.challenge_id = challenge_id
        self.index = index


class RewardDispatchFailed(ShardlockError):
    def __init__(self, reward_id: str, cause: Exception):
        super().__init__(f"Reward {reward_id} could not be dispatched: {cause}")
        self.reward_id = reward_id
        self.cause = cause


class PersistenceFailure(ShardlockError):
    """The store could not complete a write; nothing from it was kept."""


@dataclass(frozen=True)
class ConcurrentUpdateConflict:
    """A shared slot was already filled when this write arrived.

    Informational only: the write degrades to a no-op.
    """

    challenge_id: str
    group: str
    slot: str
    existing_value: str
    attempted_value: str

    @property
    def agrees(self) -> bool:
        return self.existing_value == self.attempted_value
