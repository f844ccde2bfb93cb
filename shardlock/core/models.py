from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from shardlock.core.codeformat import CodeFormat, FinalCode, SlotRef
from shardlock.core.errors import ConcurrentUpdateConflict


@dataclass(frozen=True)
class AgentIdentity:
    agent_id: str
    bungie_id: str = ""
    display_name: str = ""


@dataclass(frozen=True)
class AccessGroup:
    access_code: str
    prompt_lines: tuple[str, ...]


@dataclass(frozen=True)
class AnswerPolicy:
    case_sensitive: bool = True
    strip: bool = True
    collapse_whitespace: bool = False

    def normalize(self, text: str) -> str:
        value = str(text)
        if self.strip:
            value = value.strip()
        if self.collapse_whitespace:
            value = " ".join(value.split())
        if not self.case_sensitive:
            value = value.casefold()
        return value


@dataclass(frozen=True)
class HintPolicy:
    attempt_gated: bool = True


@dataclass(frozen=True)
class SubChallenge:
    fragment_ids: tuple[str, ...]
    challenge_type: str
    groups: tuple[AccessGroup, ...]
    expected_output: str
    reward_id: str
    hint_lines: tuple[str, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class Challenge:
    challenge_id: str
    title: str
    code_format: CodeFormat
    sub_challenges: tuple[SubChallenge, ...]
    fragment_slots: dict[str, SlotRef]
    description: str = ""
    target_code: str = ""
    is_shared: bool = False
    is_active: bool = True
    answer_policy: AnswerPolicy = field(default_factory=AnswerPolicy)
    hint_policy: HintPolicy = field(default_factory=HintPolicy)
    slot_value: str = "answer"
    completion_reward_id: str = ""

    @property
    def required_fragments(self) -> set[str]:
        return {fid for sub in self.sub_challenges if sub.is_active for fid in sub.fragment_ids}

    def summary(self) -> dict[str, Any]:
        """Public view: never exposes answers, access codes or the target code."""
        return {
            "challenge_id": self.challenge_id,
            "title": self.title,
            "description": self.description,
            "code_format": self.code_format.template,
            "is_shared": self.is_shared,
            "is_active": self.is_active,
            "sub_challenges": [
                {
                    "index": i,
                    "challenge_type": sub.challenge_type,
                    "fragment_ids": list(sub.fragment_ids),
                    "is_active": sub.is_active,
                    "hint_count": len(sub.hint_lines),
                }
                for i, sub in enumerate(self.sub_challenges)
            ],
        }


class ProgressState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass
class AgentProgress:
    challenge_id: str
    agent_id: str
    bungie_id: str
    display_name: str
    unlocked_fragments: set[str]
    grid: FinalCode
    current_progress: str
    complete: bool
    last_updated: datetime
    failed_attempts: dict[int, int] = field(default_factory=dict)

    @property
    def state(self) -> ProgressState:
        if self.complete:
            return ProgressState.COMPLETE
        if self.unlocked_fragments:
            return ProgressState.IN_PROGRESS
        return ProgressState.NOT_STARTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "agent_id": self.agent_id,
            "bungie_id": self.bungie_id,
            "display_name": self.display_name,
            "unlocked_fragments": sorted(self.unlocked_fragments),
            "current_progress": self.current_progress,
            "complete": self.complete,
            "state": self.state.value,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class ValidationResult:
    fragment_ids: tuple[str, ...]
    reward_id: str


@dataclass(frozen=True)
class UnlockOutcome:
    fragment_id: str
    fragment_unlocked: bool
    slot_written: bool
    challenge_complete: bool
    agent_complete: bool
    completed_now: bool = False
    conflict: ConcurrentUpdateConflict | None = None


@dataclass(frozen=True)
class AccessResult:
    prompt_lines: list[str]


@dataclass(frozen=True)
class SubmissionResult:
    fragment_unlocked: bool
    reward_id: str | None
    reward_dispatched: bool
    challenge_complete: bool
    agent_complete: bool
    slot_written: bool
    outcomes: list[UnlockOutcome]
    reward_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fragment_unlocked": self.fragment_unlocked,
            "reward_id": self.reward_id,
            "reward_dispatched": self.reward_dispatched,
            "challenge_complete": self.challenge_complete,
            "agent_complete": self.agent_complete,
            "slot_written": self.slot_written,
            "reward_error": self.reward_error,
        }
