from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from shardlock.core.codeformat import CodeFormat, SlotRef, code_matches_format, parse_code_format
from shardlock.core.config import load_yaml
from shardlock.core.errors import (
    CatalogError,
    ChallengeInactive,
    ChallengeNotFound,
    SubChallengeInactive,
    SubChallengeNotFound,
)
from shardlock.core.models import (
    AccessGroup,
    AnswerPolicy,
    Challenge,
    HintPolicy,
    SubChallenge,
)


SLOT_VALUE_MODES = {"answer", "target"}


def _str_list(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise CatalogError(f"{where} must be a string or a list of strings, got {type(value).__name__}")
    return tuple(str(v) for v in value)


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise CatalogError(f"{where} must be a mapping, got {type(value).__name__}")
    return value


def _sequence(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise CatalogError(f"{where} must be a list, got {type(value).__name__}")
    return value


def _bind_fragments(
    challenge_id: str,
    fmt: CodeFormat,
    fragment_ids: Iterable[str],
    explicit: dict[str, Any],
) -> dict[str, SlotRef]:
    bindings: dict[str, SlotRef] = {}
    owners: dict[SlotRef, str] = {}

    for fid in fragment_ids:
        if fid in bindings:
            continue
        target = explicit.get(fid)
        if target is not None:
            group, _, slot = str(target).partition(".")
            if not fmt.has_slot(group, slot):
                raise CatalogError(f"{challenge_id}: fragment {fid} bound to unknown slot {target}")
            ref = SlotRef(group, slot)
        else:
            ref = fmt.slot_for(fid)
            if ref is None:
                raise CatalogError(
                    f"{challenge_id}: fragment {fid} has no slot in {fmt.template}; "
                    "name it after a slot or bind it in fragment_slots"
                )
        if ref in owners:
            raise CatalogError(f"{challenge_id}: fragments {owners[ref]} and {fid} both bind {ref}")
        owners[ref] = fid
        bindings[fid] = ref

    unused = set(explicit) - set(bindings)
    if unused:
        raise CatalogError(f"{challenge_id}: fragment_slots names unknown fragments {sorted(unused)}")
    return bindings


def _load_sub_challenge(challenge_id: str, index: int, raw: Any) -> SubChallenge:
    where = f"{challenge_id} sub-challenge #{index}"
    if not isinstance(raw, dict):
        raise CatalogError(f"{where}: must be a mapping, got {type(raw).__name__}")
    fragment_ids = _str_list(raw.get("fragments"), f"{where}: fragments")
    if not fragment_ids:
        raise CatalogError(f"{where}: at least one fragment is required")

    groups_raw = _sequence(raw.get("groups"), f"{where}: groups")
    if not groups_raw:
        raise CatalogError(f"{where}: at least one access group is required")
    groups = []
    for g in groups_raw:
        if not isinstance(g, dict):
            raise CatalogError(f"{where}: access group must be a mapping, got {type(g).__name__}")
        code = str(g.get("access_code", "")).strip()
        if not code:
            raise CatalogError(f"{where}: access group without access_code")
        groups.append(AccessGroup(access_code=code, prompt_lines=_str_list(g.get("prompt"), f"{where}: prompt")))

    expected = str(raw.get("expected_output", ""))
    if not expected.strip():
        raise CatalogError(f"{where}: expected_output is required")
    reward_id = str(raw.get("reward_id", "")).strip()
    if not reward_id:
        raise CatalogError(f"{where}: reward_id is required")
    challenge_type = str(raw.get("type", "")).strip()
    if not challenge_type:
        raise CatalogError(f"{where}: type is required")

    return SubChallenge(
        fragment_ids=fragment_ids,
        challenge_type=challenge_type,
        groups=tuple(groups),
        expected_output=expected,
        reward_id=reward_id,
        hint_lines=_str_list(raw.get("hints"), f"{where}: hints"),
        is_active=bool(raw.get("active", True)),
    )


def load_challenge(data: Any) -> Challenge:
    """Build a Challenge from its YAML/dict form, validating the whole shape."""
    data = _mapping(data, "challenge file")
    head = _mapping(data.get("challenge"), "challenge")
    challenge_id = str(head.get("id", "")).strip()
    if not challenge_id:
        raise CatalogError("challenge.id is required")
    title = str(head.get("title", "")).strip()
    if not title:
        raise CatalogError(f"{challenge_id}: challenge.title is required")

    fmt = parse_code_format(head.get("code_format", "AAA-BBB-CCC"))

    target_code = str(head.get("target_code", "") or "").strip()
    if target_code and not code_matches_format(target_code, fmt):
        raise CatalogError(f"{challenge_id}: target_code {target_code} does not match {fmt.template}")

    slot_value = str(head.get("slot_value", "answer"))
    if slot_value not in SLOT_VALUE_MODES:
        raise CatalogError(f"{challenge_id}: slot_value must be one of {sorted(SLOT_VALUE_MODES)}")
    if slot_value == "target" and not target_code:
        raise CatalogError(f"{challenge_id}: slot_value=target needs a target_code")

    subs_raw = _sequence(data.get("sub_challenges"), f"{challenge_id}: sub_challenges")
    if not subs_raw:
        raise CatalogError(f"{challenge_id}: at least one sub-challenge is required")
    subs = tuple(_load_sub_challenge(challenge_id, i, raw) for i, raw in enumerate(subs_raw))

    all_fragments = [fid for sub in subs for fid in sub.fragment_ids]
    explicit = _mapping(data.get("fragment_slots"), f"{challenge_id}: fragment_slots")
    fragment_slots = _bind_fragments(challenge_id, fmt, all_fragments, explicit)

    answers = _mapping(data.get("answers"), f"{challenge_id}: answers")
    hints = _mapping(data.get("hints"), f"{challenge_id}: hints")

    return Challenge(
        challenge_id=challenge_id,
        title=title,
        description=str(head.get("description", "") or "").strip(),
        target_code=target_code,
        code_format=fmt,
        is_shared=bool(head.get("shared", False)),
        is_active=bool(head.get("active", True)),
        sub_challenges=subs,
        fragment_slots=fragment_slots,
        answer_policy=AnswerPolicy(
            case_sensitive=bool(answers.get("case_sensitive", True)),
            strip=bool(answers.get("strip", True)),
            collapse_whitespace=bool(answers.get("collapse_whitespace", False)),
        ),
        hint_policy=HintPolicy(attempt_gated=bool(hints.get("attempt_gated", True))),
        slot_value=slot_value,
        completion_reward_id=str(head.get("completion_reward_id", "") or "").strip(),
    )


def load_challenge_file(path: str | Path) -> Challenge:
    return load_challenge(load_yaml(path))


class Catalog:
    """Read-mostly set of challenge definitions, keyed by challenge id."""

    def __init__(self, challenges: Iterable[Challenge] = ()):
        self._challenges: dict[str, Challenge] = {}
        for challenge in challenges:
            self.add(challenge)

    @classmethod
    def from_files(cls, paths: Iterable[str | Path]) -> "Catalog":
        return cls(load_challenge_file(p) for p in paths)

    def add(self, challenge: Challenge) -> None:
        if challenge.challenge_id in self._challenges:
            raise CatalogError(f"duplicate challenge id {challenge.challenge_id}")
        self._challenges[challenge.challenge_id] = challenge

    def __contains__(self, challenge_id: str) -> bool:
        return challenge_id in self._challenges

    def __iter__(self):
        return iter(self._challenges.values())

    def get(self, challenge_id: str) -> Challenge:
        try:
            return self._challenges[challenge_id]
        except KeyError:
            raise ChallengeNotFound(challenge_id) from None

    def active(self) -> list[Challenge]:
        return [c for c in self._challenges.values() if c.is_active]

    def resolve(self, challenge_id: str, index: int) -> tuple[Challenge, SubChallenge]:
        """Return an active challenge and one of its active sub-challenges."""
        challenge = self.get(challenge_id)
        if not challenge.is_active:
            raise ChallengeInactive(challenge_id)
        if index < 0 or index >= len(challenge.sub_challenges):
            raise SubChallengeNotFound(challenge_id, index)
        sub = challenge.sub_challenges[index]
        if not sub.is_active:
            raise SubChallengeInactive(challenge_id, index)
        return challenge, sub
