from __future__ import annotations

from shardlock.core.errors import CatalogError, ConcurrentUpdateConflict
from shardlock.core.models import AgentIdentity, Challenge, UnlockOutcome
from shardlock.core.progress import ProgressStore


class CodeAssembler:
    """Writes unlocked fragments into the final-code grid.

    Shared challenges have one grid whose slots are write-once: the first
    writer wins and later writers get ``slot_written=False`` plus a
    ``ConcurrentUpdateConflict`` note. Private challenges keep a grid per
    agent which is written unconditionally.
    """

    def __init__(self, store: ProgressStore):
        self.store = store

    def apply_unlock(
        self,
        challenge: Challenge,
        agent: AgentIdentity,
        fragment_id: str,
        value: str,
    ) -> UnlockOutcome:
        ref = challenge.fragment_slots.get(fragment_id)
        if ref is None:
            raise CatalogError(f"{challenge.challenge_id}: fragment {fragment_id} is not bound to a slot")

        cid = challenge.challenge_id
        with self.store.atomic():
            progress = self.store.get_or_create(cid, agent)
            was_complete = progress.complete
            newly_unlocked = fragment_id not in progress.unlocked_fragments
            progress.unlocked_fragments.add(fragment_id)

            conflict = None
            if challenge.is_shared:
                slot_written = self.store.fill_shared_slot(cid, ref, value, agent.agent_id)
                if not slot_written:
                    conflict = ConcurrentUpdateConflict(
                        challenge_id=cid,
                        group=ref.group,
                        slot=ref.slot,
                        existing_value=self.store.shared_slot_value(cid, ref),
                        attempted_value=value,
                    )
            else:
                slot_written = progress.grid[ref.group][ref.slot] != value
                progress.grid[ref.group][ref.slot] = value

            progress = self.store.commit(cid, progress)

            if challenge.is_shared:
                challenge_complete = progress.complete
                completed_now = challenge_complete and self.store.mark_challenge_complete(cid, agent.agent_id)
            else:
                challenge_complete = False
                completed_now = progress.complete and not was_complete

        return UnlockOutcome(
            fragment_id=fragment_id,
            fragment_unlocked=newly_unlocked,
            slot_written=slot_written,
            challenge_complete=challenge_complete,
            agent_complete=progress.complete,
            completed_now=completed_now,
            conflict=conflict,
        )
