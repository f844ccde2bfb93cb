from __future__ import annotations

from shardlock.core.catalog import Catalog
from shardlock.core.errors import InvalidAccessCode


class AccessGate:
    """Reveals a sub-challenge prompt to holders of one of its access codes."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def evaluate(self, challenge_id: str, index: int, submitted_code: str) -> list[str]:
        _, sub = self.catalog.resolve(challenge_id, index)
        for group in sub.groups:
            if submitted_code == group.access_code:
                return list(group.prompt_lines)
        raise InvalidAccessCode(challenge_id, index)
