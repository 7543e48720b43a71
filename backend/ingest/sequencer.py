"""
Per-match acceptance sequencing.

Sequence numbers are assigned when an event is accepted, never taken from
the provider. The counter is seeded from the ledger fold, so a restarted
process continues exactly where the ledger left off.
"""
from __future__ import annotations

from shared.errors import OutOfSequenceError


class MatchSequencer:
    def __init__(self) -> None:
        self._last: dict[str, int] = {}

    def seed(self, match_id: str, last_sequence: int) -> None:
        self._last[match_id] = last_sequence

    def last(self, match_id: str) -> int:
        return self._last.get(match_id, 0)

    def peek(self, match_id: str) -> int:
        """Next number to hand out; not reserved until ``commit``."""
        return self.last(match_id) + 1

    def commit(self, match_id: str, sequence_number: int) -> None:
        expected = self.peek(match_id)
        if sequence_number != expected:
            raise OutOfSequenceError(match_id, expected, sequence_number)
        self._last[match_id] = sequence_number
