"""Append-only turn ledger for one session."""

from __future__ import annotations

from typing import Iterator, Optional

from hidesis.models.session import Outcome, Quote, Turn


class TurnLedger:
    """Ordered turns with at most one outstanding (uncommitted) quote.

    Turns are appended with a quote and later committed exactly once,
    at which point choice and outcome are written together. Nothing is
    ever removed or rewritten.
    """

    def __init__(self, turns: Optional[list[Turn]] = None) -> None:
        self._turns: list[Turn] = []
        for turn in turns or []:
            self._restore(turn)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]

    @property
    def next_index(self) -> int:
        return len(self._turns)

    def latest(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def outstanding(self) -> Optional[Turn]:
        """The last turn if it is still waiting for a commit."""
        last = self.latest()
        if last is not None and not last.committed:
            return last
        return None

    def append(self, quote: Quote) -> Turn:
        if self.outstanding() is not None:
            raise ValueError("Cannot append a quote while another is outstanding")
        if quote.turn_index != self.next_index:
            raise ValueError(
                f"Quote turn_index {quote.turn_index} != next index {self.next_index}"
            )
        turn = Turn(index=quote.turn_index, quote=quote)
        self._turns.append(turn)
        return turn

    def record_commit(self, choice_id: int, outcome: Outcome) -> Turn:
        turn = self.outstanding()
        if turn is None:
            raise ValueError("No outstanding turn to commit")
        if outcome.turn_index != turn.index or outcome.choice_id != choice_id:
            raise ValueError("Outcome does not belong to the outstanding turn")
        turn.choice_id = choice_id
        turn.outcome = outcome
        return turn

    def committed_turns(self) -> list[Turn]:
        return [t for t in self._turns if t.committed]

    def _restore(self, turn: Turn) -> None:
        if turn.index != len(self._turns):
            raise ValueError(f"Turn index {turn.index} out of order at {len(self._turns)}")
        if self._turns and not self._turns[-1].committed:
            raise ValueError(f"Uncommitted turn {self._turns[-1].index} is not the last turn")
        if (turn.choice_id is None) != (turn.outcome is None):
            raise ValueError(f"Turn {turn.index} has a choice without an outcome")
        self._turns.append(turn)
