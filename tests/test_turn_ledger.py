"""Tests for the turn ledger — append-only, one outstanding quote, atomic commit."""

import pytest

from hidesis.engine.turn_ledger import TurnLedger
from hidesis.models.session import Outcome, OutcomeClass, Quote, QuoteOption, TrustMode, Turn


def _quote(index: int) -> Quote:
    options = (
        QuoteOption(1, "a", 0.5, OutcomeClass.CLEAR, 100),
        QuoteOption(2, "b", 0.5, OutcomeClass.EXPOSED, 0),
    )
    return Quote.create("HS-1", index, TrustMode.GUEST, options, 0.0)


def _outcome(index: int, choice_id: int = 1) -> Outcome:
    return Outcome(
        turn_index=index, choice_id=choice_id, realized_choice_id=2,
        classification=OutcomeClass.EXPOSED, cleared=False, matched=choice_id == 2,
        payoff=0, draw=0.75,
    )


class TestAppend:
    def test_empty(self) -> None:
        ledger = TurnLedger()
        assert len(ledger) == 0
        assert ledger.latest() is None
        assert ledger.outstanding() is None

    def test_append_makes_outstanding(self) -> None:
        ledger = TurnLedger()
        turn = ledger.append(_quote(0))
        assert ledger.outstanding() is turn
        assert turn.choice_id is None and turn.outcome is None

    def test_second_outstanding_rejected(self) -> None:
        ledger = TurnLedger()
        ledger.append(_quote(0))
        with pytest.raises(ValueError):
            ledger.append(_quote(1))

    def test_index_must_be_next(self) -> None:
        ledger = TurnLedger()
        with pytest.raises(ValueError):
            ledger.append(_quote(3))


class TestCommit:
    def test_commit_writes_choice_and_outcome_together(self) -> None:
        ledger = TurnLedger()
        ledger.append(_quote(0))
        turn = ledger.record_commit(1, _outcome(0))
        assert turn.choice_id == 1
        assert turn.outcome == _outcome(0)
        assert ledger.outstanding() is None
        assert ledger.committed_turns() == [turn]

    def test_commit_without_outstanding_rejected(self) -> None:
        with pytest.raises(ValueError):
            TurnLedger().record_commit(1, _outcome(0))

    def test_mismatched_outcome_rejected(self) -> None:
        ledger = TurnLedger()
        ledger.append(_quote(0))
        with pytest.raises(ValueError):
            ledger.record_commit(2, _outcome(0, choice_id=1))
        assert ledger.outstanding() is not None
        assert ledger[0].choice_id is None

    def test_turns_strictly_increasing(self) -> None:
        ledger = TurnLedger()
        for i in range(5):
            ledger.append(_quote(i))
            ledger.record_commit(1, _outcome(i))
        assert [t.index for t in ledger] == [0, 1, 2, 3, 4]
        assert ledger.next_index == 5


class TestRestore:
    def test_restore_valid(self) -> None:
        turns = [
            Turn(0, _quote(0), 1, _outcome(0)),
            Turn(1, _quote(1)),
        ]
        ledger = TurnLedger(turns)
        assert len(ledger) == 2
        assert ledger.outstanding() is turns[1]

    def test_restore_rejects_gap(self) -> None:
        with pytest.raises(ValueError):
            TurnLedger([Turn(1, _quote(1))])

    def test_restore_rejects_uncommitted_middle(self) -> None:
        with pytest.raises(ValueError):
            TurnLedger([Turn(0, _quote(0)), Turn(1, _quote(1))])

    def test_restore_rejects_choice_without_outcome(self) -> None:
        with pytest.raises(ValueError):
            TurnLedger([Turn(0, _quote(0), choice_id=1)])
