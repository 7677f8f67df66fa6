"""Session state machine — quote, commit, reveal, finalize.

Lifecycle: none -> active -> finalized. Finalized is terminal.

Every operation validates and derives its result before the first write,
so a raised error leaves the session exactly as it was. Each session has
its own lock; operations on different sessions run in parallel.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from hidesis.crypto.seed_vault import SeedVault
from hidesis.engine.calibration import CalibrationController
from hidesis.engine.locks import KeyedLocks
from hidesis.engine.quote_calculator import QuoteCalculator
from hidesis.engine.turn_ledger import TurnLedger
from hidesis.errors import (
    InvalidChoiceError,
    NoOutstandingQuoteError,
    SchemaVersionError,
    SessionFinalizedError,
    SessionNotFoundError,
)
from hidesis.identity.wallet import WalletValidator
from hidesis.models.session import (
    SCHEMA_VERSION,
    Outcome,
    OutcomeClass,
    Quote,
    ReasonCode,
    Session,
    SessionStatus,
    SessionSummary,
    TrustMode,
)
from hidesis.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


class SessionStateMachine:
    """Owns the session arena and drives every session transition.

    Usage:
        machine = SessionStateMachine(resolver, vault, calibration)
        session = machine.start_session(None, "guest")
        quote = machine.quote_turn(session.session_id)
        outcome = machine.commit_turn(session.session_id, quote.options[0].choice_id)
        summary = machine.finalize_session(session.session_id)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        vault: SeedVault,
        calibration: CalibrationController,
        calculator: Optional[QuoteCalculator] = None,
        wallets: Optional[WalletValidator] = None,
    ) -> None:
        self._resolver = resolver
        self._vault = vault
        self._calibration = calibration
        self._calculator = calculator or QuoteCalculator(resolver)
        self._wallets = wallets or WalletValidator()
        self._sessions: dict[str, Session] = {}
        self._arena_lock = threading.Lock()
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Arena
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        with self._arena_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def sessions(self) -> list[Session]:
        with self._arena_lock:
            return list(self._sessions.values())

    def register(self, session: Session) -> None:
        """Add an existing session (e.g. loaded from the state store)."""
        with self._arena_lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session already registered: {session.session_id}")
            self._sessions[session.session_id] = session

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[Session]:
        """Hold a session's lock across several calls."""
        session = self.get_session(session_id)
        with self._locks.hold(session_id):
            yield session

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start_session(
        self,
        wallet: Optional[str],
        mode: TrustMode | str,
        now: Optional[datetime] = None,
    ) -> Session:
        """Create an active session with an empty ledger and a fresh seed."""
        trust_mode = TrustMode.parse(mode)
        canonical_wallet = self._wallets.resolve(wallet, trust_mode)
        session_id = f"HS-{uuid.uuid4().hex}"

        commitment = self._vault.issue(session_id)
        session = Session(
            session_id=session_id,
            mode=trust_mode,
            seed_commitment=commitment,
            turns=TurnLedger(),
            schema_version=SCHEMA_VERSION,
            wallet=canonical_wallet,
            created_utc=now or datetime.now(timezone.utc),
        )
        try:
            self.register(session)
        except ValueError:
            self._vault.discard(session_id)
            raise
        logger.debug("session %s started mode=%s", session_id, trust_mode.value)
        return session

    def quote_turn(self, session_id: str) -> Quote:
        """Quote the next turn, or return the outstanding quote unchanged."""
        session = self.get_session(session_id)
        with self._locks.hold(session_id):
            self._require_active(session)
            pending = session.turns.outstanding()
            if pending is not None:
                return pending.quote

            turn_index = session.turns.next_index
            self._vault.ensure_capacity(turn_index)
            bias = self._calibration.bias_for(session.mode)
            quote = self._calculator.compute_quote(session, bias)
            session.turns.append(quote)
            logger.debug(
                "session %s quoted turn %d bias=%+.4f", session_id, turn_index, bias,
            )
            return quote

    def commit_turn(self, session_id: str, choice_id: int) -> Outcome:
        """Commit a choice against the outstanding quote and reveal the outcome."""
        session = self.get_session(session_id)
        with self._locks.hold(session_id):
            self._require_active(session)
            turn = session.turns.outstanding()
            if turn is None:
                raise NoOutstandingQuoteError(
                    f"Session {session_id} has no outstanding quote; request a quote first"
                )
            valid = isinstance(choice_id, int) and not isinstance(choice_id, bool)
            if not valid or turn.quote.option(choice_id) is None:
                raise InvalidChoiceError(
                    f"Choice {choice_id!r} not in quote for turn {turn.index} "
                    f"(quoted: {list(turn.quote.choice_ids)})"
                )

            outcome = self._vault.reveal_outcome(
                session_id, turn.index, choice_id, turn.quote,
            )
            session.turns.record_commit(choice_id, outcome)
            self._calibration.record_outcome(session.mode, outcome)
            logger.debug(
                "session %s committed turn %d choice=%d realized=%d cleared=%s",
                session_id, turn.index, choice_id, outcome.realized_choice_id, outcome.cleared,
            )
            return outcome

    def finalize_session(
        self,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> SessionSummary:
        """Finalize a session. Repeat calls return the stored summary."""
        session = self.get_session(session_id)
        with self._locks.hold(session_id):
            if session.summary is not None:
                return session.summary
            if session.schema_version > SCHEMA_VERSION:
                raise SchemaVersionError(
                    f"Session {session_id} has schema_version {session.schema_version}; "
                    f"this build supports up to {SCHEMA_VERSION}"
                )

            self._vault.seal(session_id)
            summary = summarize(session, self._vault.disclose(session_id))
            session.status = SessionStatus.FINALIZED
            session.finalized_utc = now or datetime.now(timezone.utc)
            session.summary = summary
            logger.debug(
                "session %s finalized turns=%d clears=%d",
                session_id, summary.turn_count, summary.clears,
            )
            return summary

    def _require_active(self, session: Session) -> None:
        if session.is_finalized:
            raise SessionFinalizedError(f"Session {session.session_id} is finalized")


def summarize(session: Session, revealed_seed: str) -> SessionSummary:
    """Deterministic summary of a session's ledger. Reads only."""
    committed = session.turns.committed_turns()
    outcomes = [t.outcome for t in committed if t.outcome is not None]

    counts = {c.value: 0 for c in OutcomeClass}
    for o in outcomes:
        counts[o.classification.value] += 1

    first_clear: Optional[int] = next((o.turn_index for o in outcomes if o.cleared), None)
    pending = session.turns.outstanding() is not None

    reasons: list[str] = []
    if not outcomes:
        reasons.append(ReasonCode.NO_TURNS.value)
    elif outcomes[0].cleared:
        reasons.append(ReasonCode.FIRST_TRY_CLEAR.value)
    elif first_clear is not None:
        reasons.append(ReasonCode.CLEARED.value)
    else:
        reasons.append(ReasonCode.NO_CLEAR.value)
    if pending:
        reasons.append(ReasonCode.PENDING_QUOTE_DISCARDED.value)

    return SessionSummary(
        session_id=session.session_id,
        mode=session.mode,
        wallet=session.wallet,
        schema_version=session.schema_version,
        turn_count=len(outcomes),
        clears=sum(1 for o in outcomes if o.cleared),
        first_clear_index=first_clear,
        total_payoff=sum(o.payoff for o in outcomes),
        classification_counts=counts,
        pending_quote_discarded=pending,
        reason_codes=tuple(reasons),
        seed_commitment=session.seed_commitment,
        revealed_seed=revealed_seed,
    )
