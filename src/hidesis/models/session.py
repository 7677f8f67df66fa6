"""Session, turn, quote and outcome models.

A session is one participant's run through the engine. Every turn is
quoted before it is committed: the quote publishes the true odds over the
choice set, the participant commits one choice, and the outcome is then
revealed from the session's pre-committed seed.

Published constants:
- SCHEMA_VERSION: record schema tag copied onto every new session.
- TARGET_FIRST_CLEAR_TRUTH_RATE: the advertised first-clear rate that
  trusted modes are calibrated toward.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from hidesis.errors import InvalidModeError

if TYPE_CHECKING:
    from hidesis.engine.turn_ledger import TurnLedger


SCHEMA_VERSION = 1
TARGET_FIRST_CLEAR_TRUTH_RATE = 0.35


class TrustMode(str, enum.Enum):
    """Trust classification of a session. Immutable for its lifetime."""
    VERIFIED = "verified"
    GUEST = "guest"
    BOT_SUSPECTED = "bot_suspected"

    @classmethod
    def parse(cls, value: TrustMode | str) -> TrustMode:
        """Coerce a mode string, raising InvalidModeError if unrecognised."""
        if isinstance(value, TrustMode):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidModeError(
                f"Unknown trust mode: {value!r} "
                f"(expected one of: {', '.join(m.value for m in cls)})"
            ) from None


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    FINALIZED = "finalized"


class OutcomeClass(str, enum.Enum):
    """Classification carried by each quoted option."""
    CLEAR = "clear"  # truth surfaces on this turn
    PARTIAL = "partial"
    EXPOSED = "exposed"


class ReasonCode(str, enum.Enum):
    """Why a session summary reads the way it does."""
    FIRST_TRY_CLEAR = "FIRST_TRY_CLEAR"
    CLEARED = "CLEARED"
    NO_CLEAR = "NO_CLEAR"
    NO_TURNS = "NO_TURNS"
    PENDING_QUOTE_DISCARDED = "PENDING_QUOTE_DISCARDED"


@dataclass(frozen=True)
class QuoteOption:
    """One choice in a quote, with its realisation weight."""
    choice_id: int
    label: str
    weight: float
    classification: OutcomeClass
    payoff: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "choice_id": self.choice_id,
            "label": self.label,
            "weight": self.weight,
            "classification": self.classification.value,
            "payoff": self.payoff,
        }


@dataclass(frozen=True)
class Quote:
    """The distribution offered for one turn. Immutable once issued.

    quote_hash commits to every field that affects the outcome, so a
    transcript verifier can detect a quote edited after the fact.
    """
    session_id: str
    turn_index: int
    mode: TrustMode
    options: tuple[QuoteOption, ...]
    bias: float
    quote_hash: str

    @staticmethod
    def create(
        session_id: str,
        turn_index: int,
        mode: TrustMode,
        options: tuple[QuoteOption, ...],
        bias: float,
    ) -> Quote:
        digest = quote_digest(session_id, turn_index, mode, options, bias)
        return Quote(
            session_id=session_id,
            turn_index=turn_index,
            mode=mode,
            options=options,
            bias=bias,
            quote_hash=digest,
        )

    @property
    def choice_ids(self) -> tuple[int, ...]:
        return tuple(o.choice_id for o in self.options)

    def option(self, choice_id: int) -> Optional[QuoteOption]:
        for o in self.options:
            if o.choice_id == choice_id:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn_index": self.turn_index,
            "mode": self.mode.value,
            "options": [o.to_dict() for o in self.options],
            "bias": self.bias,
            "quote_hash": self.quote_hash,
        }


def quote_digest(
    session_id: str,
    turn_index: int,
    mode: TrustMode,
    options: tuple[QuoteOption, ...],
    bias: float,
) -> str:
    """Canonical SHA-256 over the outcome-relevant quote fields."""
    canonical = json.dumps(
        {
            "session_id": session_id,
            "turn_index": turn_index,
            "mode": mode.value,
            "options": [o.to_dict() for o in options],
            "bias": bias,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class Outcome:
    """The revealed result of a committed turn."""
    turn_index: int
    choice_id: int
    realized_choice_id: int
    classification: OutcomeClass
    cleared: bool
    matched: bool
    payoff: int
    draw: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_index": self.turn_index,
            "choice_id": self.choice_id,
            "realized_choice_id": self.realized_choice_id,
            "classification": self.classification.value,
            "cleared": self.cleared,
            "matched": self.matched,
            "payoff": self.payoff,
            "draw": self.draw,
        }


@dataclass
class Turn:
    """One ledger entry. choice_id and outcome are written together."""
    index: int
    quote: Quote
    choice_id: Optional[int] = None
    outcome: Optional[Outcome] = None

    @property
    def committed(self) -> bool:
        return self.outcome is not None


@dataclass(frozen=True)
class SessionSummary:
    """Deterministic end-of-session summary.

    Built once at finalization and stored on the session; repeated
    finalize calls return this same object.
    """
    session_id: str
    mode: TrustMode
    wallet: Optional[str]
    schema_version: int
    turn_count: int
    clears: int
    first_clear_index: Optional[int]
    total_payoff: int
    classification_counts: dict[str, int]
    pending_quote_discarded: bool
    reason_codes: tuple[str, ...]
    seed_commitment: str
    revealed_seed: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "wallet": self.wallet,
            "schema_version": self.schema_version,
            "turn_count": self.turn_count,
            "clears": self.clears,
            "first_clear_index": self.first_clear_index,
            "total_payoff": self.total_payoff,
            "classification_counts": dict(self.classification_counts),
            "pending_quote_discarded": self.pending_quote_discarded,
            "reason_codes": list(self.reason_codes),
            "seed_commitment": self.seed_commitment,
            "revealed_seed": self.revealed_seed,
        }

    def canonical_json(self) -> bytes:
        return json.dumps(
            self.to_dict(), sort_keys=True, ensure_ascii=False,
        ).encode("utf-8")


@dataclass
class Session:
    """A participant session. Mutated only by the session state machine."""
    session_id: str
    mode: TrustMode
    seed_commitment: str
    turns: TurnLedger
    schema_version: int = SCHEMA_VERSION
    wallet: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    world_id: Optional[str] = None
    created_utc: Optional[datetime] = None
    finalized_utc: Optional[datetime] = None
    summary: Optional[SessionSummary] = field(default=None, repr=False)

    @property
    def is_finalized(self) -> bool:
        return self.status == SessionStatus.FINALIZED
