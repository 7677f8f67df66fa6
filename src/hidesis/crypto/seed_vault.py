"""Seed vault — session seeds, public commitments, and outcome reveal.

At session start the vault draws a secret seed S and publishes the
commitment C = sha256(S). Each committed turn's outcome is a pure
function of (S, session_id, turn_index, quote):

    u = int(sha256("hidesis/turn" | S | session_id | turn_index)[:8]) / 2**64

and u is mapped through the quote's cumulative distribution. No live
entropy is consumed at commit time, so a retried commit re-derives the
identical outcome and an auditor holding S can replay every turn.

The seed is held only here. Quotes are computed without it, and it is
disclosed only after the session is finalized.
"""

from __future__ import annotations

import hashlib
import secrets
import threading
from typing import Callable, Optional

from hidesis.errors import (
    InvalidChoiceError,
    SeedDisclosureError,
    SeedExhaustionError,
    SessionNotFoundError,
)
from hidesis.models.session import Outcome, OutcomeClass, Quote, QuoteOption


SEED_BYTES = 32
_DRAW_DOMAIN = b"hidesis/turn"
_DRAW_SCALE = float(1 << 64)


def commit_seed(seed: bytes) -> str:
    """Return the public commitment for a seed."""
    return f"sha256:{hashlib.sha256(seed).hexdigest()}"


def derive_draw(seed: bytes, session_id: str, turn_index: int) -> float:
    """Derive the uniform draw in [0, 1) for one turn."""
    h = hashlib.sha256()
    h.update(_DRAW_DOMAIN)
    h.update(b"|")
    h.update(seed)
    h.update(b"|")
    h.update(session_id.encode("utf-8"))
    h.update(b"|")
    h.update(turn_index.to_bytes(4, "big"))
    return int.from_bytes(h.digest()[:8], "big") / _DRAW_SCALE


def realize_option(quote: Quote, draw: float) -> QuoteOption:
    """Cumulative-distribution lookup of the realised option."""
    cumulative = 0.0
    for option in quote.options:
        cumulative += option.weight
        if draw < cumulative:
            return option
    # Rounding can leave the cumulative sum a hair under 1.0.
    return quote.options[-1]


def resolve_outcome(seed: bytes, quote: Quote, choice_id: int) -> Outcome:
    """Pure outcome derivation for a committed choice."""
    if quote.option(choice_id) is None:
        raise InvalidChoiceError(
            f"Choice {choice_id} not in quote for turn {quote.turn_index} "
            f"(quoted: {list(quote.choice_ids)})"
        )
    draw = derive_draw(seed, quote.session_id, quote.turn_index)
    realized = realize_option(quote, draw)
    return Outcome(
        turn_index=quote.turn_index,
        choice_id=choice_id,
        realized_choice_id=realized.choice_id,
        classification=realized.classification,
        cleared=realized.classification == OutcomeClass.CLEAR,
        matched=realized.choice_id == choice_id,
        payoff=realized.payoff,
        draw=draw,
    )


class SeedVault:
    """Holds per-session secret seeds.

    Usage:
        vault = SeedVault(max_turns=64)
        commitment = vault.issue("HS-abc")
        outcome = vault.reveal_outcome("HS-abc", 0, choice_id=2, quote=quote)
        vault.seal("HS-abc")          # on finalize
        seed_hex = vault.disclose("HS-abc")
    """

    def __init__(
        self,
        max_turns: int,
        entropy: Callable[[int], bytes] = secrets.token_bytes,
    ) -> None:
        if max_turns <= 0:
            raise ValueError(f"max_turns must be > 0, got {max_turns}")
        self._max_turns = max_turns
        self._entropy = entropy
        self._seeds: dict[str, bytes] = {}
        self._sealed: set[str] = set()
        self._lock = threading.Lock()

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def issue(self, session_id: str) -> str:
        """Draw a fresh seed for a session and return its commitment."""
        seed = self._entropy(SEED_BYTES)
        if len(seed) != SEED_BYTES:
            raise ValueError(f"Entropy source returned {len(seed)} bytes, need {SEED_BYTES}")
        with self._lock:
            if session_id in self._seeds:
                raise ValueError(f"Seed already issued for session: {session_id}")
            self._seeds[session_id] = seed
        return commit_seed(seed)

    def discard(self, session_id: str) -> None:
        """Drop a seed whose session was never registered."""
        with self._lock:
            self._seeds.pop(session_id, None)
            self._sealed.discard(session_id)

    def commitment(self, session_id: str) -> str:
        return commit_seed(self._seed(session_id))

    def ensure_capacity(self, turn_index: int) -> None:
        """Raise SeedExhaustionError if turn_index is past the turn bound."""
        if turn_index >= self._max_turns:
            raise SeedExhaustionError(
                f"Turn {turn_index} exceeds the per-session bound of "
                f"{self._max_turns} turns; finalize the session"
            )

    def reveal_outcome(
        self,
        session_id: str,
        turn_index: int,
        choice_id: int,
        quote: Quote,
    ) -> Outcome:
        """Reveal the outcome of a committed turn. Pure given the inputs."""
        self.ensure_capacity(turn_index)
        if quote.session_id != session_id or quote.turn_index != turn_index:
            raise ValueError(
                f"Quote is for {quote.session_id}#{quote.turn_index}, "
                f"not {session_id}#{turn_index}"
            )
        return resolve_outcome(self._seed(session_id), quote, choice_id)

    # ------------------------------------------------------------------
    # Disclosure
    # ------------------------------------------------------------------

    def seal(self, session_id: str) -> None:
        """Mark a session finalized; its seed becomes disclosable."""
        self._seed(session_id)
        with self._lock:
            self._sealed.add(session_id)

    def is_sealed(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sealed

    def disclose(self, session_id: str) -> str:
        """Return the hex seed of a finalized session."""
        seed = self._seed(session_id)
        if not self.is_sealed(session_id):
            raise SeedDisclosureError(
                f"Seed for {session_id} cannot be disclosed while the session is active"
            )
        return seed.hex()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> dict[str, dict[str, object]]:
        """Snapshot for the state store: {session_id: {seed, sealed}}."""
        with self._lock:
            return {
                sid: {"seed": seed.hex(), "sealed": sid in self._sealed}
                for sid, seed in self._seeds.items()
            }

    def restore_state(self, state: dict[str, dict[str, object]]) -> None:
        """Load seeds from a snapshot, verifying nothing is overwritten."""
        with self._lock:
            for sid, entry in state.items():
                if sid in self._seeds:
                    raise ValueError(f"Seed already loaded for session: {sid}")
                self._seeds[sid] = bytes.fromhex(str(entry["seed"]))
                if entry.get("sealed"):
                    self._sealed.add(sid)

    def _seed(self, session_id: str) -> bytes:
        with self._lock:
            seed: Optional[bytes] = self._seeds.get(session_id)
        if seed is None:
            raise SessionNotFoundError(f"No seed issued for session: {session_id}")
        return seed
