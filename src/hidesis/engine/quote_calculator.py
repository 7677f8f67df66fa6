"""Quote calculator — the published odds for the next turn.

A quote is built from three inputs, none of them secret:
1. The trust mode's base distribution over the choice catalogue.
2. The turn index, which widens the distribution toward uniform.
3. The calibration bias for the mode, which moves mass onto (or off)
   the clear-classified option.

The seed is never consulted, so every weight a participant sees is the
true probability of that option being realised.
"""

from __future__ import annotations

import math

from hidesis.models.session import OutcomeClass, Quote, QuoteOption, Session, TrustMode
from hidesis.policy.resolver import PolicyResolver


class QuoteCalculator:
    """Computes the quote for a session's next turn.

    Usage:
        calculator = QuoteCalculator(resolver)
        quote = calculator.compute_quote(session, bias=calibration.bias_for(session.mode))
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._choices = resolver.choices()
        self._base = {mode: resolver.base_weights(mode) for mode in resolver.mode_targets()}
        self._floor = resolver.weight_floor()
        self._turn_policy = resolver.turn_policy()

    def compute_quote(self, session: Session, bias: float) -> Quote:
        """Quote for the next turn (index = len(session.turns))."""
        turn_index = len(session.turns)
        weights = self.weights_for(session.mode, turn_index, bias)
        options = tuple(
            QuoteOption(
                choice_id=c.choice_id,
                label=c.label,
                weight=weights[c.choice_id],
                classification=c.classification,
                payoff=c.payoff,
            )
            for c in self._choices
        )
        return Quote.create(
            session_id=session.session_id,
            turn_index=turn_index,
            mode=session.mode,
            options=options,
            bias=bias,
        )

    def weights_for(self, mode: TrustMode, turn_index: int, bias: float) -> dict[int, float]:
        """Final option weights, keyed by choice id."""
        base = self._base[mode]
        n = len(self._choices)

        lam = self._turn_policy.widening(turn_index)
        weights = {cid: (1.0 - lam) * w + lam / n for cid, w in base.items()}

        weights = self._apply_bias(weights, bias)
        return self._apply_floor(weights)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _apply_bias(self, weights: dict[int, float], bias: float) -> dict[int, float]:
        clear_id = next(
            c.choice_id for c in self._choices if c.classification == OutcomeClass.CLEAR
        )
        others = {cid: w for cid, w in weights.items() if cid != clear_id}
        other_mass = math.fsum(others.values())

        clear = min(max(weights[clear_id] + bias, 0.0), 1.0)
        remaining = 1.0 - clear

        result = {clear_id: clear}
        if other_mass > 0.0:
            for cid, w in others.items():
                result[cid] = remaining * w / other_mass
        else:
            for cid in others:
                result[cid] = remaining / len(others)
        return result

    def _apply_floor(self, weights: dict[int, float]) -> dict[int, float]:
        floor = self._floor
        pinned: set[int] = set()
        # Each pass pins at least one more option, so N + 1 passes suffice.
        for _ in range(len(weights) + 1):
            below = {cid for cid, w in weights.items() if cid not in pinned and w < floor}
            if not below:
                break
            pinned |= below
            free = {cid: w for cid, w in weights.items() if cid not in pinned}
            free_mass = math.fsum(free.values())
            remaining = 1.0 - floor * len(pinned)
            weights = {cid: floor for cid in pinned}
            for cid, w in free.items():
                weights[cid] = remaining * w / free_mass
        else:
            raise RuntimeError("Weight floor did not converge")

        # Absorb rounding residue into the largest weight.
        residue = 1.0 - math.fsum(weights.values())
        if residue:
            top = max(weights, key=weights.get)
            weights[top] += residue
        return weights
