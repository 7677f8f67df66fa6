"""Transcript verification for finalized sessions.

Given a finalized session and its disclosed seed, an auditor can check
that the seed matches the commitment published at session start, that
no quote was edited after it was issued, and that every committed
outcome is exactly the one the seed dictates.
"""

from __future__ import annotations

import math
from typing import Optional

from hidesis.crypto.seed_vault import commit_seed, resolve_outcome
from hidesis.errors import InvalidChoiceError
from hidesis.models.session import Session, quote_digest


def verify_transcript(session: Session, revealed_seed: Optional[str] = None) -> list[str]:
    """Return a list of discrepancies. Empty means the transcript verifies.

    revealed_seed defaults to the seed disclosed in the session summary.
    """
    errors: list[str] = []

    seed_hex = revealed_seed
    if seed_hex is None:
        if session.summary is None:
            return [f"{session.session_id}: session is not finalized; no seed disclosed"]
        seed_hex = session.summary.revealed_seed

    try:
        seed = bytes.fromhex(seed_hex)
    except ValueError:
        return [f"{session.session_id}: revealed seed is not valid hex"]

    if commit_seed(seed) != session.seed_commitment:
        errors.append(
            f"{session.session_id}: revealed seed does not match commitment "
            f"{session.seed_commitment}"
        )
        return errors

    for expected_index, turn in enumerate(session.turns):
        quote = turn.quote
        where = f"{session.session_id}#{turn.index}"

        if turn.index != expected_index or quote.turn_index != turn.index:
            errors.append(f"{where}: turn index out of sequence")
        if quote.session_id != session.session_id:
            errors.append(f"{where}: quote issued for {quote.session_id}")
        if quote.mode != session.mode:
            errors.append(f"{where}: quote mode {quote.mode.value} != session mode")

        recomputed = quote_digest(
            quote.session_id, quote.turn_index, quote.mode, quote.options, quote.bias,
        )
        if recomputed != quote.quote_hash:
            errors.append(f"{where}: quote hash mismatch")

        total = math.fsum(o.weight for o in quote.options)
        if not math.isclose(total, 1.0, rel_tol=0.0, abs_tol=1e-9):
            errors.append(f"{where}: quote weights sum to {total}")

        if turn.outcome is None:
            continue
        if turn.choice_id is None:
            errors.append(f"{where}: outcome recorded without a choice")
            continue
        try:
            expected = resolve_outcome(seed, quote, turn.choice_id)
        except InvalidChoiceError as e:
            errors.append(f"{where}: {e}")
            continue
        if expected != turn.outcome:
            errors.append(
                f"{where}: recorded outcome {turn.outcome.realized_choice_id} "
                f"!= derived outcome {expected.realized_choice_id}"
            )

    return errors
