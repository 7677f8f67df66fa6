"""State store — JSON-based persistence for engine runtime state.

Stores and recovers:
- Sessions, with their turn ledgers in turn order
- Worlds and their member lists
- Calibration counters and biases per trust mode
- Session seeds and their disclosure state

This is a simple file-based store suitable for single-node deployment.
The seed section is secret material; keep the file out of any
participant-visible location.
"""

from __future__ import annotations

import json
from contextlib import AbstractContextManager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from hidesis.engine.turn_ledger import TurnLedger
from hidesis.models.session import (
    Outcome,
    OutcomeClass,
    Quote,
    QuoteOption,
    Session,
    SessionStatus,
    SessionSummary,
    TrustMode,
    Turn,
)
from hidesis.models.world import ModeBreakdown, WorldSession, WorldSummary


_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class StateStore:
    """JSON file-based state persistence.

    Usage:
        store = StateStore(Path("data/hide_sis_state.json"))
        store.save_snapshot(sessions, worlds, calibration.snapshot(), vault.export_state())

        # On recovery:
        sessions = store.load_sessions()
        worlds = store.load_worlds()
        snapshot = store.load_calibration()
        seeds = store.load_seeds()
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path
        self._state: dict[str, Any] = {}
        if storage_path.exists():
            self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            self._state = json.load(f)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(self._state, f, indent=2, sort_keys=True, ensure_ascii=False)

    def save_snapshot(
        self,
        sessions: list[Session],
        worlds: list[WorldSession],
        calibration: dict[str, dict[str, Any]],
        seeds: dict[str, dict[str, Any]],
        hold: Optional[Callable[[str], AbstractContextManager]] = None,
    ) -> None:
        """Replace the full state in one write.

        hold(session_id), when given, is entered around each session's
        serialisation so a concurrent transition is never half-captured.
        """
        rows = []
        for s in sessions:
            with hold(s.session_id) if hold else nullcontext():
                rows.append(_session_to_dict(s))
        self._state["sessions"] = rows
        self._state["worlds"] = [_world_to_dict(w) for w in worlds]
        self._state["calibration"] = calibration
        self._state["seeds"] = seeds
        self._save()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def load_sessions(self) -> list[Session]:
        return [_session_from_dict(d) for d in self._state.get("sessions", [])]

    def load_worlds(self) -> list[WorldSession]:
        return [_world_from_dict(d) for d in self._state.get("worlds", [])]

    def load_calibration(self) -> dict[str, dict[str, Any]]:
        return dict(self._state.get("calibration", {}))

    def load_seeds(self) -> dict[str, dict[str, Any]]:
        return dict(self._state.get("seeds", {}))


# ----------------------------------------------------------------------
# Serialisation helpers
# ----------------------------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(_TS_FORMAT) if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _quote_from_dict(data: dict[str, Any]) -> Quote:
    return Quote(
        session_id=data["session_id"],
        turn_index=data["turn_index"],
        mode=TrustMode(data["mode"]),
        options=tuple(
            QuoteOption(
                choice_id=o["choice_id"],
                label=o["label"],
                weight=o["weight"],
                classification=OutcomeClass(o["classification"]),
                payoff=o["payoff"],
            )
            for o in data["options"]
        ),
        bias=data["bias"],
        quote_hash=data["quote_hash"],
    )


def _outcome_from_dict(data: dict[str, Any]) -> Outcome:
    return Outcome(
        turn_index=data["turn_index"],
        choice_id=data["choice_id"],
        realized_choice_id=data["realized_choice_id"],
        classification=OutcomeClass(data["classification"]),
        cleared=data["cleared"],
        matched=data["matched"],
        payoff=data["payoff"],
        draw=data["draw"],
    )


def _summary_from_dict(data: dict[str, Any]) -> SessionSummary:
    return SessionSummary(
        session_id=data["session_id"],
        mode=TrustMode(data["mode"]),
        wallet=data["wallet"],
        schema_version=data["schema_version"],
        turn_count=data["turn_count"],
        clears=data["clears"],
        first_clear_index=data["first_clear_index"],
        total_payoff=data["total_payoff"],
        classification_counts=dict(data["classification_counts"]),
        pending_quote_discarded=data["pending_quote_discarded"],
        reason_codes=tuple(data["reason_codes"]),
        seed_commitment=data["seed_commitment"],
        revealed_seed=data["revealed_seed"],
    )


def _session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "mode": session.mode.value,
        "wallet": session.wallet,
        "schema_version": session.schema_version,
        "seed_commitment": session.seed_commitment,
        "status": session.status.value,
        "world_id": session.world_id,
        "created_utc": _ts(session.created_utc),
        "finalized_utc": _ts(session.finalized_utc),
        "turns": [
            {
                "index": t.index,
                "quote": t.quote.to_dict(),
                "choice_id": o.choice_id if o else None,
                "outcome": o.to_dict() if o else None,
            }
            for t, o in ((t, t.outcome) for t in session.turns)
        ],
        "summary": session.summary.to_dict() if session.summary else None,
    }


def _session_from_dict(data: dict[str, Any]) -> Session:
    turns = [
        Turn(
            index=t["index"],
            quote=_quote_from_dict(t["quote"]),
            choice_id=t["choice_id"],
            outcome=_outcome_from_dict(t["outcome"]) if t["outcome"] else None,
        )
        for t in data["turns"]
    ]
    return Session(
        session_id=data["session_id"],
        mode=TrustMode(data["mode"]),
        seed_commitment=data["seed_commitment"],
        turns=TurnLedger(turns),
        schema_version=data["schema_version"],
        wallet=data["wallet"],
        status=SessionStatus(data["status"]),
        world_id=data.get("world_id"),
        created_utc=_parse_ts(data.get("created_utc")),
        finalized_utc=_parse_ts(data.get("finalized_utc")),
        summary=_summary_from_dict(data["summary"]) if data.get("summary") else None,
    )


def _world_to_dict(world: WorldSession) -> dict[str, Any]:
    return {
        "world_id": world.world_id,
        "member_sessions": list(world.member_sessions),
        "finalized_utc": _ts(world.finalized_utc),
        "summary": world.summary.to_dict() if world.summary else None,
    }


def _world_from_dict(data: dict[str, Any]) -> WorldSession:
    summary = None
    s = data.get("summary")
    if s:
        summary = WorldSummary(
            world_id=s["world_id"],
            session_count=s["session_count"],
            total_turns=s["total_turns"],
            total_clears=s["total_clears"],
            total_payoff=s["total_payoff"],
            per_mode={m: ModeBreakdown(**b) for m, b in s["per_mode"].items()},
            member_session_ids=tuple(s["member_session_ids"]),
        )
    return WorldSession(
        world_id=data["world_id"],
        member_sessions=list(data["member_sessions"]),
        finalized_utc=_parse_ts(data.get("finalized_utc")),
        summary=summary,
    )
