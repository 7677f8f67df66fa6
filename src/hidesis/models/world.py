"""Open-world models — a world groups sessions that are finalized together."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class ModeBreakdown:
    """Per-trust-mode slice of a world aggregate."""
    sessions: int = 0
    turns: int = 0
    clears: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"sessions": self.sessions, "turns": self.turns, "clears": self.clears}


@dataclass(frozen=True)
class WorldSummary:
    """World-level aggregate over every member session summary."""
    world_id: str
    session_count: int
    total_turns: int
    total_clears: int
    total_payoff: int
    per_mode: dict[str, ModeBreakdown]
    member_session_ids: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_id": self.world_id,
            "session_count": self.session_count,
            "total_turns": self.total_turns,
            "total_clears": self.total_clears,
            "total_payoff": self.total_payoff,
            "per_mode": {m: b.to_dict() for m, b in sorted(self.per_mode.items())},
            "member_session_ids": list(self.member_session_ids),
        }

    def canonical_json(self) -> bytes:
        return json.dumps(
            self.to_dict(), sort_keys=True, ensure_ascii=False,
        ).encode("utf-8")


@dataclass
class WorldSession:
    """A world and its members. finalized_utc and summary are set once."""
    world_id: str
    member_sessions: list[str] = field(default_factory=list)
    finalized_utc: Optional[datetime] = None
    summary: Optional[WorldSummary] = None

    @property
    def is_finalized(self) -> bool:
        return self.summary is not None
