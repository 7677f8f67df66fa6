"""Open-world aggregator — groups sessions into worlds and rolls them up.

A world exists once it has a member. Finalizing a world finalizes every
still-active member and folds all member summaries into one aggregate.
The aggregate is stored, and later calls return it unchanged.

Lock order is world -> session: the world lock is held while members
are finalized through the session state machine.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from hidesis.engine.locks import KeyedLocks
from hidesis.engine.session_machine import SessionStateMachine
from hidesis.errors import SchemaVersionError, WorldMembershipError, WorldNotFoundError
from hidesis.models.session import SCHEMA_VERSION, SessionSummary
from hidesis.models.world import ModeBreakdown, WorldSession, WorldSummary

logger = logging.getLogger(__name__)


class OpenWorldAggregator:
    """Tracks world membership and produces world summaries.

    Usage:
        worlds = OpenWorldAggregator(machine)
        worlds.attach("W-1", session.session_id)
        summary = worlds.finalize_open_world_session("W-1")
    """

    def __init__(self, machine: SessionStateMachine) -> None:
        self._machine = machine
        self._worlds: dict[str, WorldSession] = {}
        self._arena_lock = threading.Lock()
        self._locks = KeyedLocks()

    def get_world(self, world_id: str) -> WorldSession:
        with self._arena_lock:
            world = self._worlds.get(world_id)
        if world is None or not world.member_sessions:
            raise WorldNotFoundError(f"World has no member sessions: {world_id}")
        return world

    def worlds(self) -> list[WorldSession]:
        with self._arena_lock:
            return list(self._worlds.values())

    def register(self, world: WorldSession) -> None:
        """Add an existing world (e.g. loaded from the state store)."""
        with self._arena_lock:
            if world.world_id in self._worlds:
                raise ValueError(f"World already registered: {world.world_id}")
            self._worlds[world.world_id] = world

    @contextmanager
    def world_lock(self, world_id: str) -> Iterator[None]:
        """Hold a world's lock across several calls."""
        with self._locks.hold(world_id):
            yield

    def ensure_open(self, world_id: str) -> None:
        """Raise WorldMembershipError if world_id is blank or the world is finalized."""
        _require_world_id(world_id)
        with self._arena_lock:
            world = self._worlds.get(world_id)
        if world is not None and world.is_finalized:
            raise WorldMembershipError(f"World {world_id} is finalized")

    def attach(self, world_id: str, session_id: str) -> WorldSession:
        """Add a session to a world. Re-attaching to the same world is a no-op."""
        _require_world_id(world_id)
        session = self._machine.get_session(session_id)

        with self._arena_lock:
            world = self._worlds.setdefault(world_id, WorldSession(world_id=world_id))

        with self._locks.hold(world_id), self._machine.session_lock(session_id):
            if session.world_id == world_id:
                return world
            if session.world_id is not None:
                raise WorldMembershipError(
                    f"Session {session_id} already belongs to world {session.world_id}"
                )
            if world.is_finalized:
                raise WorldMembershipError(f"World {world_id} is finalized")
            session.world_id = world_id
            world.member_sessions.append(session_id)
            logger.debug("session %s joined world %s", session_id, world_id)
            return world

    def finalize_open_world_session(
        self,
        world_id: str,
        now: Optional[datetime] = None,
    ) -> WorldSummary:
        """Finalize every member and return the world aggregate."""
        world = self.get_world(world_id)
        with self._locks.hold(world_id):
            if world.summary is not None:
                return world.summary

            members = [self._machine.get_session(sid) for sid in world.member_sessions]
            for session in members:
                if session.summary is None and session.schema_version > SCHEMA_VERSION:
                    raise SchemaVersionError(
                        f"Member {session.session_id} has schema_version "
                        f"{session.schema_version}; this build supports up to {SCHEMA_VERSION}"
                    )

            summaries = [self._machine.finalize_session(s.session_id, now=now) for s in members]
            summary = aggregate(world_id, summaries)
            world.summary = summary
            world.finalized_utc = now or datetime.now(timezone.utc)
            logger.debug(
                "world %s finalized sessions=%d clears=%d",
                world_id, summary.session_count, summary.total_clears,
            )
            return summary


def _require_world_id(world_id: str) -> None:
    if not isinstance(world_id, str) or not world_id.strip():
        raise WorldMembershipError("world_id must be a non-empty string")


def aggregate(world_id: str, summaries: list[SessionSummary]) -> WorldSummary:
    """Fold member session summaries into a world summary."""
    per_mode: dict[str, ModeBreakdown] = {}
    for s in summaries:
        prev = per_mode.get(s.mode.value, ModeBreakdown())
        per_mode[s.mode.value] = ModeBreakdown(
            sessions=prev.sessions + 1,
            turns=prev.turns + s.turn_count,
            clears=prev.clears + s.clears,
        )
    return WorldSummary(
        world_id=world_id,
        session_count=len(summaries),
        total_turns=sum(s.turn_count for s in summaries),
        total_clears=sum(s.clears for s in summaries),
        total_payoff=sum(s.total_payoff for s in summaries),
        per_mode=per_mode,
        member_session_ids=tuple(s.session_id for s in summaries),
    )
