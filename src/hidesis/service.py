"""Hide-SIS service — unified facade for the session engine.

This is the primary interface for programmatic access to the engine.
It orchestrates all subsystems:
- Session lifecycle (start, quote, commit, finalize)
- Open worlds (join, finalize)
- Calibration (per-mode counters and bias)
- Transcript verification for finalized sessions
- Persistence (event log, state store)

Every operation returns a ServiceResult. Engine errors never escape as
exceptions: they become errors=[message] with data["error_code"] set to
the error's stable code. Once an operation has succeeded in memory it is
never rolled back; a failed audit or persistence write is reported as a
warning and flags the service as persistence-degraded.
"""

from __future__ import annotations

import logging
import secrets
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from hidesis.crypto.seed_vault import SeedVault
from hidesis.crypto.transcript import verify_transcript
from hidesis.engine.calibration import CalibrationController
from hidesis.engine.session_machine import SessionStateMachine
from hidesis.errors import HideSisError
from hidesis.identity.wallet import WalletValidator
from hidesis.models.session import (
    SCHEMA_VERSION,
    Session,
    SessionStatus,
    TrustMode,
)
from hidesis.persistence.event_log import EventKind, EventLog
from hidesis.persistence.state_store import StateStore
from hidesis.policy.resolver import PolicyResolver
from hidesis.world.aggregator import OpenWorldAggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _failure(error: HideSisError) -> ServiceResult:
    return ServiceResult(success=False, errors=[str(error)], data={"error_code": error.code})


class HideSisService:
    """Unified engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = HideSisService(resolver)
        started = service.start_session(wallet=None, mode="guest")
        sid = started.data["session_id"]
        quote = service.quote_turn(sid).data["quote"]
        outcome = service.commit_turn(sid, quote["options"][0]["choice_id"])
        summary = service.finalize_session(sid)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        entropy: Callable[[int], bytes] = secrets.token_bytes,
        wallets: Optional[WalletValidator] = None,
    ) -> None:
        self._resolver = resolver
        self._event_log = event_log
        self._state_store = state_store
        self._vault = SeedVault(resolver.max_turns_per_session(), entropy=entropy)

        snapshot = state_store.load_calibration() if state_store is not None else None
        self._calibration = CalibrationController.from_policy(resolver, snapshot)
        self._machine = SessionStateMachine(
            resolver, self._vault, self._calibration, wallets=wallets,
        )
        self._worlds = OpenWorldAggregator(self._machine)

        # Load persisted state or start fresh
        if state_store is not None:
            self._vault.restore_state(state_store.load_seeds())
            for session in state_store.load_sessions():
                self._machine.register(session)
            for world in state_store.load_worlds():
                self._worlds.register(world)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0
        self._counter_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._persistence_degraded = False

    # ------------------------------------------------------------------
    # Published constants
    # ------------------------------------------------------------------

    def published_constants(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "target_first_clear_truth_rate": self._resolver.published_target(),
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        wallet: Optional[str] = None,
        mode: TrustMode | str = TrustMode.GUEST,
        world_id: Optional[str] = None,
    ) -> ServiceResult:
        """Start a session, optionally joining a world at creation."""
        try:
            joining = world_id is not None
            guard = self._worlds.world_lock(world_id) if joining else nullcontext()
            with guard:
                if joining:
                    self._worlds.ensure_open(world_id)
                session = self._machine.start_session(wallet, mode)
                if joining:
                    self._worlds.attach(world_id, session.session_id)
        except HideSisError as e:
            return _failure(e)

        warnings = self._record_event(
            EventKind.SESSION_STARTED,
            session.session_id,
            {
                "mode": session.mode.value,
                "seed_commitment": session.seed_commitment,
                "schema_version": session.schema_version,
                "world_id": session.world_id,
            },
        )
        if session.world_id is not None:
            warnings += self._record_event(
                EventKind.WORLD_JOINED, world_id, {"session_id": session.session_id},
            )
        data = {
            "session_id": session.session_id,
            "mode": session.mode.value,
            "wallet": session.wallet,
            "seed_commitment": session.seed_commitment,
            "schema_version": session.schema_version,
            "world_id": session.world_id,
            "published": self.published_constants(),
        }
        return self._finish(data, warnings)

    def quote_turn(self, session_id: str) -> ServiceResult:
        """Quote the next turn. Repeat calls return the outstanding quote."""
        try:
            with self._machine.session_lock(session_id) as session:
                before = len(session.turns)
                quote = self._machine.quote_turn(session_id)
                reused = len(session.turns) == before
                warnings: list[str] = []
                if not reused:
                    warnings = self._record_event(
                        EventKind.TURN_QUOTED,
                        session_id,
                        {"turn_index": quote.turn_index, "quote_hash": quote.quote_hash},
                    )
        except HideSisError as e:
            return _failure(e)
        return self._finish({"quote": quote.to_dict(), "reused": reused}, warnings)

    def commit_turn(self, session_id: str, choice_id: int) -> ServiceResult:
        """Commit a choice against the outstanding quote."""
        try:
            with self._machine.session_lock(session_id) as session:
                outcome = self._machine.commit_turn(session_id, choice_id)
                warnings = self._record_event(
                    EventKind.TURN_COMMITTED,
                    session_id,
                    {
                        "turn_index": outcome.turn_index,
                        "choice_id": outcome.choice_id,
                        "realized_choice_id": outcome.realized_choice_id,
                        "cleared": outcome.cleared,
                        "quote_hash": session.turns[outcome.turn_index].quote.quote_hash,
                    },
                )
        except HideSisError as e:
            return _failure(e)
        return self._finish({"outcome": outcome.to_dict()}, warnings)

    def finalize_session(self, session_id: str) -> ServiceResult:
        """Finalize a session. Idempotent."""
        try:
            with self._machine.session_lock(session_id) as session:
                first = session.summary is None
                summary = self._machine.finalize_session(session_id)
                warnings: list[str] = []
                if first:
                    warnings = self._record_finalized(session)
        except HideSisError as e:
            return _failure(e)
        return self._finish({"summary": summary.to_dict()}, warnings)

    def get_session(self, session_id: str) -> ServiceResult:
        """Participant-safe view of a session. The seed appears only in a finalized summary."""
        try:
            session = self._machine.get_session(session_id)
        except HideSisError as e:
            return _failure(e)
        return ServiceResult(success=True, data=_session_view(session))

    # ------------------------------------------------------------------
    # Worlds
    # ------------------------------------------------------------------

    def join_world(self, world_id: str, session_id: str) -> ServiceResult:
        try:
            with self._worlds.world_lock(world_id):
                session = self._machine.get_session(session_id)
                already = session.world_id == world_id
                world = self._worlds.attach(world_id, session_id)
                warnings: list[str] = []
                if not already:
                    warnings = self._record_event(
                        EventKind.WORLD_JOINED, world_id, {"session_id": session_id},
                    )
        except HideSisError as e:
            return _failure(e)
        return self._finish(
            {"world_id": world_id, "member_sessions": list(world.member_sessions)},
            warnings,
        )

    def finalize_world(self, world_id: str) -> ServiceResult:
        """Finalize a world and every still-active member. Idempotent."""
        try:
            with self._worlds.world_lock(world_id):
                world = self._worlds.get_world(world_id)
                first = world.summary is None
                pending = [
                    s for s in (self._machine.get_session(sid) for sid in world.member_sessions)
                    if s.summary is None
                ]
                summary = self._worlds.finalize_open_world_session(world_id)
                warnings: list[str] = []
                if first:
                    for session in pending:
                        warnings += self._record_finalized(session)
                    warnings += self._record_event(
                        EventKind.WORLD_FINALIZED,
                        world_id,
                        {
                            "session_count": summary.session_count,
                            "total_clears": summary.total_clears,
                            "member_session_ids": list(summary.member_session_ids),
                        },
                    )
        except HideSisError as e:
            return _failure(e)
        return self._finish({"summary": summary.to_dict()}, warnings)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_session(self, session_id: str) -> ServiceResult:
        """Replay a finalized session from its disclosed seed."""
        try:
            session = self._machine.get_session(session_id)
        except HideSisError as e:
            return _failure(e)
        discrepancies = verify_transcript(session)
        return ServiceResult(
            success=not discrepancies,
            errors=discrepancies,
            data={
                "session_id": session_id,
                "verified": not discrepancies,
                "turns": len(session.turns),
            },
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        sessions = self._machine.sessions()
        by_status = {s.value: 0 for s in SessionStatus}
        by_mode = {m.value: 0 for m in TrustMode}
        for s in sessions:
            by_status[s.status.value] += 1
            by_mode[s.mode.value] += 1
        worlds = [w for w in self._worlds.worlds() if w.member_sessions]
        return {
            "version": "0.1.0",
            "published": self.published_constants(),
            "sessions": {
                "total": len(sessions),
                "by_status": by_status,
                "by_mode": by_mode,
            },
            "worlds": {
                "total": len(worlds),
                "finalized": sum(1 for w in worlds if w.is_finalized),
            },
            "calibration": self._calibration.snapshot(),
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        with self._counter_lock:
            self._event_counter += 1
            return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        subject_id: str,
        payload: dict[str, Any],
    ) -> list[str]:
        """Append an audit event. Returns warnings (empty on success).

        The operation has already taken effect, so a failed append is a
        warning, never a rollback.
        """
        if self._event_log is None:
            return []
        try:
            self._event_log.record(self._next_event_id(), kind, subject_id, payload)
            return []
        except (ValueError, OSError) as e:
            self._persistence_degraded = True
            logger.warning("event log append failed for %s: %s", subject_id, e)
            return [f"Event log failure: {e}"]

    def _record_finalized(self, session: Session) -> list[str]:
        summary = session.summary
        return self._record_event(
            EventKind.SESSION_FINALIZED,
            session.session_id,
            {
                "turn_count": summary.turn_count,
                "clears": summary.clears,
                "reason_codes": list(summary.reason_codes),
                "seed_commitment": summary.seed_commitment,
                "revealed_seed": summary.revealed_seed,
            },
        )

    def _finish(self, data: dict[str, Any], warnings: list[str]) -> ServiceResult:
        warning = self._safe_persist_post_audit()
        if warning:
            warnings = warnings + [warning]
        if warnings:
            data["warning"] = "; ".join(warnings)
        return ServiceResult(success=True, data=data)

    def _persist_state(self) -> None:
        """Write the full state snapshot. Can raise OSError."""
        if self._state_store is None:
            return
        with self._persist_lock:
            self._state_store.save_snapshot(
                self._machine.sessions(),
                self._worlds.worlds(),
                self._calibration.snapshot(),
                self._vault.export_state(),
                hold=self._machine.session_lock,
            )

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after audit events have been committed.

        MUST NOT roll back in-memory state. If persist fails, in-memory
        state remains correct but the StateStore is stale. Sets
        _persistence_degraded for operator awareness and returns a
        warning string (not a hard error).
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("state persistence failed: %s", e)
            return f"Persistence degraded: {e}; state is in the audit trail but the StateStore is stale"


def _session_view(session: Session) -> dict[str, Any]:
    outstanding = session.turns.outstanding()
    return {
        "session_id": session.session_id,
        "mode": session.mode.value,
        "wallet": session.wallet,
        "status": session.status.value,
        "schema_version": session.schema_version,
        "seed_commitment": session.seed_commitment,
        "world_id": session.world_id,
        "turns": [
            {
                "index": t.index,
                "quote_hash": t.quote.quote_hash,
                "choice_id": t.choice_id,
                "outcome": t.outcome.to_dict() if t.outcome else None,
            }
            for t in session.turns
        ],
        "outstanding_quote": outstanding.quote.to_dict() if outstanding else None,
        "summary": session.summary.to_dict() if session.summary else None,
    }
