"""Tests for the audit event log and the JSON state store."""

import json
import random
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import pytest
from pathlib import Path

from hidesis.crypto.seed_vault import SeedVault
from hidesis.crypto.transcript import verify_transcript
from hidesis.engine.calibration import CalibrationController
from hidesis.engine.session_machine import SessionStateMachine
from hidesis.models.session import SessionStatus
from hidesis.persistence.event_log import CHAIN_ROOT, EventKind, EventLog, EventRecord
from hidesis.persistence.state_store import StateStore
from hidesis.policy.resolver import PolicyResolver
from hidesis.world.aggregator import OpenWorldAggregator


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _filled(log: EventLog, n: int = 3) -> list[EventRecord]:
    kinds = [EventKind.SESSION_STARTED] + [EventKind.TURN_COMMITTED] * (n - 1)
    return [
        log.record(f"EVT-{i:08d}", kind, "HS-1", {"turn_index": i})
        for i, kind in enumerate(kinds, 1)
    ]


class TestEventLog:
    def test_record_and_filter(self) -> None:
        log = EventLog()
        _filled(log, 2)
        assert log.count == 2
        assert [e.event_id for e in log.events(EventKind.TURN_COMMITTED)] == ["EVT-00000002"]
        assert len(log.events(subject_id="HS-1")) == 2
        assert log.last_event.event_id == "EVT-00000002"

    def test_records_are_chained(self) -> None:
        log = EventLog()
        first, second, third = _filled(log)
        assert first.previous_hash == CHAIN_ROOT
        assert second.previous_hash == first.event_hash
        assert third.previous_hash == second.event_hash
        assert log.head == third.event_hash
        assert log.verify_chain() == []

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        log.record("EVT-1", EventKind.SESSION_STARTED, "HS-1", {})
        with pytest.raises(ValueError, match="Duplicate"):
            log.record("EVT-1", EventKind.SESSION_STARTED, "HS-1", {})

    def test_append_must_extend_head(self) -> None:
        log = EventLog()
        _filled(log, 1)
        stale = EventRecord.create("EVT-9", EventKind.TURN_QUOTED, "HS-1", {})
        with pytest.raises(ValueError, match="Chain broken"):
            log.append(stale)
        linked = EventRecord.create(
            "EVT-9", EventKind.TURN_QUOTED, "HS-1", {}, previous_hash=log.head,
        )
        log.append(linked)
        assert log.count == 2

    def test_hash_is_stable(self) -> None:
        ts = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        a = EventRecord.create("EVT-1", EventKind.SESSION_STARTED, "HS-1", {"k": 1}, ts)
        b = EventRecord.create("EVT-1", EventKind.SESSION_STARTED, "HS-1", {"k": 1}, ts)
        c = EventRecord.create("EVT-1", EventKind.SESSION_STARTED, "HS-1", {"k": 2}, ts)
        assert a.event_hash.startswith("sha256:")
        assert a.event_hash == b.event_hash
        assert a.event_hash != c.event_hash
        assert a.timestamp_utc == "2026-01-02T03:04:05Z"

    def test_events_since(self) -> None:
        log = EventLog()
        early = datetime(2026, 1, 1, tzinfo=timezone.utc)
        late = datetime(2026, 6, 1, tzinfo=timezone.utc)
        log.record("EVT-1", EventKind.SESSION_STARTED, "HS-1", {}, early)
        log.record("EVT-2", EventKind.SESSION_FINALIZED, "HS-1", {}, late)
        assert [e.event_id for e in log.events_since("2026-03-01T00:00:00Z")] == ["EVT-2"]

    def test_jsonl_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        _filled(log)
        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 3
        assert reloaded.head == log.head
        assert [e.event_hash for e in reloaded.events()] == [e.event_hash for e in log.events()]

    def test_tampered_payload_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        _filled(EventLog(storage_path=path), 1)
        record = json.loads(path.read_text(encoding="utf-8"))
        record["payload"]["turn_index"] = 99
        path.write_text(json.dumps(record) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_dropped_line_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        _filled(EventLog(storage_path=path))
        lines = path.read_text(encoding="utf-8").splitlines()
        path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Chain broken"):
            EventLog(storage_path=path)


class TestStateStore:
    def test_full_round_trip(self, tmp_path: Path) -> None:
        resolver = PolicyResolver.from_config_dir(CONFIG_DIR)
        vault = SeedVault(resolver.max_turns_per_session(), entropy=random.Random(5).randbytes)
        calibration = CalibrationController.from_policy(resolver)
        machine = SessionStateMachine(resolver, vault, calibration)
        worlds = OpenWorldAggregator(machine)

        finished = machine.start_session(None, "verified")
        open_session = machine.start_session(None, "guest")
        worlds.attach("w1", finished.session_id)
        for _ in range(5):
            quote = machine.quote_turn(finished.session_id)
            machine.commit_turn(finished.session_id, quote.choice_ids[1])
        machine.finalize_session(finished.session_id)
        machine.quote_turn(open_session.session_id)

        path = tmp_path / "state.json"
        StateStore(path).save_snapshot(
            machine.sessions(), worlds.worlds(), calibration.snapshot(), vault.export_state(),
        )

        store = StateStore(path)
        loaded = {s.session_id: s for s in store.load_sessions()}
        done = loaded[finished.session_id]
        assert done.summary == finished.summary
        assert [t.outcome for t in done.turns] == [t.outcome for t in finished.turns]
        assert [t.quote for t in done.turns] == [t.quote for t in finished.turns]
        assert done.world_id == "w1"
        assert verify_transcript(done) == []

        pending = loaded[open_session.session_id]
        assert pending.turns.outstanding() is not None
        assert pending.wallet == open_session.wallet

        assert store.load_calibration() == calibration.snapshot()
        assert store.load_worlds()[0].member_sessions == [finished.session_id]

        restored_vault = SeedVault(resolver.max_turns_per_session())
        restored_vault.restore_state(store.load_seeds())
        assert restored_vault.is_sealed(finished.session_id)
        assert restored_vault.commitment(open_session.session_id) == open_session.seed_commitment

    def test_each_session_serialised_under_its_hold(self, tmp_path: Path) -> None:
        resolver = PolicyResolver.from_config_dir(CONFIG_DIR)
        vault = SeedVault(resolver.max_turns_per_session(), entropy=random.Random(6).randbytes)
        machine = SessionStateMachine(resolver, vault, CalibrationController.from_policy(resolver))
        ids = [machine.start_session(None, "guest").session_id for _ in range(3)]
        held: list[str] = []

        @contextmanager
        def hold(session_id: str) -> Iterator[None]:
            held.append(session_id)
            yield

        StateStore(tmp_path / "state.json").save_snapshot(
            machine.sessions(), [], {}, vault.export_state(), hold=hold,
        )
        assert sorted(held) == sorted(ids)

    def test_finalized_snapshot_is_consistent(self, tmp_path: Path) -> None:
        resolver = PolicyResolver.from_config_dir(CONFIG_DIR)
        vault = SeedVault(resolver.max_turns_per_session(), entropy=random.Random(4).randbytes)
        machine = SessionStateMachine(resolver, vault, CalibrationController.from_policy(resolver))
        session = machine.start_session(None, "verified")
        machine.finalize_session(session.session_id)
        store = StateStore(tmp_path / "state.json")
        store.save_snapshot(
            machine.sessions(), [], {}, vault.export_state(), hold=machine.session_lock,
        )
        loaded = StateStore(tmp_path / "state.json").load_sessions()[0]
        assert loaded.status == SessionStatus.FINALIZED
        assert loaded.summary == session.summary

    def test_empty_store(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "missing.json")
        assert store.load_sessions() == []
        assert store.load_worlds() == []
        assert store.load_calibration() == {}
        assert store.load_seeds() == {}
