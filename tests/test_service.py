"""Tests for HideSisService — proves the facade orchestrates correctly."""

import random

import pytest
from pathlib import Path

from hidesis.models.session import SCHEMA_VERSION, TARGET_FIRST_CLEAR_TRUTH_RATE
from hidesis.persistence.event_log import EventKind, EventLog
from hidesis.persistence.state_store import StateStore
from hidesis.policy.resolver import PolicyResolver
from hidesis.service import HideSisService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def service(resolver: PolicyResolver) -> HideSisService:
    return HideSisService(resolver, entropy=random.Random(42).randbytes)


def _durable(resolver: PolicyResolver, data_dir: Path, seed: int = 7) -> HideSisService:
    return HideSisService(
        resolver,
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(data_dir / "state.json"),
        entropy=random.Random(seed).randbytes,
    )


def _play(service: HideSisService, session_id: str, turns: int) -> list[dict]:
    outcomes = []
    for _ in range(turns):
        quote = service.quote_turn(session_id).data["quote"]
        result = service.commit_turn(session_id, quote["options"][0]["choice_id"])
        assert result.success
        outcomes.append(result.data["outcome"])
    return outcomes


class TestSessionLifecycle:
    def test_start_session(self, service: HideSisService) -> None:
        result = service.start_session(wallet=WALLET, mode="verified")
        assert result.success
        assert result.data["mode"] == "verified"
        assert result.data["wallet"] == WALLET
        assert result.data["seed_commitment"].startswith("sha256:")
        assert result.data["schema_version"] == SCHEMA_VERSION
        assert result.data["world_id"] is None

    def test_start_exposes_published_constants(self, service: HideSisService) -> None:
        result = service.start_session()
        assert result.data["published"] == {
            "schema_version": SCHEMA_VERSION,
            "target_first_clear_truth_rate": TARGET_FIRST_CLEAR_TRUTH_RATE,
        }

    def test_invalid_mode_fails(self, service: HideSisService) -> None:
        result = service.start_session(mode="admin")
        assert not result.success
        assert result.data["error_code"] == "invalid_mode"

    def test_invalid_wallet_fails(self, service: HideSisService) -> None:
        result = service.start_session(wallet="???", mode="verified")
        assert not result.success
        assert result.data["error_code"] == "invalid_wallet"

    def test_quote_reused(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        first = service.quote_turn(sid)
        second = service.quote_turn(sid)
        assert first.data["reused"] is False
        assert second.data["reused"] is True
        assert first.data["quote"] == second.data["quote"]

    def test_commit_unquoted_choice(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        service.quote_turn(sid)
        result = service.commit_turn(sid, 42)
        assert not result.success
        assert result.data["error_code"] == "invalid_choice"

    def test_commit_without_quote(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        result = service.commit_turn(sid, 1)
        assert result.data["error_code"] == "no_outstanding_quote"

    def test_unknown_session(self, service: HideSisService) -> None:
        for result in (
            service.quote_turn("HS-nope"),
            service.commit_turn("HS-nope", 1),
            service.finalize_session("HS-nope"),
            service.get_session("HS-nope"),
            service.verify_session("HS-nope"),
        ):
            assert not result.success
            assert result.data["error_code"] == "session_not_found"

    def test_finalize_idempotent(self, service: HideSisService) -> None:
        sid = service.start_session(mode="guest").data["session_id"]
        _play(service, sid, 3)
        first = service.finalize_session(sid)
        second = service.finalize_session(sid)
        assert first.success and second.success
        assert first.data["summary"] == second.data["summary"]
        assert first.data["summary"]["turn_count"] == 3

    def test_quote_after_finalize(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        service.finalize_session(sid)
        result = service.quote_turn(sid)
        assert result.data["error_code"] == "session_finalized"


class TestSessionView:
    def test_active_view_hides_seed(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        service.quote_turn(sid)
        view = service.get_session(sid).data
        assert view["status"] == "active"
        assert view["summary"] is None
        assert view["outstanding_quote"]["turn_index"] == 0
        assert "seed" not in view

    def test_finalized_view_carries_summary(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        _play(service, sid, 2)
        service.finalize_session(sid)
        view = service.get_session(sid).data
        assert view["status"] == "finalized"
        assert view["summary"]["revealed_seed"]
        assert [t["index"] for t in view["turns"]] == [0, 1]


class TestVerify:
    def test_finalized_session_verifies(self, service: HideSisService) -> None:
        sid = service.start_session(mode="verified").data["session_id"]
        _play(service, sid, 5)
        service.finalize_session(sid)
        result = service.verify_session(sid)
        assert result.success
        assert result.data["verified"] is True
        assert result.data["turns"] == 5

    def test_active_session_not_verifiable(self, service: HideSisService) -> None:
        sid = service.start_session().data["session_id"]
        result = service.verify_session(sid)
        assert not result.success
        assert result.data["verified"] is False


class TestWorlds:
    def test_start_in_world(self, service: HideSisService) -> None:
        result = service.start_session(mode="guest", world_id="W-1")
        assert result.data["world_id"] == "W-1"

    def test_join_and_finalize(self, service: HideSisService) -> None:
        a = service.start_session(mode="verified").data["session_id"]
        b = service.start_session(mode="guest").data["session_id"]
        assert service.join_world("W-1", a).success
        joined = service.join_world("W-1", b)
        assert joined.data["member_sessions"] == [a, b]
        _play(service, a, 2)
        _play(service, b, 3)

        result = service.finalize_world("W-1")
        assert result.success
        summary = result.data["summary"]
        assert summary["session_count"] == 2
        assert summary["total_turns"] == 5
        assert service.get_session(a).data["status"] == "finalized"
        assert service.get_session(b).data["status"] == "finalized"

    def test_second_world_rejected(self, service: HideSisService) -> None:
        sid = service.start_session(world_id="W-1").data["session_id"]
        result = service.join_world("W-2", sid)
        assert result.data["error_code"] == "world_membership"

    def test_start_in_finalized_world_creates_nothing(self, service: HideSisService) -> None:
        service.start_session(world_id="W-1")
        service.finalize_world("W-1")
        result = service.start_session(world_id="W-1")
        assert result.data["error_code"] == "world_membership"
        assert service.status()["sessions"]["total"] == 1

    @pytest.mark.parametrize("world_id", ["   ", ""])
    def test_blank_world_creates_no_session(
        self, service: HideSisService, world_id: str,
    ) -> None:
        result = service.start_session(mode="guest", world_id=world_id)
        assert not result.success
        assert result.data["error_code"] == "world_membership"
        assert service.status()["sessions"]["total"] == 0

    def test_unknown_world(self, service: HideSisService) -> None:
        result = service.finalize_world("W-missing")
        assert result.data["error_code"] == "world_not_found"

    def test_finalize_world_idempotent(self, service: HideSisService) -> None:
        sid = service.start_session(world_id="W-1").data["session_id"]
        _play(service, sid, 2)
        first = service.finalize_world("W-1")
        second = service.finalize_world("W-1")
        assert first.data["summary"] == second.data["summary"]


class TestStatus:
    def test_status_structure(self, service: HideSisService) -> None:
        service.start_session(mode="verified")
        sid = service.start_session(mode="guest", world_id="W-1").data["session_id"]
        service.finalize_session(sid)
        status = service.status()
        assert status["sessions"]["total"] == 2
        assert status["sessions"]["by_mode"]["verified"] == 1
        assert status["sessions"]["by_status"]["finalized"] == 1
        assert status["worlds"] == {"total": 1, "finalized": 0}
        assert set(status["calibration"]) == {"verified", "guest", "bot_suspected"}
        assert status["persistence_degraded"] is False

    def test_published_constants(self, service: HideSisService) -> None:
        assert service.published_constants()["target_first_clear_truth_rate"] == 0.35

    def test_published_target_is_the_steered_target(self, service: HideSisService) -> None:
        published = service.published_constants()["target_first_clear_truth_rate"]
        calibration = service.status()["calibration"]
        assert calibration["verified"]["target"] == published
        assert calibration["guest"]["target"] == published


class TestPersistence:
    def test_events_recorded(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = _durable(resolver, tmp_path)
        sid = service.start_session(mode="guest", world_id="W-1").data["session_id"]
        service.quote_turn(sid)
        service.quote_turn(sid)
        quote = service.quote_turn(sid).data["quote"]
        service.commit_turn(sid, quote["options"][1]["choice_id"])
        service.finalize_session(sid)
        service.finalize_session(sid)
        service.finalize_world("W-1")

        log = EventLog(storage_path=tmp_path / "events.jsonl")
        kinds = [e.event_kind for e in log.events()]
        assert kinds == [
            EventKind.SESSION_STARTED,
            EventKind.WORLD_JOINED,
            EventKind.TURN_QUOTED,
            EventKind.TURN_COMMITTED,
            EventKind.SESSION_FINALIZED,
            EventKind.WORLD_FINALIZED,
        ]

    def test_state_survives_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        service = _durable(resolver, tmp_path)
        done = service.start_session(mode="verified").data["session_id"]
        _play(service, done, 4)
        service.finalize_session(done)
        pending = service.start_session(mode="guest").data["session_id"]
        quote = service.quote_turn(pending).data["quote"]
        calibration = service.status()["calibration"]

        restarted = _durable(resolver, tmp_path, seed=8)
        assert restarted.status()["calibration"] == calibration
        assert restarted.verify_session(done).success
        again = restarted.quote_turn(pending)
        assert again.data["reused"] is True
        assert again.data["quote"] == quote
        committed = restarted.commit_turn(pending, quote["options"][0]["choice_id"])
        assert committed.success

    def test_event_ids_continue_after_restart(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        _durable(resolver, tmp_path).start_session()
        restarted = _durable(resolver, tmp_path, seed=9)
        assert restarted.start_session().success
        log = EventLog(storage_path=tmp_path / "events.jsonl")
        assert [e.event_id for e in log.events()] == ["EVT-00000001", "EVT-00000002"]

    def test_persistence_failure_is_a_warning(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        service = HideSisService(
            resolver,
            state_store=StateStore(blocker / "state.json"),
            entropy=random.Random(1).randbytes,
        )
        result = service.start_session()
        assert result.success
        assert "Persistence degraded" in result.data["warning"]
        assert service.status()["persistence_degraded"] is True
        # The session exists in memory despite the failed write.
        assert service.get_session(result.data["session_id"]).success
