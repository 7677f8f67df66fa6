"""Hide-SIS CLI — command-line interface for the session engine.

Usage:
    python -m hidesis.cli status
    python -m hidesis.cli start-session --mode verified --wallet <base58> [--world W-1]
    python -m hidesis.cli quote --session HS-...
    python -m hidesis.cli commit --session HS-... --choice 2
    python -m hidesis.cli finalize --session HS-...
    python -m hidesis.cli join-world --world W-1 --session HS-...
    python -m hidesis.cli finalize-world --world W-1
    python -m hidesis.cli verify --session HS-...
    python -m hidesis.cli simulate --mode guest --sessions 500 --turns 20
    python -m hidesis.cli check-invariants

HIDE_SIS_CONFIG_DIR and HIDE_SIS_DATA_DIR override the default config
and data directories. A .env file in the working directory is loaded
first.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import random
import sys
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv

from hidesis.models.session import TrustMode
from hidesis.persistence.event_log import EventLog
from hidesis.persistence.state_store import StateStore
from hidesis.policy.resolver import PolicyResolver
from hidesis.service import HideSisService, ServiceResult


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(config_dir: Path, data_dir: Path) -> HideSisService:
    """Create a HideSisService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(config_dir)
    return HideSisService(
        resolver,
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(storage_path=data_dir / "state.json"),
    )


def _emit(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, sort_keys=True))
        return 0
    code = result.data.get("error_code")
    prefix = f"Failed ({code})" if code else "Failed"
    print(f"{prefix}: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(service.status(), indent=2, sort_keys=True))
    return 0


def cmd_start_session(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.start_session(wallet=args.wallet, mode=args.mode, world_id=args.world))


def cmd_quote(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.quote_turn(args.session))


def cmd_commit(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.commit_turn(args.session, args.choice))


def cmd_finalize(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.finalize_session(args.session))


def cmd_join_world(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.join_world(args.world, args.session))


def cmd_finalize_world(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.finalize_world(args.world))


def cmd_verify(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _emit(service.verify_session(args.session))


def cmd_simulate(args: argparse.Namespace) -> int:
    """Run sessions in memory and report the converged rate for one mode."""
    service = HideSisService(PolicyResolver.from_config_dir(args.config))
    stats = run_simulation(service, args.mode, args.sessions, args.turns, args.seed)
    print(json.dumps(stats, indent=2, sort_keys=True))
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run offline config invariant checks."""
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check
    return check(args.config)


def run_simulation(
    service: HideSisService,
    mode: str,
    sessions: int,
    turns: int,
    seed: int,
) -> dict[str, Any]:
    """Play sessions with uniformly random choices; return calibration stats."""
    rng = random.Random(seed)
    for _ in range(sessions):
        started = service.start_session(mode=mode)
        if not started.success:
            raise RuntimeError("; ".join(started.errors))
        sid = started.data["session_id"]
        for _ in range(turns):
            quote = service.quote_turn(sid)
            if not quote.success:
                break
            choice = rng.choice(quote.data["quote"]["options"])["choice_id"]
            service.commit_turn(sid, choice)
        service.finalize_session(sid)
    snapshot = service.status()["calibration"][TrustMode.parse(mode).value]
    return {"mode": mode, "sessions": sessions, "turns_per_session": turns, **snapshot}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hidesis",
        description="Hide-SIS — provably fair session engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config directory (default: $HIDE_SIS_CONFIG_DIR or config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=None,
        help="Path to data directory (default: $HIDE_SIS_DATA_DIR or data/)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show engine status")

    p_start = sub.add_parser("start-session", help="Start a session")
    p_start.add_argument("--mode", required=True, choices=[m.value for m in TrustMode])
    p_start.add_argument("--wallet", help="Wallet address or guest handle")
    p_start.add_argument("--world", help="Join this world at creation")

    p_quote = sub.add_parser("quote", help="Quote the next turn")
    p_quote.add_argument("--session", required=True, help="Session ID")

    p_commit = sub.add_parser("commit", help="Commit a choice for the outstanding quote")
    p_commit.add_argument("--session", required=True, help="Session ID")
    p_commit.add_argument("--choice", required=True, type=int, help="Choice ID")

    p_fin = sub.add_parser("finalize", help="Finalize a session")
    p_fin.add_argument("--session", required=True, help="Session ID")

    p_join = sub.add_parser("join-world", help="Add a session to a world")
    p_join.add_argument("--world", required=True, help="World ID")
    p_join.add_argument("--session", required=True, help="Session ID")

    p_fw = sub.add_parser("finalize-world", help="Finalize a world and its members")
    p_fw.add_argument("--world", required=True, help="World ID")

    p_verify = sub.add_parser("verify", help="Verify a finalized session transcript")
    p_verify.add_argument("--session", required=True, help="Session ID")

    p_sim = sub.add_parser("simulate", help="Run in-memory sessions for one mode")
    p_sim.add_argument("--mode", required=True, choices=[m.value for m in TrustMode])
    p_sim.add_argument("--sessions", type=int, default=500, help="Sessions (default: 500)")
    p_sim.add_argument("--turns", type=int, default=20, help="Turns per session (default: 20)")
    p_sim.add_argument("--seed", type=int, default=0, help="Choice RNG seed (default: 0)")

    sub.add_parser("check-invariants", help="Check config invariants")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.config is None:
        args.config = Path(os.environ.get("HIDE_SIS_CONFIG_DIR", DEFAULT_CONFIG))
    if args.data is None:
        args.data = Path(os.environ.get("HIDE_SIS_DATA_DIR", DEFAULT_DATA))

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "start-session": cmd_start_session,
        "quote": cmd_quote,
        "commit": cmd_commit,
        "finalize": cmd_finalize,
        "join-world": cmd_join_world,
        "finalize-world": cmd_finalize_world,
        "verify": cmd_verify,
        "simulate": cmd_simulate,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
