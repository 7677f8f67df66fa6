#!/usr/bin/env python3
"""Hide-SIS invariant checks against the calibration and runtime config."""

import json
import math
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
MODES = ("verified", "guest", "bot_suspected")
CLASSIFICATIONS = {"clear", "partial", "exposed"}


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_weights(table: dict, choice_ids: set, label: str, errors: list[str]) -> None:
    """Validate one base distribution over the choice catalogue."""
    ids = {int(k) for k in table}
    if ids != choice_ids:
        errors.append(f"{label} must cover choices {sorted(choice_ids)}, got {sorted(ids)}")
    values = [float(v) for v in table.values()]
    if any(v < 0.0 for v in values):
        errors.append(f"{label} weights must be non-negative")
    if not math.isclose(math.fsum(values), 1.0, rel_tol=0.0, abs_tol=1e-9):
        errors.append(f"{label} weights must sum to 1.0")


def resolve_target(params: dict, mode: str, errors: list[str]) -> float:
    entry = params["mode_targets"].get(mode)
    if entry is None:
        errors.append(f"mode_targets missing mode: {mode}")
        return float("nan")
    if entry["source"] == "published":
        return float(params["target_first_clear_truth_rate"])
    if entry["source"] == "independent":
        return float(entry["target"])
    errors.append(f"mode_targets.{mode}.source must be 'published' or 'independent'")
    return float("nan")


def check(config_dir: Path = CONFIG_DIR) -> int:
    params = load_json(config_dir / "calibration_params.json")
    policy = load_json(config_dir / "runtime_policy.json")
    errors: list[str] = []

    # --- Published constants ---
    schema_version = params["schema_version"]
    if not isinstance(schema_version, int) or schema_version < 1:
        errors.append(f"schema_version must be a positive integer, got {schema_version!r}")
    published = params["target_first_clear_truth_rate"]
    if not 0.0 <= published <= 1.0:
        errors.append(f"target_first_clear_truth_rate must be in [0, 1], got {published}")

    # --- Calibration loop bounds ---
    cal = params["calibration"]
    if cal["gain"] <= 0.0:
        errors.append("calibration.gain must be > 0")
    if not 0.0 < cal["max_step"] <= cal["max_bias"]:
        errors.append("calibration.max_step must be in (0, max_bias]")
    if not 0.0 < cal["max_bias"] < 1.0:
        errors.append("calibration.max_bias must be in (0, 1)")

    # --- Mode targets ---
    targets = {mode: resolve_target(params, mode, errors) for mode in MODES}
    for mode in ("verified", "guest"):
        if params["mode_targets"].get(mode, {}).get("source") != "published":
            errors.append(f"{mode} must track the published target")
    if params["mode_targets"].get("bot_suspected", {}).get("source") != "independent":
        errors.append("bot_suspected must track an independent target")
    if targets["bot_suspected"] > published:
        errors.append("bot_suspected target must not exceed the published target")
    for mode, target in targets.items():
        if not 0.0 <= target <= 1.0:
            errors.append(f"{mode} target must be in [0, 1], got {target}")

    # --- Choice catalogue ---
    choices = policy["choices"]
    choice_ids = {int(c["choice_id"]) for c in choices}
    if len(choice_ids) != len(choices):
        errors.append("choice ids must be unique")
    for c in choices:
        if c["classification"] not in CLASSIFICATIONS:
            errors.append(f"choice {c['choice_id']} has unknown classification {c['classification']}")
        if c["payoff"] < 0:
            errors.append(f"choice {c['choice_id']} payoff must be non-negative")
    clear_ids = [int(c["choice_id"]) for c in choices if c["classification"] == "clear"]
    if len(clear_ids) != 1:
        errors.append(f"exactly one choice must be 'clear', got {len(clear_ids)}")

    floor = policy["weight_floor"]
    if floor < 0.0 or floor * len(choices) >= 1.0:
        errors.append(f"weight_floor x choices must be in [0, 1), got {floor * len(choices)}")

    # --- Base weights and steerability ---
    for mode in MODES:
        table = policy["mode_base_weights"].get(mode)
        if table is None:
            errors.append(f"mode_base_weights missing mode: {mode}")
            continue
        check_weights(table, choice_ids, f"mode_base_weights.{mode}", errors)
        if len(clear_ids) == 1 and not math.isnan(targets[mode]):
            gap = abs(targets[mode] - float(table[str(clear_ids[0])]))
            if gap > cal["max_bias"]:
                errors.append(
                    f"{mode} target is {gap:.3f} from its base clear weight; "
                    f"max_bias {cal['max_bias']} cannot reach it"
                )

    # --- Turn policy ---
    if policy["max_turns_per_session"] <= 0:
        errors.append("max_turns_per_session must be > 0")
    turn = policy["turn_policy"]
    if turn["widen_per_turn"] < 0.0:
        errors.append("turn_policy.widen_per_turn must be >= 0")
    if not 0.0 <= turn["widen_cap"] < 1.0:
        errors.append("turn_policy.widen_cap must be in [0, 1)")

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    config = Path(sys.argv[1]) if len(sys.argv) > 1 else CONFIG_DIR
    raise SystemExit(check(config))
