"""Policy resolver — loads calibration_params.json and runtime_policy.json
and exposes every runtime decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from hidesis.models.session import (
    SCHEMA_VERSION,
    TARGET_FIRST_CLEAR_TRUTH_RATE,
    OutcomeClass,
    TrustMode,
)


@dataclass(frozen=True)
class ChoiceSpec:
    """A catalogue entry for one choice in the fixed choice set."""
    choice_id: int
    label: str
    classification: OutcomeClass
    payoff: int


@dataclass(frozen=True)
class CalibrationPolicy:
    """Proportional-correction parameters for the calibration loop."""
    gain: float
    max_step: float
    max_bias: float


@dataclass(frozen=True)
class TurnPolicy:
    """How the distribution widens toward uniform as a session goes on."""
    widen_per_turn: float
    widen_cap: float

    def widening(self, turn_index: int) -> float:
        return min(turn_index * self.widen_per_turn, self.widen_cap)


class PolicyResolver:
    """Loads and resolves all calibration and runtime policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        target = resolver.mode_target(TrustMode.GUEST)
        weights = resolver.base_weights(TrustMode.VERIFIED)
    """

    def __init__(self, params: dict[str, Any], policy: dict[str, Any]) -> None:
        self._params = params
        self._policy = policy
        self._validate_versions()
        self._validate_choices()
        self._validate_weights()
        self._validate_targets()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        params = _load_json(config_dir / "calibration_params.json")
        policy = _load_json(config_dir / "runtime_policy.json")
        return cls(params, policy)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_versions(self) -> None:
        if "version" not in self._params:
            raise ValueError("calibration_params.json missing version")
        if "version" not in self._policy:
            raise ValueError("runtime_policy.json missing version")
        if self._params["schema_version"] != SCHEMA_VERSION:
            raise ValueError(
                f"calibration_params.json schema_version "
                f"{self._params['schema_version']} != supported {SCHEMA_VERSION}"
            )
        published = self._params["target_first_clear_truth_rate"]
        if not math.isclose(published, TARGET_FIRST_CLEAR_TRUTH_RATE, abs_tol=1e-12):
            raise ValueError(
                f"calibration_params.json target_first_clear_truth_rate {published} "
                f"!= published {TARGET_FIRST_CLEAR_TRUTH_RATE}"
            )

    def _validate_choices(self) -> None:
        choices = self.choices()
        if not choices:
            raise ValueError("runtime_policy.json defines no choices")
        ids = [c.choice_id for c in choices]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate choice ids: {ids}")
        clear = [c for c in choices if c.classification == OutcomeClass.CLEAR]
        if len(clear) != 1:
            raise ValueError(
                f"Exactly one choice must be classified 'clear', got {len(clear)}"
            )
        if self.weight_floor() * len(choices) >= 1.0:
            raise ValueError(
                f"weight_floor {self.weight_floor()} x {len(choices)} choices must be < 1"
            )

    def _validate_weights(self) -> None:
        ids = {c.choice_id for c in self.choices()}
        for mode in TrustMode:
            weights = self.base_weights(mode)
            if set(weights) != ids:
                raise ValueError(
                    f"Base weights for {mode.value} must cover choices {sorted(ids)}"
                )
            if any(w < 0.0 for w in weights.values()):
                raise ValueError(f"Base weights for {mode.value} must be non-negative")
            total = math.fsum(weights.values())
            if not math.isclose(total, 1.0, rel_tol=0.0, abs_tol=1e-9):
                raise ValueError(
                    f"Base weights for {mode.value} must sum to 1.0, got {total}"
                )

    def _validate_targets(self) -> None:
        published = self.published_target()
        if not (0.0 <= published <= 1.0):
            raise ValueError(f"target_first_clear_truth_rate must be in [0,1], got {published}")
        for mode in TrustMode:
            target = self.mode_target(mode)
            if not (0.0 <= target <= 1.0):
                raise ValueError(f"Target for {mode.value} must be in [0,1], got {target}")

    # ------------------------------------------------------------------
    # Published constants
    # ------------------------------------------------------------------

    def schema_version(self) -> int:
        return int(self._params["schema_version"])

    def published_target(self) -> float:
        """The advertised first-clear truth rate for trusted participants."""
        return float(self._params["target_first_clear_truth_rate"])

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def calibration_policy(self) -> CalibrationPolicy:
        c = self._params["calibration"]
        return CalibrationPolicy(
            gain=c["gain"],
            max_step=c["max_step"],
            max_bias=c["max_bias"],
        )

    def mode_target(self, mode: TrustMode) -> float:
        """Calibration target for a trust mode.

        Modes sourced from "published" follow the advertised rate. Modes
        with an "independent" target are tracked separately so their
        drift cannot move the published figure.
        """
        entry = self._params["mode_targets"].get(mode.value)
        if entry is None:
            raise ValueError(f"No calibration target for mode: {mode.value}")
        source = entry["source"]
        if source == "published":
            return self.published_target()
        if source == "independent":
            return float(entry["target"])
        raise ValueError(f"Unknown target source for {mode.value}: {source}")

    def mode_targets(self) -> dict[TrustMode, float]:
        return {mode: self.mode_target(mode) for mode in TrustMode}

    def uses_published_target(self, mode: TrustMode) -> bool:
        return self._params["mode_targets"][mode.value]["source"] == "published"

    # ------------------------------------------------------------------
    # Quote policy
    # ------------------------------------------------------------------

    def choices(self) -> list[ChoiceSpec]:
        """The fixed choice catalogue, in configured order."""
        return [
            ChoiceSpec(
                choice_id=int(c["choice_id"]),
                label=c["label"],
                classification=OutcomeClass(c["classification"]),
                payoff=int(c["payoff"]),
            )
            for c in self._policy["choices"]
        ]

    def base_weights(self, mode: TrustMode) -> dict[int, float]:
        """Base distribution for a mode, keyed by choice id."""
        table = self._policy["mode_base_weights"].get(mode.value)
        if table is None:
            raise ValueError(f"No base weights for mode: {mode.value}")
        return {int(k): float(v) for k, v in table.items()}

    def weight_floor(self) -> float:
        return float(self._policy["weight_floor"])

    def turn_policy(self) -> TurnPolicy:
        tp = self._policy["turn_policy"]
        return TurnPolicy(
            widen_per_turn=tp["widen_per_turn"],
            widen_cap=tp["widen_cap"],
        )

    def max_turns_per_session(self) -> int:
        return int(self._policy["max_turns_per_session"])


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
