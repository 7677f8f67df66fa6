"""Calibration controller — steers each trust mode toward its target rate.

Each mode keeps its own attempts/clears counters and its own bias. After
every committed turn the bias moves by a bounded proportional step:

    bias += clamp(gain * (target - rate), -max_step, +max_step)
    bias  = clamp(bias, -max_bias, +max_bias)

The bias feeds the next quote for that mode, so the correction is always
visible in the published odds. Modes never share state: bot_suspected
drifting toward its stricter target cannot move the trusted modes.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Optional

from hidesis.models.session import Outcome, TrustMode
from hidesis.policy.resolver import CalibrationPolicy, PolicyResolver


@dataclass
class ModeCalibration:
    """Running counters for one trust mode."""
    target: float
    attempts: int = 0
    clears: int = 0
    bias: float = 0.0

    @property
    def rate(self) -> float:
        if self.attempts == 0:
            return 0.0
        return self.clears / self.attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "clears": self.clears,
            "rate": self.rate,
            "target": self.target,
            "bias": self.bias,
        }


class CalibrationController:
    """Lock-protected per-mode calibration state.

    Constructed once at process start and injected into the session
    state machine. There is no implicit reset.

    Usage:
        calibration = CalibrationController.from_policy(resolver)
        bias = calibration.bias_for(TrustMode.GUEST)
        calibration.record_outcome(TrustMode.GUEST, outcome)
    """

    def __init__(
        self,
        targets: dict[TrustMode, float],
        policy: CalibrationPolicy,
    ) -> None:
        missing = [m.value for m in TrustMode if m not in targets]
        if missing:
            raise ValueError(f"No calibration target for modes: {missing}")
        self._policy = policy
        self._modes = {mode: ModeCalibration(target=t) for mode, t in targets.items()}
        self._lock = threading.Lock()

    @classmethod
    def from_policy(
        cls,
        resolver: PolicyResolver,
        snapshot: Optional[dict[str, dict[str, Any]]] = None,
    ) -> CalibrationController:
        controller = cls(resolver.mode_targets(), resolver.calibration_policy())
        if snapshot:
            controller.restore(snapshot)
        return controller

    def record_outcome(self, mode: TrustMode, outcome: Outcome) -> float:
        """Count a committed outcome and return the mode's updated bias."""
        p = self._policy
        with self._lock:
            state = self._modes[mode]
            state.attempts += 1
            if outcome.cleared:
                state.clears += 1
            step = p.gain * (state.target - state.rate)
            step = max(-p.max_step, min(p.max_step, step))
            state.bias = max(-p.max_bias, min(p.max_bias, state.bias + step))
            return state.bias

    def bias_for(self, mode: TrustMode) -> float:
        with self._lock:
            return self._modes[mode].bias

    def target_for(self, mode: TrustMode) -> float:
        return self._modes[mode].target

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Per-mode counters, keyed by mode value."""
        with self._lock:
            return {mode.value: state.to_dict() for mode, state in self._modes.items()}

    def restore(self, snapshot: dict[str, dict[str, Any]]) -> None:
        """Load counters and biases saved by snapshot().

        Targets always come from policy, never from the snapshot.
        """
        p = self._policy
        with self._lock:
            for key, entry in snapshot.items():
                state = self._modes[TrustMode.parse(key)]
                attempts = int(entry["attempts"])
                clears = int(entry["clears"])
                if not (0 <= clears <= attempts):
                    raise ValueError(f"Invalid calibration counters for {key}: {entry}")
                state.attempts = attempts
                state.clears = clears
                state.bias = max(-p.max_bias, min(p.max_bias, float(entry["bias"])))
