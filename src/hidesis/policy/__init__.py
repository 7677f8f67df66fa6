"""Policy layer — typed access to calibration and runtime configuration."""

from hidesis.policy.resolver import (
    CalibrationPolicy,
    ChoiceSpec,
    PolicyResolver,
    TurnPolicy,
)

__all__ = ["CalibrationPolicy", "ChoiceSpec", "PolicyResolver", "TurnPolicy"]
