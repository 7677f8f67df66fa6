"""Session engine — quote calculation, calibration, ledger and state machine."""

from hidesis.engine.calibration import CalibrationController, ModeCalibration
from hidesis.engine.locks import KeyedLocks
from hidesis.engine.quote_calculator import QuoteCalculator
from hidesis.engine.session_machine import SessionStateMachine, summarize
from hidesis.engine.turn_ledger import TurnLedger

__all__ = [
    "CalibrationController",
    "KeyedLocks",
    "ModeCalibration",
    "QuoteCalculator",
    "SessionStateMachine",
    "TurnLedger",
    "summarize",
]
