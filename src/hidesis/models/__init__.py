"""Core data models for the Hide-SIS engine."""

from hidesis.models.session import (
    SCHEMA_VERSION,
    TARGET_FIRST_CLEAR_TRUTH_RATE,
    Outcome,
    OutcomeClass,
    Quote,
    QuoteOption,
    ReasonCode,
    Session,
    SessionStatus,
    SessionSummary,
    TrustMode,
    Turn,
)
from hidesis.models.world import ModeBreakdown, WorldSession, WorldSummary

__all__ = [
    "SCHEMA_VERSION",
    "TARGET_FIRST_CLEAR_TRUTH_RATE",
    "Outcome",
    "OutcomeClass",
    "Quote",
    "QuoteOption",
    "ReasonCode",
    "Session",
    "SessionStatus",
    "SessionSummary",
    "TrustMode",
    "Turn",
    "ModeBreakdown",
    "WorldSession",
    "WorldSummary",
]
