"""Persistence layer — audit log and state storage."""

from hidesis.persistence.event_log import EventKind, EventLog, EventRecord
from hidesis.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
