"""Hash-chained audit trail of session and world transitions.

Each record's hash covers its own fields and the hash of the record
before it, so editing, dropping, or reordering any line of the JSONL
file breaks the chain and the file is refused on load.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional


CHAIN_ROOT = "sha256:" + "0" * 64
_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class EventKind(str, enum.Enum):
    SESSION_STARTED = "session_started"
    TURN_QUOTED = "turn_quoted"
    TURN_COMMITTED = "turn_committed"
    SESSION_FINALIZED = "session_finalized"
    WORLD_JOINED = "world_joined"
    WORLD_FINALIZED = "world_finalized"


def _link_hash(
    previous_hash: str,
    event_id: str,
    kind: str,
    subject_id: str,
    timestamp_utc: str,
    payload: dict[str, Any],
) -> str:
    body = json.dumps(
        [previous_hash, event_id, kind, subject_id, timestamp_utc, payload],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return "sha256:" + hashlib.sha256(body.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    """One link of the audit chain. subject_id names a session or a world."""
    event_id: str
    event_kind: EventKind
    subject_id: str
    timestamp_utc: str
    payload: dict[str, Any]
    previous_hash: str
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        subject_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
        previous_hash: str = CHAIN_ROOT,
    ) -> EventRecord:
        stamp = (timestamp_utc or datetime.now(timezone.utc)).strftime(_TS_FORMAT)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            subject_id=subject_id,
            timestamp_utc=stamp,
            payload=payload,
            previous_hash=previous_hash,
            event_hash=_link_hash(
                previous_hash, event_id, event_kind.value, subject_id, stamp, payload,
            ),
        )

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EventRecord:
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            subject_id=data["subject_id"],
            timestamp_utc=data["timestamp_utc"],
            payload=data["payload"],
            previous_hash=data["previous_hash"],
            event_hash=data["event_hash"],
        )

    def expected_hash(self) -> str:
        return _link_hash(
            self.previous_hash,
            self.event_id,
            self.event_kind.value,
            self.subject_id,
            self.timestamp_utc,
            self.payload,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "subject_id": self.subject_id,
            "timestamp_utc": self.timestamp_utc,
            "payload": self.payload,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only, hash-chained event log with optional JSONL mirror.

    Usage:
        log = EventLog(storage_path=Path("data/events.jsonl"))
        log.record("EVT-00000001", EventKind.SESSION_STARTED, "HS-...", {"mode": "guest"})
        trail = log.events(subject_id="HS-...")
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path
        self._chain: list[EventRecord] = []
        self._ids: set[str] = set()
        self._lock = threading.Lock()
        if storage_path is not None and storage_path.exists():
            for line_no, record in self._read(storage_path):
                self._check(record, where=f"line {line_no}")
                self._push(record)

    @property
    def head(self) -> str:
        """Hash of the newest record, or the chain root when empty."""
        with self._lock:
            return self._chain[-1].event_hash if self._chain else CHAIN_ROOT

    def record(
        self,
        event_id: str,
        event_kind: EventKind,
        subject_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Build the next link on the current head and append it."""
        with self._lock:
            head = self._chain[-1].event_hash if self._chain else CHAIN_ROOT
            event = EventRecord.create(
                event_id, event_kind, subject_id, payload, timestamp_utc, previous_hash=head,
            )
            self._check(event, where="append")
            self._mirror(event)
            self._push(event)
            return event

    def append(self, event: EventRecord) -> None:
        """Append a record built elsewhere. It must extend the current head.

        Raises ValueError on a duplicate id, a broken link, or a bad hash.
        """
        with self._lock:
            self._check(event, where="append")
            self._mirror(event)
            self._push(event)

    def events(
        self,
        kind: Optional[EventKind] = None,
        subject_id: Optional[str] = None,
    ) -> list[EventRecord]:
        with self._lock:
            chain = list(self._chain)
        return [
            e for e in chain
            if (kind is None or e.event_kind == kind)
            and (subject_id is None or e.subject_id == subject_id)
        ]

    def events_since(
        self,
        since_utc: str,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Events stamped at or after since_utc (same string format)."""
        return [e for e in self.events(kind) if e.timestamp_utc >= since_utc]

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._chain)

    @property
    def last_event(self) -> Optional[EventRecord]:
        with self._lock:
            return self._chain[-1] if self._chain else None

    def verify_chain(self) -> list[str]:
        """Re-walk the in-memory chain. Returns the broken links, if any."""
        problems: list[str] = []
        previous = CHAIN_ROOT
        for e in self.events():
            if e.previous_hash != previous:
                problems.append(f"{e.event_id}: link does not follow {previous}")
            if e.event_hash != e.expected_hash():
                problems.append(f"{e.event_id}: hash mismatch")
            previous = e.event_hash
        return problems

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check(self, event: EventRecord, where: str) -> None:
        # Caller holds the lock (or is the constructor).
        head = self._chain[-1].event_hash if self._chain else CHAIN_ROOT
        if event.event_id in self._ids:
            raise ValueError(f"Duplicate event ID ({where}): {event.event_id}")
        if event.previous_hash != head:
            raise ValueError(
                f"Chain broken ({where}): {event.event_id} links to "
                f"{event.previous_hash}, head is {head}"
            )
        if event.event_hash != event.expected_hash():
            raise ValueError(
                f"Integrity check failed ({where}): event {event.event_id} "
                f"stored hash {event.event_hash} != computed {event.expected_hash()}"
            )

    def _push(self, event: EventRecord) -> None:
        self._chain.append(event)
        self._ids.add(event.event_id)

    def _mirror(self, event: EventRecord) -> None:
        if self._storage_path is None:
            return
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    @staticmethod
    def _read(path: Path) -> Iterator[tuple[int, EventRecord]]:
        with path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                if line.strip():
                    yield line_no, EventRecord.from_dict(json.loads(line))
