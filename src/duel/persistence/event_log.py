"""Append-only event log — the local audit trail of match actions.

Every ledger submission the client makes, and every local state decision
taken as a result of a ledger read, is appended as an EventRecord. The
log is what an operator reads to answer "what did this client send, and
when" after a crash or a disputed settlement. Events are immutable once
written.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of client-side match events."""
    MATCH_CREATED = "match_created"
    MATCH_JOINED = "match_joined"
    MATCH_STARTED = "match_started"
    REVEAL_SUBMITTED = "reveal_submitted"
    MATCH_SETTLED = "match_settled"
    MATCH_CANCELLED = "match_cancelled"
    STUCK_MATCH_CLEARED = "stuck_match_cleared"
    MATCH_FORCE_EXPIRED = "match_force_expired"
    SESSION_RESUMED = "session_resumed"
    SECRET_ADOPTED = "secret_adopted"
    SECRET_DISCARDED = "secret_discarded"
    INCONSISTENCY_DETECTED = "inconsistency_detected"
    SUBMISSION_FAILED = "submission_failed"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor: str,
    match_id: Optional[int],
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor": actor,
            "match_id": match_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event. event_hash covers every other field."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor: str
    match_id: Optional[int]
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor: str,
        match_id: Optional[int],
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor=actor,
            match_id=match_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, actor, match_id, payload,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor": self.actor,
            "match_id": self.match_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL persistence.

    Loading a persisted log recomputes every hash and rejects duplicate
    event ids, so a tampered or replayed file fails loudly.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def record(
        self,
        event_kind: EventKind,
        actor: str,
        match_id: Optional[int] = None,
        **payload: Any,
    ) -> EventRecord:
        """Create and append an event with the next sequential id."""
        event = EventRecord.create(
            event_id=f"evt-{self.count + 1:06d}",
            event_kind=event_kind,
            actor=actor,
            match_id=match_id,
            payload=payload,
        )
        self.append(event)
        return event

    def append(self, event: EventRecord) -> None:
        """Raises ValueError if event_id is a duplicate."""
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        self._events.append(event)
        self._event_ids.add(event.event_id)
        if self._storage_path:
            self._append_to_file(event)

    def events(
        self,
        kind: Optional[EventKind] = None,
        match_id: Optional[int] = None,
    ) -> list[EventRecord]:
        result = list(self._events)
        if kind is not None:
            result = [e for e in result if e.event_kind == kind]
        if match_id is not None:
            result = [e for e in result if e.match_id == match_id]
        return result

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor"],
                    data["match_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                self._events.append(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor=data["actor"],
                    match_id=data["match_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
