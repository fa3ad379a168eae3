"""Append-only event log — the audit record of every engine state change.

Every successful mutation (task completion, reward grant, offer, bid,
payout, refund, administrative change) appends one event. Events are
immutable once written. The log serves as:
1. The audit trail of every coin that moved and every goal finished.
2. The source for reconstructing who was paid what, and why.

Integrity: each event carries a SHA-256 hash over its canonical JSON.
Loading a persisted log recomputes every hash and rejects tampered
records and duplicate ids (fail-closed).
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
    """Classification of engine events."""
    # Goal engine events
    TASK_COMPLETED = "task_completed"
    GOAL_FINISHED = "goal_finished"
    REWARDS_APPLIED = "rewards_applied"
    GOAL_CREATED = "goal_created"
    GOAL_UPDATED = "goal_updated"
    GOAL_DELETED = "goal_deleted"
    # Marketplace events
    MARKETPLACE_CREATED = "marketplace_created"
    MARKETPLACE_DELETED = "marketplace_deleted"
    OFFER_CREATED = "offer_created"
    OFFER_UPDATED = "offer_updated"
    BID_PLACED = "bid_placed"
    OFFER_COMPLETED = "offer_completed"
    OFFER_CANCELLED = "offer_cancelled"
    # Group events
    GROUP_CREATED = "group_created"
    GROUP_MEMBERSHIP_CHANGED = "group_membership_changed"
    GROUP_UPDATED = "group_updated"
    GROUP_DELETED = "group_deleted"
    # Present board events
    PRESENT_SENT = "present_sent"
    PRESENT_RESOLVED = "present_resolved"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """One immutable audit entry.

    event_hash covers every other field, so a record read back from disk
    can be checked with verify() without trusting the file.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Stamp and hash a new record (UTC, second precision)."""
        stamped = (timestamp_utc or datetime.now(timezone.utc)).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=stamped,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, stamped, actor_id, payload,
            ),
        )

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record. Raises KeyError/ValueError on bad input."""
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
        )

    def expected_hash(self) -> str:
        return _canonical_hash(
            self.event_id,
            self.event_kind.value,
            self.timestamp_utc,
            self.actor_id,
            self.payload,
        )

    def verify(self) -> bool:
        return self.event_hash == self.expected_hash()

    @property
    def org_id(self) -> Optional[str]:
        return self.payload.get("org_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only audit log, in memory or backed by a JSONL file.

    Usage:
        log = EventLog(Path("data/events.jsonl"))   # verifies on load
        log.append(EventRecord.create("EVT-00000001", EventKind.BID_PLACED, "bob", {...}))
        log.events_for_offer("OFR-00000001")
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._records: list[EventRecord] = []
        self._ids: set[str] = set()
        if storage_path is not None and storage_path.exists():
            self._replay(storage_path)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def count(self) -> int:
        return len(self._records)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._records[-1] if self._records else None

    def append(self, event: EventRecord) -> None:
        """Add one record, writing it through to the file first.

        Raises:
            ValueError: the event id is already in the log.
            OSError: the file write failed (the record is not kept).
        """
        if event.event_id in self._ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if self._path is not None:
            line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        self._records.append(event)
        self._ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Records in append order, optionally of one kind only."""
        if kind is None:
            return list(self._records)
        return [r for r in self._records if r.event_kind == kind]

    def events_for_actor(self, actor_id: str) -> list[EventRecord]:
        return [r for r in self._records if r.actor_id == actor_id]

    def events_for_org(self, org_id: str) -> list[EventRecord]:
        return [r for r in self._records if r.org_id == org_id]

    def events_for_offer(self, offer_id: str) -> list[EventRecord]:
        """The offer's whole history: creation, bids, updates, close."""
        return [r for r in self._records if r.payload.get("offer_id") == offer_id]

    def kind_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._records:
            counts[record.event_kind.value] = counts.get(record.event_kind.value, 0) + 1
        return dict(sorted(counts.items()))

    def verify(self) -> list[str]:
        """Re-check every record hash. Returns one error per bad record."""
        return [
            f"Event {r.event_id} hash mismatch" for r in self._records if not r.verify()
        ]

    def _replay(self, path: Path) -> None:
        """Load a JSONL log, rejecting tampered records and repeated ids."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, raw in enumerate(f, 1):
                if not raw.strip():
                    continue
                record = EventRecord.from_dict(json.loads(raw))
                if record.event_id in self._ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): "
                        f"{record.event_id}"
                    )
                if not record.verify():
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event "
                        f"{record.event_id} stored hash {record.event_hash} "
                        f"!= computed {record.expected_hash()}"
                    )
                self._records.append(record)
                self._ids.add(record.event_id)
