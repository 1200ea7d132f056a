"""Append-only event log — the audit trail of every linkage mutation.

Every committed operation appends one or more event records. Records
are immutable once written and carry a SHA-256 hash of their canonical
JSON form, so a log file can be verified line by line on recovery.

If the log cannot accept an event, the operation that produced it is
rolled back. No escrow moves without an audit record.
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
    """Classification of linkage events."""
    LINKAGE_CREATED = "linkage_created"
    VOTE_CAST = "vote_cast"
    LINKAGE_VERIFIED = "linkage_verified"
    LINKAGE_REJECTED = "linkage_rejected"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_RECLAIMED = "escrow_reclaimed"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    REVENUE_SHARE_SET = "revenue_share_set"
    METADATA_UPDATED = "metadata_updated"
    CONTRACT_PAUSED = "contract_paused"
    CONTRACT_UNPAUSED = "contract_unpaused"
    AUTHORITY_TRANSFERRED = "authority_transferred"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    block_height: int,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "block_height": block_height,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the linkage log."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    block_height: int
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        block_height: int = 0,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            block_height=block_height,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, block_height, actor_id, payload,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "block_height": self.block_height,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional JSONL file persistence."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append a single event to the log. See append_many()."""
        self.append_many([event])

    def append_many(self, events: list[EventRecord]) -> None:
        """Append a batch of events, all or none.

        Raises ValueError if any event_id is a duplicate, either of a
        logged event or within the batch (replay protection). The batch
        goes to the file in one write; if that write fails the file is
        truncated back to its previous length and the OSError propagates
        with the in-memory log unchanged.
        """
        batch_ids: set[str] = set()
        for event in events:
            if event.event_id in self._event_ids or event.event_id in batch_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            batch_ids.add(event.event_id)
        if not events:
            return

        if self._storage_path:
            lines = "".join(
                json.dumps(e.to_dict(), sort_keys=True, ensure_ascii=False) + "\n"
                for e in events
            )
            with self._storage_path.open("a", encoding="utf-8") as f:
                offset = f.tell()
                try:
                    f.write(lines)
                    f.flush()
                except OSError:
                    f.truncate(offset)
                    raise

        self._events.extend(events)
        self._event_ids.update(batch_ids)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for_linkage(self, flight_id: str, project_id: str) -> list[EventRecord]:
        return [
            e for e in self._events
            if e.payload.get("flight_id") == flight_id
            and e.payload.get("project_id") == project_id
        ]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load_from_file(self, path: Path) -> None:
        """Load events from JSONL, rejecting tampered or replayed records."""
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
                    data["block_height"],
                    data["actor_id"],
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
                    block_height=data["block_height"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
