"""Persistence layer — event log and state storage."""

from offsetlink.persistence.event_log import EventLog, EventRecord, EventKind
from offsetlink.persistence.state_store import StateStore

__all__ = ["EventLog", "EventRecord", "EventKind", "StateStore"]
