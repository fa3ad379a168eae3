"""Persistence layer — entity repository, event log, state snapshots."""

from gamify.persistence.event_log import EventKind, EventLog, EventRecord
from gamify.persistence.repository import Repository

__all__ = ["EventKind", "EventLog", "EventRecord", "Repository"]
