"""Present models — messages players send each other, and their boards.

Board collections:
    inbox   → received, not yet answered
    current → accepted
    archive → accepted and later archived
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Present:
    """A present sent by one player. The same present can sit on several boards."""
    present_id: str
    org_id: str
    sender_id: str
    message: str
    sent_utc: Optional[datetime] = None


@dataclass
class Board:
    """A player's present board. Holds present ids, not presents."""
    owner_id: str
    org_id: str
    inbox: list[str] = field(default_factory=list)
    current: list[str] = field(default_factory=list)
    archive: list[str] = field(default_factory=list)
