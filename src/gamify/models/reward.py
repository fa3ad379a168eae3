"""Reward models — the reward catalog and the permanent-reward ledger.

Reward is a closed tagged union dispatched on `kind`:
    COINS / POINTS      → `amount` added to the subject's balance
    BADGE / ACHIEVEMENT → permanent, appended to the subject's ledger
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class RewardKind(str, enum.Enum):
    """Variant tag of a reward."""
    COINS = "coins"
    POINTS = "points"
    BADGE = "badge"
    ACHIEVEMENT = "achievement"


PERMANENT_KINDS = frozenset({RewardKind.BADGE, RewardKind.ACHIEVEMENT})
VOLATILE_KINDS = frozenset({RewardKind.COINS, RewardKind.POINTS})


@dataclass(frozen=True)
class Reward:
    """A reward definition from the catalog. Consumed, never mutated."""
    reward_id: str
    org_id: str
    kind: RewardKind
    name: str = ""
    amount: int = 0
    description: str = ""

    def __post_init__(self) -> None:
        if self.kind in VOLATILE_KINDS and self.amount < 0:
            raise ValueError(f"Reward {self.reward_id}: amount must be >= 0")
        if self.kind in PERMANENT_KINDS and self.amount != 0:
            raise ValueError(
                f"Reward {self.reward_id}: {self.kind.value} rewards carry no amount"
            )

    @property
    def is_permanent(self) -> bool:
        return self.kind in PERMANENT_KINDS


@dataclass(frozen=True)
class PermanentRewardEntry:
    """One held badge or achievement. Identity is the reward id."""
    reward_id: str
    kind: RewardKind
    name: str
    awarded_utc: datetime
    goal_id: Optional[str] = None
