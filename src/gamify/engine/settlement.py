"""Reward settlement — applies a reward list to one subject.

Dispatch by reward kind:
    COINS       → subject.coins += amount
    POINTS      → subject.points += amount
    BADGE       → appended to subject.permanent_rewards
    ACHIEVEMENT → appended to subject.permanent_rewards

Permanent reward identity is the reward id, not the kind: the same badge
earned twice yields two ledger entries unless dedupe is switched on.

Settlement touches nothing but the subject's own fields. Re-evaluating
points goals after a points award is the goal tracker's job; the
receipt reports points_awarded so it knows when to do it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from gamify.errors import not_found
from gamify.models.player import Subject
from gamify.models.reward import PermanentRewardEntry, Reward, RewardKind

logger = logging.getLogger(__name__)


@dataclass
class SettlementReceipt:
    """What one apply() call changed."""
    coins_awarded: int = 0
    points_awarded: int = 0
    permanent_added: list[str] = field(default_factory=list)
    permanent_skipped: list[str] = field(default_factory=list)

    def merge(self, other: SettlementReceipt) -> None:
        self.coins_awarded += other.coins_awarded
        self.points_awarded += other.points_awarded
        self.permanent_added.extend(other.permanent_added)
        self.permanent_skipped.extend(other.permanent_skipped)

    def to_dict(self) -> dict:
        return {
            "coins_awarded": self.coins_awarded,
            "points_awarded": self.points_awarded,
            "permanent_added": list(self.permanent_added),
            "permanent_skipped": list(self.permanent_skipped),
        }


class RewardSettlement:
    """Applies rewards to a player or group.

    Usage:
        settlement = RewardSettlement(dedupe_permanent=False)
        receipt = settlement.apply(rewards, player, now=now, goal_id="g1")
    """

    def __init__(self, dedupe_permanent: bool = False) -> None:
        self._dedupe_permanent = dedupe_permanent

    def apply(
        self,
        rewards: list[Reward],
        subject: Subject,
        now: Optional[datetime] = None,
        goal_id: Optional[str] = None,
    ) -> SettlementReceipt:
        """Apply every reward in order. Returns a receipt of the changes."""
        if now is None:
            now = datetime.now(timezone.utc)
        for reward in rewards:
            if reward.org_id != subject.org_id:
                raise not_found("Reward", reward.reward_id)

        receipt = SettlementReceipt()
        for reward in rewards:
            if reward.kind == RewardKind.COINS:
                subject.coins += reward.amount
                receipt.coins_awarded += reward.amount
            elif reward.kind == RewardKind.POINTS:
                subject.points += reward.amount
                receipt.points_awarded += reward.amount
            elif reward.kind in (RewardKind.BADGE, RewardKind.ACHIEVEMENT):
                if self._dedupe_permanent and subject.holds_reward(reward.reward_id):
                    receipt.permanent_skipped.append(reward.reward_id)
                    continue
                subject.permanent_rewards.append(
                    PermanentRewardEntry(
                        reward_id=reward.reward_id,
                        kind=reward.kind,
                        name=reward.name,
                        awarded_utc=now,
                        goal_id=goal_id,
                    )
                )
                receipt.permanent_added.append(reward.reward_id)
            else:
                raise ValueError(f"Unknown reward kind: {reward.kind!r}")

        logger.debug(
            "Settled %d reward(s) on %s %s: +%d coins, +%d points, %d permanent",
            len(rewards), subject.kind.value, subject.subject_id,
            receipt.coins_awarded, receipt.points_awarded,
            len(receipt.permanent_added),
        )
        return receipt
