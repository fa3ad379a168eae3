"""Reward-bearing subjects — players and player groups.

A PlayerGroup has the same reward-bearing shape as a Player, but its
balances, finished goals and permanent rewards are wholly separate from
those of its members. Nothing awarded to a group flows to its members.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from gamify.models.goal import FinishedGoal
from gamify.models.reward import PermanentRewardEntry, RewardKind


class SubjectKind(str, enum.Enum):
    """Which kind of subject completed something."""
    PLAYER = "player"
    GROUP = "group"


@dataclass
class Level:
    """A subject's level: ordinal index plus display label."""
    index: int = 0
    label: str = ""


@dataclass
class Subject(ABC):
    """Shared reward-bearing state of players and groups. Never instantiated itself.

    completed_tasks is the historical record of task completions, in
    order, used by TaskRule/ALL evaluation.
    """
    subject_id: str
    org_id: str
    name: str
    coins: int = 0
    points: int = 0
    level: Level = field(default_factory=Level)
    completed_tasks: list[str] = field(default_factory=list)
    finished_goals: list[FinishedGoal] = field(default_factory=list)
    permanent_rewards: list[PermanentRewardEntry] = field(default_factory=list)

    @property
    @abstractmethod
    def kind(self) -> SubjectKind:
        """Whether this subject is a player or a group."""

    def has_coins(self, amount: int) -> bool:
        return self.coins >= amount

    def finished_goals_for(self, goal_id: str) -> list[FinishedGoal]:
        return [fg for fg in self.finished_goals if fg.goal_id == goal_id]

    def has_finished(self, goal_id: str) -> bool:
        return any(fg.goal_id == goal_id for fg in self.finished_goals)

    def badges(self) -> list[PermanentRewardEntry]:
        return [r for r in self.permanent_rewards if r.kind == RewardKind.BADGE]

    def achievements(self) -> list[PermanentRewardEntry]:
        return [r for r in self.permanent_rewards if r.kind == RewardKind.ACHIEVEMENT]

    def holds_reward(self, reward_id: str) -> bool:
        return any(r.reward_id == reward_id for r in self.permanent_rewards)


@dataclass
class Player(Subject):
    """An individual player. role_ids drive goal eligibility."""
    role_ids: set[str] = field(default_factory=set)
    email: Optional[str] = None

    @property
    def kind(self) -> SubjectKind:
        return SubjectKind.PLAYER


@dataclass
class PlayerGroup(Subject):
    """A group of players with its own, separate reward state."""
    player_ids: list[str] = field(default_factory=list)

    @property
    def kind(self) -> SubjectKind:
        return SubjectKind.GROUP

    def add_players(self, player_ids: list[str]) -> list[str]:
        """Add members not already present. Returns the ids actually added."""
        added = []
        for pid in player_ids:
            if pid not in self.player_ids:
                self.player_ids.append(pid)
                added.append(pid)
        return added

    def remove_players(self, player_ids: list[str]) -> list[str]:
        """Remove members that are present. Returns the ids actually removed."""
        removed = []
        for pid in player_ids:
            if pid in self.player_ids:
                self.player_ids.remove(pid)
                removed.append(pid)
        return removed
