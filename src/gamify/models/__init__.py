"""Core data models for the gamification engine."""

from gamify.models.goal import (
    FinishedGoal,
    Goal,
    GoalRule,
    RuleKind,
    Task,
    TaskRuleMode,
)
from gamify.models.market import Bid, EscrowEntry, MarketPlace, Offer, OfferState
from gamify.models.organisation import Organisation, Role
from gamify.models.player import Level, Player, PlayerGroup, Subject, SubjectKind
from gamify.models.present import Board, Present
from gamify.models.reward import PermanentRewardEntry, Reward, RewardKind

__all__ = [
    "Bid",
    "Board",
    "EscrowEntry",
    "FinishedGoal",
    "Goal",
    "GoalRule",
    "Level",
    "MarketPlace",
    "Offer",
    "OfferState",
    "Organisation",
    "PermanentRewardEntry",
    "Player",
    "PlayerGroup",
    "Present",
    "Reward",
    "RewardKind",
    "Role",
    "RuleKind",
    "Subject",
    "SubjectKind",
    "Task",
    "TaskRuleMode",
]
