"""Goal engine — rule evaluation, goal completion tracking, reward settlement."""

from gamify.engine.goal_tracker import GoalCompletionTracker
from gamify.engine.rule_evaluator import RuleEvaluator
from gamify.engine.settlement import RewardSettlement, SettlementReceipt

__all__ = [
    "GoalCompletionTracker",
    "RewardSettlement",
    "RuleEvaluator",
    "SettlementReceipt",
]
