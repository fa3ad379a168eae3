"""Goal models — tasks, goal rules, goals, and finished-goal receipts.

GoalRule is a closed tagged union dispatched on `kind`:
    TASK   → task_ids + mode (ALL / ONE)
    POINTS → points_threshold

A FinishedGoal is the receipt proving a goal was satisfied once by a
subject. Its existence for (goal, subject) is the idempotency key.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class RuleKind(str, enum.Enum):
    """Variant tag of a goal rule."""
    TASK = "task"
    POINTS = "points"


class TaskRuleMode(str, enum.Enum):
    """How a task rule combines its tasks."""
    ALL = "all"
    ONE = "one"


@dataclass
class Task:
    """An atomic unit of work.

    Only tradeable tasks may be offered on the marketplace. role_ids
    restricts who sees the task's offers (empty = every role).
    """
    task_id: str
    org_id: str
    name: str
    tradeable: bool = False
    description: str = ""
    role_ids: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class GoalRule:
    """The condition a goal must meet. Build with task_rule() / points_rule()."""
    rule_id: str
    org_id: str
    kind: RuleKind
    name: str = ""
    description: str = ""
    task_ids: tuple[str, ...] = ()
    mode: TaskRuleMode = TaskRuleMode.ALL
    points_threshold: int = 0

    def __post_init__(self) -> None:
        if self.kind == RuleKind.POINTS and self.task_ids:
            raise ValueError("A points rule cannot reference tasks")

    @staticmethod
    def task_rule(
        rule_id: str,
        org_id: str,
        task_ids: list[str],
        mode: TaskRuleMode = TaskRuleMode.ALL,
        name: str = "",
    ) -> GoalRule:
        return GoalRule(
            rule_id=rule_id,
            org_id=org_id,
            kind=RuleKind.TASK,
            name=name,
            task_ids=tuple(task_ids),
            mode=mode,
        )

    @staticmethod
    def points_rule(
        rule_id: str,
        org_id: str,
        threshold: int,
        name: str = "",
    ) -> GoalRule:
        return GoalRule(
            rule_id=rule_id,
            org_id=org_id,
            kind=RuleKind.POINTS,
            name=name,
            points_threshold=threshold,
        )

    def references_task(self, task_id: str) -> bool:
        return self.kind == RuleKind.TASK and task_id in self.task_ids


@dataclass
class Goal:
    """A reward-granting objective tied to one rule.

    role_ids empty means every subject is eligible. A group goal can
    only be completed by a PlayerGroup; any other goal only by a Player.
    """
    goal_id: str
    org_id: str
    name: str
    rule_id: str
    reward_ids: list[str] = field(default_factory=list)
    role_ids: set[str] = field(default_factory=set)
    repeatable: bool = True
    group_goal: bool = False


@dataclass(frozen=True)
class FinishedGoal:
    """Receipt for one completion of a goal by a subject."""
    finished_id: str
    goal_id: str
    subject_id: str
    subject_kind: str
    finished_utc: datetime
