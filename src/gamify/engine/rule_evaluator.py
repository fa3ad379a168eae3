"""Rule evaluator — decides whether a completion event satisfies a goal rule.

Semantics per rule kind:
- TASK / ALL: every task in the rule appears in the subject's completed
  task history (which already includes the triggering completion).
- TASK / ONE: the triggering task is one of the rule's tasks.
- POINTS:     the subject's current points reach the threshold.

A task rule with no tasks is never satisfiable. A points rule with a
threshold <= 0 is satisfied immediately.

Pure computation: reads the subject, never mutates it.
"""

from __future__ import annotations

from typing import Optional

from gamify.models.goal import GoalRule, RuleKind, TaskRuleMode
from gamify.models.player import Subject


class RuleEvaluator:
    """Evaluates GoalRule variants against a subject."""

    @staticmethod
    def evaluate(
        rule: GoalRule,
        subject: Subject,
        completed_task_id: Optional[str] = None,
    ) -> bool:
        """Return True if `rule` is satisfied for `subject`.

        completed_task_id is the task whose completion triggered this
        evaluation, or None when re-checking after a points change.
        """
        if rule.kind == RuleKind.POINTS:
            return RuleEvaluator._points_satisfied(rule, subject)
        if rule.kind == RuleKind.TASK:
            return RuleEvaluator._tasks_satisfied(rule, subject, completed_task_id)
        raise ValueError(f"Unknown rule kind: {rule.kind!r}")

    @staticmethod
    def _points_satisfied(rule: GoalRule, subject: Subject) -> bool:
        return subject.points >= rule.points_threshold

    @staticmethod
    def _tasks_satisfied(
        rule: GoalRule,
        subject: Subject,
        completed_task_id: Optional[str],
    ) -> bool:
        if not rule.task_ids:
            return False
        if rule.mode == TaskRuleMode.ONE:
            return completed_task_id is not None and completed_task_id in rule.task_ids
        history = set(subject.completed_tasks)
        return all(task_id in history for task_id in rule.task_ids)
