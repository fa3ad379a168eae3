"""Goal completion tracker — records finished goals and triggers settlement.

On every task completion by a subject (player or group):
1. Candidates are the organisation's goals whose TaskRule references the
   task, plus every PointsRule goal of the organisation.
2. A candidate is skipped unless the subject is eligible: the subject
   kind matches the goal's group flag, and the goal has no role
   restriction or the subject's roles intersect it.
3. A candidate is skipped if the subject already finished it and a
   repeat is forbidden (non-repeatable, or any PointsRule goal).
4. If the rule is satisfied, a FinishedGoal is appended to the subject
   and the goal's rewards are settled on the subject.

Points goals are swept after the task goals so that points awarded by
the triggering action are counted. When reevaluate_points_on_reward is
set, the sweep repeats while it keeps finishing goals, since a points
goal's own rewards may cross another threshold. The loop terminates:
points goals are one-shot, so every round finishes a new one or stops.

A player completing a task never finishes a goal for their groups.
Group progress needs a completion call with the group as the subject.

Validation happens before any mutation: unknown rules or rewards raise
EngineError with the subject untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from gamify.engine.rule_evaluator import RuleEvaluator
from gamify.engine.settlement import RewardSettlement, SettlementReceipt
from gamify.errors import EngineError, ErrorKind, not_found
from gamify.models.goal import FinishedGoal, Goal, GoalRule, RuleKind, Task
from gamify.models.player import Player, PlayerGroup, Subject, SubjectKind
from gamify.models.reward import Reward
from gamify.persistence.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Candidate:
    goal: Goal
    rule: GoalRule
    rewards: list[Reward]


class GoalCompletionTracker:
    """Tracks per-subject goal completion and settles rewards exactly once.

    Usage:
        tracker = GoalCompletionTracker(repository, RewardSettlement())
        finished = tracker.on_task_completed(player, task, "org-1", now)
    """

    def __init__(
        self,
        repository: Repository,
        settlement: RewardSettlement,
        reevaluate_points_on_reward: bool = True,
    ) -> None:
        self._repo = repository
        self._settlement = settlement
        self._evaluator = RuleEvaluator()
        self._reevaluate_points = reevaluate_points_on_reward

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def on_task_completed(
        self,
        subject: Subject,
        task: Task,
        org_id: str,
        now: Optional[datetime] = None,
        receipt: Optional[SettlementReceipt] = None,
    ) -> list[Goal]:
        """Record a task completion and finish every goal it satisfies.

        Returns the goals newly finished, task goals first, then points
        goals in the order they were crossed. If `receipt` is given, the
        settlement totals are merged into it.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if subject.org_id != org_id:
            raise not_found(subject.kind.value.capitalize(), subject.subject_id)
        if task.org_id != org_id:
            raise not_found("Task", task.task_id)

        task_candidates, points_candidates = self._collect(org_id, task.task_id)
        receipt = receipt if receipt is not None else SettlementReceipt()

        subject.completed_tasks.append(task.task_id)
        logger.debug(
            "%s %s completed task %s",
            subject.kind.value, subject.subject_id, task.task_id,
        )

        finished: list[Goal] = []
        for cand in task_candidates:
            if not self._should_evaluate(cand, subject):
                continue
            if self._evaluator.evaluate(cand.rule, subject, task.task_id):
                receipt.merge(self._finish(cand, subject, now))
                finished.append(cand.goal)

        finished.extend(self._sweep_points(points_candidates, subject, now, receipt))
        return finished

    def reevaluate_points_goals(
        self,
        subject: Subject,
        now: Optional[datetime] = None,
        receipt: Optional[SettlementReceipt] = None,
    ) -> list[Goal]:
        """Re-check the organisation's PointsRule goals after a points change."""
        if now is None:
            now = datetime.now(timezone.utc)
        _, points_candidates = self._collect(subject.org_id, None)
        receipt = receipt if receipt is not None else SettlementReceipt()
        return self._sweep_points(points_candidates, subject, now, receipt)

    def award_goal(
        self,
        goal: Goal,
        subject: Subject,
        now: Optional[datetime] = None,
        receipt: Optional[SettlementReceipt] = None,
    ) -> FinishedGoal:
        """Finish a goal without evaluating its rule (administrative grant).

        Raises:
            EngineError(INELIGIBLE): subject kind or roles do not qualify.
            EngineError(INVALID_STATE): the goal may not be repeated.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if goal.org_id != subject.org_id:
            raise not_found("Goal", goal.goal_id)
        cand = self._candidate(goal)
        if not self.is_eligible(goal, subject):
            raise EngineError(
                ErrorKind.INELIGIBLE,
                f"{subject.kind.value.capitalize()} {subject.subject_id} "
                f"is not eligible for goal {goal.goal_id}",
            )
        if not self.repeat_allowed(goal, cand.rule, subject):
            raise EngineError(
                ErrorKind.INVALID_STATE,
                f"Goal {goal.goal_id} already finished by {subject.subject_id} "
                f"and cannot be repeated",
            )
        receipt = receipt if receipt is not None else SettlementReceipt()
        receipt.merge(self._finish(cand, subject, now))
        record = subject.finished_goals[-1]
        if receipt.points_awarded and self._reevaluate_points:
            _, points_candidates = self._collect(subject.org_id, None)
            self._sweep_points(points_candidates, subject, now, receipt)
        return record

    # ------------------------------------------------------------------
    # Policy checks
    # ------------------------------------------------------------------

    def effective_roles(self, subject: Subject) -> set[str]:
        """A player's roles, or the union of a group's members' roles."""
        if isinstance(subject, Player):
            return set(subject.role_ids)
        if isinstance(subject, PlayerGroup):
            roles: set[str] = set()
            for pid in subject.player_ids:
                member = self._repo.players.get(pid)
                if member is not None:
                    roles |= member.role_ids
            return roles
        return set()

    def is_eligible(self, goal: Goal, subject: Subject) -> bool:
        """Subject kind matches the group flag and roles intersect (if any)."""
        wants_group = subject.kind == SubjectKind.GROUP
        if goal.group_goal != wants_group:
            return False
        if not goal.role_ids:
            return True
        return bool(goal.role_ids & self.effective_roles(subject))

    @staticmethod
    def repeat_allowed(goal: Goal, rule: GoalRule, subject: Subject) -> bool:
        """Points goals are one-shot regardless of the repeatable flag."""
        if not subject.has_finished(goal.goal_id):
            return True
        return goal.repeatable and rule.kind != RuleKind.POINTS

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _collect(
        self, org_id: str, task_id: Optional[str],
    ) -> tuple[list[_Candidate], list[_Candidate]]:
        """Resolve candidate goals with their rules and rewards (no mutation)."""
        task_cands: list[_Candidate] = []
        points_cands: list[_Candidate] = []
        for goal in sorted(self._repo.goals_for_org(org_id), key=lambda g: g.goal_id):
            rule = self._repo.get_rule(org_id, goal.rule_id)
            if rule.kind == RuleKind.POINTS:
                points_cands.append(self._candidate(goal, rule))
            elif task_id is not None and rule.references_task(task_id):
                task_cands.append(self._candidate(goal, rule))
        return task_cands, points_cands

    def _candidate(self, goal: Goal, rule: Optional[GoalRule] = None) -> _Candidate:
        if rule is None:
            rule = self._repo.get_rule(goal.org_id, goal.rule_id)
        rewards = self._repo.get_rewards(goal.org_id, goal.reward_ids)
        return _Candidate(goal=goal, rule=rule, rewards=rewards)

    def _should_evaluate(self, cand: _Candidate, subject: Subject) -> bool:
        return self.is_eligible(cand.goal, subject) and self.repeat_allowed(
            cand.goal, cand.rule, subject,
        )

    def _sweep_points(
        self,
        candidates: list[_Candidate],
        subject: Subject,
        now: datetime,
        receipt: SettlementReceipt,
    ) -> list[Goal]:
        finished: list[Goal] = []
        while True:
            round_finished: list[Goal] = []
            for cand in candidates:
                if not self._should_evaluate(cand, subject):
                    continue
                if self._evaluator.evaluate(cand.rule, subject):
                    receipt.merge(self._finish(cand, subject, now))
                    round_finished.append(cand.goal)
            finished.extend(round_finished)
            if not round_finished or not self._reevaluate_points:
                return finished

    def _finish(
        self, cand: _Candidate, subject: Subject, now: datetime,
    ) -> SettlementReceipt:
        record = FinishedGoal(
            finished_id=f"fg_{uuid4().hex[:12]}",
            goal_id=cand.goal.goal_id,
            subject_id=subject.subject_id,
            subject_kind=subject.kind.value,
            finished_utc=now,
        )
        subject.finished_goals.append(record)
        logger.debug(
            "%s %s finished goal %s",
            subject.kind.value, subject.subject_id, cand.goal.goal_id,
        )
        return self._settlement.apply(
            cand.rewards, subject, now=now, goal_id=cand.goal.goal_id,
        )
