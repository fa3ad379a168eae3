"""Tests for the goal completion tracker — idempotency, eligibility, points sweep."""

import pytest
from datetime import datetime, timezone

from gamify.engine.goal_tracker import GoalCompletionTracker
from gamify.engine.settlement import RewardSettlement
from gamify.errors import EngineError, ErrorKind
from gamify.models.goal import Goal, GoalRule, Task, TaskRuleMode
from gamify.models.organisation import Organisation, Role
from gamify.models.player import Player, PlayerGroup
from gamify.models.reward import Reward, RewardKind
from gamify.persistence.repository import Repository


def _now() -> datetime:
    return datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def _repo() -> Repository:
    repo = Repository()
    repo.add_organisation(Organisation("org", "Org"))
    repo.add_role(Role("dev", "org", "Developer"))
    repo.add_role(Role("ops", "org", "Operations"))
    for tid in ("t1", "t2", "t3"):
        repo.add_task(Task(tid, "org", tid.upper()))
    repo.add_reward(Reward("c10", "org", RewardKind.COINS, amount=10))
    repo.add_reward(Reward("p50", "org", RewardKind.POINTS, amount=50))
    repo.add_reward(Reward("badge", "org", RewardKind.BADGE, name="Star"))
    repo.add_player(Player("alice", "org", "Alice", role_ids={"dev"}))
    repo.add_player(Player("bob", "org", "Bob", role_ids={"ops"}))
    return repo


def _tracker(repo: Repository, reevaluate: bool = True) -> GoalCompletionTracker:
    return GoalCompletionTracker(repo, RewardSettlement(), reevaluate_points_on_reward=reevaluate)


def _task_goal(
    repo: Repository,
    goal_id: str,
    task_ids: list[str],
    mode: TaskRuleMode = TaskRuleMode.ALL,
    reward_ids: list[str] | None = None,
    **kwargs,
) -> Goal:
    repo.add_rule(GoalRule.task_rule(f"rule-{goal_id}", "org", task_ids, mode))
    return repo.add_goal(Goal(
        goal_id, "org", goal_id, f"rule-{goal_id}", reward_ids=list(reward_ids or []), **kwargs,
    ))


def _points_goal(
    repo: Repository, goal_id: str, threshold: int, reward_ids: list[str] | None = None, **kwargs,
) -> Goal:
    repo.add_rule(GoalRule.points_rule(f"rule-{goal_id}", "org", threshold))
    return repo.add_goal(Goal(
        goal_id, "org", goal_id, f"rule-{goal_id}", reward_ids=list(reward_ids or []), **kwargs,
    ))


class TestTaskGoals:
    def test_all_mode_needs_every_task(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1", "t2"], reward_ids=["c10"])
        tracker = _tracker(repo)
        alice = repo.players["alice"]

        assert tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now()) == []
        assert alice.finished_goals == []

        finished = tracker.on_task_completed(alice, repo.tasks["t2"], "org", _now())
        assert [g.goal_id for g in finished] == ["g1"]
        assert len(alice.finished_goals) == 1
        assert alice.coins == 10

    def test_one_mode_any_task(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1", "t2"], mode=TaskRuleMode.ONE, repeatable=False)
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        finished = tracker.on_task_completed(alice, repo.tasks["t2"], "org", _now())
        assert [g.goal_id for g in finished] == ["g1"]

    def test_completion_recorded_in_history(self) -> None:
        repo = _repo()
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        tracker.on_task_completed(alice, repo.tasks["t3"], "org", _now())
        assert alice.completed_tasks == ["t3"]

    def test_finished_goal_receipt(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"])
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        record = alice.finished_goals[0]
        assert record.goal_id == "g1"
        assert record.subject_id == "alice"
        assert record.subject_kind == "player"
        assert record.finished_utc == _now()


class TestIdempotency:
    def test_non_repeatable_finishes_once(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], reward_ids=["c10"], repeatable=False)
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now()) == []
        assert len(alice.finished_goals) == 1
        assert alice.coins == 10

    def test_repeatable_finishes_each_time(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], reward_ids=["c10"], repeatable=True)
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert len(alice.finished_goals_for("g1")) == 2
        assert alice.coins == 20

    def test_points_goal_one_shot_even_if_repeatable(self) -> None:
        repo = _repo()
        _task_goal(repo, "earn", ["t1"], reward_ids=["p50"])
        _points_goal(repo, "pg", 50, reward_ids=["badge"], repeatable=True)
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        for _ in range(3):
            tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert alice.points == 150
        assert len(alice.finished_goals_for("pg")) == 1
        assert len(alice.badges()) == 1


class TestEligibility:
    def test_role_restricted_goal(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], reward_ids=["c10"], role_ids={"dev"})
        tracker = _tracker(repo)
        bob = repo.players["bob"]
        assert tracker.on_task_completed(bob, repo.tasks["t1"], "org", _now()) == []
        assert bob.finished_goals == []
        assert bob.coins == 0

    def test_role_intersection_is_enough(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], role_ids={"dev", "ops"})
        tracker = _tracker(repo)
        bob = repo.players["bob"]
        assert len(tracker.on_task_completed(bob, repo.tasks["t1"], "org", _now())) == 1

    def test_group_goal_not_completable_by_player(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], group_goal=True)
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        assert tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now()) == []

    def test_group_uses_members_roles(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], group_goal=True, role_ids={"ops"})
        group = repo.add_group(PlayerGroup("grp", "org", "Team", player_ids=["alice", "bob"]))
        tracker = _tracker(repo)
        assert tracker.effective_roles(group) == {"dev", "ops"}
        assert len(tracker.on_task_completed(group, repo.tasks["t1"], "org", _now())) == 1


class TestGroupSeparation:
    def test_player_completion_does_not_touch_group(self) -> None:
        repo = _repo()
        _task_goal(repo, "indiv", ["t1"], reward_ids=["c10"])
        _task_goal(repo, "team", ["t1"], reward_ids=["c10"], group_goal=True)
        group = repo.add_group(PlayerGroup("grp", "org", "Team", player_ids=["alice"]))
        tracker = _tracker(repo)
        alice = repo.players["alice"]

        finished = tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert [g.goal_id for g in finished] == ["indiv"]
        assert group.finished_goals == []
        assert group.coins == 0

    def test_group_completion_does_not_touch_members(self) -> None:
        repo = _repo()
        _task_goal(repo, "team", ["t1"], reward_ids=["c10"], group_goal=True)
        group = repo.add_group(PlayerGroup("grp", "org", "Team", player_ids=["alice"]))
        tracker = _tracker(repo)
        tracker.on_task_completed(group, repo.tasks["t1"], "org", _now())
        assert group.coins == 10
        assert repo.players["alice"].coins == 0
        assert repo.players["alice"].finished_goals == []


class TestPointsSweep:
    def test_points_from_task_goal_cross_threshold(self) -> None:
        repo = _repo()
        _task_goal(repo, "earn", ["t1"], reward_ids=["p50"])
        _points_goal(repo, "pg", 50, reward_ids=["c10"])
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        finished = tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert [g.goal_id for g in finished] == ["earn", "pg"]
        assert alice.coins == 10

    def test_chained_points_goals_with_reevaluation(self) -> None:
        repo = _repo()
        _task_goal(repo, "earn", ["t1"], reward_ids=["p50"])
        _points_goal(repo, "pa", 100)
        _points_goal(repo, "pb", 50, reward_ids=["p50"])
        tracker = _tracker(repo, reevaluate=True)
        alice = repo.players["alice"]
        finished = tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert {g.goal_id for g in finished} == {"earn", "pa", "pb"}

    def test_chain_stops_without_reevaluation(self) -> None:
        repo = _repo()
        _task_goal(repo, "earn", ["t1"], reward_ids=["p50"])
        _points_goal(repo, "pa", 100)
        _points_goal(repo, "pb", 50, reward_ids=["p50"])
        tracker = _tracker(repo, reevaluate=False)
        alice = repo.players["alice"]
        tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert alice.points == 100
        assert not alice.has_finished("pa")
        # A later check picks it up.
        assert [g.goal_id for g in tracker.reevaluate_points_goals(alice, _now())] == ["pa"]


class TestValidation:
    def test_missing_reward_leaves_subject_untouched(self) -> None:
        repo = _repo()
        _task_goal(repo, "g1", ["t1"], reward_ids=["nope"])
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        with pytest.raises(EngineError) as exc:
            tracker.on_task_completed(alice, repo.tasks["t1"], "org", _now())
        assert exc.value.kind == ErrorKind.NOT_FOUND
        assert alice.completed_tasks == []

    def test_foreign_task_not_found(self) -> None:
        repo = _repo()
        tracker = _tracker(repo)
        with pytest.raises(EngineError) as exc:
            tracker.on_task_completed(
                repo.players["alice"], Task("tx", "other", "X"), "org", _now(),
            )
        assert exc.value.kind == ErrorKind.NOT_FOUND


class TestAwardGoal:
    def test_award_settles_rewards(self) -> None:
        repo = _repo()
        goal = _task_goal(repo, "g1", ["t1", "t2"], reward_ids=["c10"])
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        record = tracker.award_goal(goal, alice, _now())
        assert record.goal_id == "g1"
        assert alice.coins == 10

    def test_award_ineligible(self) -> None:
        repo = _repo()
        goal = _task_goal(repo, "g1", ["t1"], role_ids={"dev"})
        tracker = _tracker(repo)
        with pytest.raises(EngineError) as exc:
            tracker.award_goal(goal, repo.players["bob"], _now())
        assert exc.value.kind == ErrorKind.INELIGIBLE

    def test_award_repeat_forbidden(self) -> None:
        repo = _repo()
        goal = _task_goal(repo, "g1", ["t1"], repeatable=False)
        tracker = _tracker(repo)
        alice = repo.players["alice"]
        tracker.award_goal(goal, alice, _now())
        with pytest.raises(EngineError) as exc:
            tracker.award_goal(goal, alice, _now())
        assert exc.value.kind == ErrorKind.INVALID_STATE
        assert len(alice.finished_goals) == 1
