"""Tests for the marketplace engine — escrowed offers, bids, payout and refunds.

Tests that:
- Offer lifecycle pays the whole escrow to the completer
- Cancellation refunds every contributor individually
- Validation (tradeable, amount, funds, state) leaves balances untouched
- Completion runs the task-completion path for the completer
- Queries filter by visibility and order by recency and prize
"""

import pytest
from datetime import datetime, timedelta, timezone

from gamify.engine.goal_tracker import GoalCompletionTracker
from gamify.engine.settlement import RewardSettlement
from gamify.errors import EngineError, ErrorKind
from gamify.market.escrow import EscrowBook
from gamify.market.marketplace import MarketplaceEngine
from gamify.models.goal import Goal, GoalRule, Task
from gamify.models.market import MarketPlace, OfferState
from gamify.models.organisation import Organisation, Role
from gamify.models.player import Player
from gamify.models.reward import Reward, RewardKind
from gamify.persistence.repository import Repository


def _now() -> datetime:
    return datetime(2026, 4, 1, 10, 0, 0, tzinfo=timezone.utc)


def _engine(reevaluate_on_payout: bool = False) -> tuple[MarketplaceEngine, Repository]:
    repo = Repository()
    repo.add_organisation(Organisation("org", "Org"))
    repo.add_role(Role("dev", "org", "Developer"))
    repo.add_role(Role("ops", "org", "Operations"))
    repo.add_task(Task("t1", "org", "Tradeable", tradeable=True))
    repo.add_task(Task("t2", "org", "Private", tradeable=False))
    repo.add_task(Task("t3", "org", "Dev only", tradeable=True, role_ids={"dev"}))
    repo.add_player(Player("A", "org", "A", coins=100, role_ids={"dev"}))
    repo.add_player(Player("B", "org", "B", coins=50, role_ids={"ops"}))
    repo.add_player(Player("C", "org", "C", coins=0))
    repo.add_marketplace(MarketPlace("m1", "org"))
    tracker = GoalCompletionTracker(repo, RewardSettlement())
    engine = MarketplaceEngine(
        repo, EscrowBook(), tracker, reevaluate_points_on_payout=reevaluate_on_payout,
    )
    return engine, repo


def _coins(repo: Repository) -> dict[str, int]:
    return {pid: p.coins for pid, p in repo.players.items()}


class TestOfferLifecycle:
    def test_create_bid_complete(self) -> None:
        engine, repo = _engine()
        offer = engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1", now=_now())
        assert repo.players["A"].coins == 80
        assert offer.prize == 20
        assert offer.state == OfferState.OPEN

        engine.place_bid("org", "o1", "B", 10, now=_now())
        assert repo.players["B"].coins == 40
        assert offer.prize == 30

        outcome = engine.complete_offer("org", "o1", "C", now=_now())
        assert outcome.payout == 30
        assert repo.players["C"].coins == 30
        assert offer.state == OfferState.COMPLETED
        assert offer.completed_by == "C"
        assert offer.closed_utc == _now()
        # Bidders get nothing back on completion.
        assert repo.players["B"].coins == 40

    def test_cancel_refunds_each_contributor(self) -> None:
        engine, repo = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.place_bid("org", "o1", "B", 10)
        engine.place_bid("org", "o1", "B", 5)
        outcome = engine.cancel_offer("org", "o1")
        assert outcome.refunds == {"A": 20, "B": 15}
        assert outcome.total_refunded == 35
        assert _coins(repo) == {"A": 100, "B": 50, "C": 0}
        offer = repo.offers["o1"]
        assert offer.prize == 0
        assert offer.state == OfferState.CANCELLED

    def test_creator_may_bid_on_own_offer(self) -> None:
        engine, repo = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.place_bid("org", "o1", "A", 5)
        outcome = engine.cancel_offer("org", "o1")
        assert outcome.refunds == {"A": 25}
        assert repo.players["A"].coins == 100

    def test_conservation_holds_throughout(self) -> None:
        engine, repo = _engine()
        total = sum(_coins(repo).values())
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.place_bid("org", "o1", "B", 10)
        held = engine.escrow.held_total("o1")
        assert sum(_coins(repo).values()) + held == total
        assert engine.verify_conservation("org") == []
        engine.complete_offer("org", "o1", "C")
        assert sum(_coins(repo).values()) == total
        assert engine.verify_conservation("org") == []


class TestValidation:
    def test_non_tradeable_task(self) -> None:
        engine, repo = _engine()
        with pytest.raises(EngineError) as exc:
            engine.create_offer("org", "m1", "t2", "A", 20)
        assert exc.value.kind == ErrorKind.INVALID_STATE
        assert repo.players["A"].coins == 100
        assert repo.offers == {}

    @pytest.mark.parametrize("prize", [0, -1, True, 2.5])
    def test_invalid_prize(self, prize) -> None:
        engine, repo = _engine()
        with pytest.raises(EngineError) as exc:
            engine.create_offer("org", "m1", "t1", "A", prize)
        assert exc.value.kind == ErrorKind.INVALID_AMOUNT
        assert repo.players["A"].coins == 100

    def test_creator_insufficient_funds(self) -> None:
        engine, repo = _engine()
        with pytest.raises(EngineError) as exc:
            engine.create_offer("org", "m1", "t1", "C", 1)
        assert exc.value.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert repo.offers == {}

    def test_bid_insufficient_funds_changes_nothing(self) -> None:
        engine, repo = _engine()
        offer = engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        with pytest.raises(EngineError) as exc:
            engine.place_bid("org", "o1", "B", 51)
        assert exc.value.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert repo.players["B"].coins == 50
        assert offer.prize == 20
        assert engine.bids_for_offer("org", "o1") == []

    def test_bid_on_closed_offer(self) -> None:
        engine, repo = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.complete_offer("org", "o1", "C")
        with pytest.raises(EngineError) as exc:
            engine.place_bid("org", "o1", "B", 5)
        assert exc.value.kind == ErrorKind.INVALID_STATE
        assert repo.players["B"].coins == 50

    def test_cancel_only_while_open(self) -> None:
        engine, repo = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.cancel_offer("org", "o1")
        with pytest.raises(EngineError) as exc:
            engine.cancel_offer("org", "o1")
        assert exc.value.kind == ErrorKind.INVALID_STATE
        assert repo.players["A"].coins == 100

    def test_complete_twice_rejected(self) -> None:
        engine, repo = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.complete_offer("org", "o1", "C")
        with pytest.raises(EngineError) as exc:
            engine.complete_offer("org", "o1", "B")
        assert exc.value.kind == ErrorKind.INVALID_STATE
        assert repo.players["B"].coins == 50

    def test_unknown_and_foreign_entities(self) -> None:
        engine, repo = _engine()
        repo.add_organisation(Organisation("other", "Other"))
        repo.add_player(Player("Z", "other", "Z", coins=100))
        with pytest.raises(EngineError) as exc:
            engine.create_offer("org", "m1", "t1", "Z", 10)
        assert exc.value.kind == ErrorKind.NOT_FOUND
        with pytest.raises(EngineError) as exc:
            engine.place_bid("org", "missing", "A", 10)
        assert exc.value.kind == ErrorKind.NOT_FOUND


class TestCompletionPath:
    def test_completion_finishes_completer_goals(self) -> None:
        engine, repo = _engine()
        repo.add_reward(Reward("badge", "org", RewardKind.BADGE, name="Helper"))
        repo.add_rule(GoalRule.task_rule("r1", "org", ["t1"]))
        repo.add_goal(Goal("g1", "org", "Help out", "r1", reward_ids=["badge"]))
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        outcome = engine.complete_offer("org", "o1", "C")
        assert [g.goal_id for g in outcome.finished_goals] == ["g1"]
        assert repo.players["C"].completed_tasks == ["t1"]
        assert len(repo.players["C"].badges()) == 1
        assert repo.players["A"].finished_goals == []

    def test_payout_reevaluation_flag(self) -> None:
        engine, repo = _engine(reevaluate_on_payout=True)
        repo.add_rule(GoalRule.points_rule("pr", "org", 0))
        repo.add_goal(Goal("pg", "org", "Anyone", "pr"))
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        outcome = engine.complete_offer("org", "o1", "C")
        # Threshold 0 finishes in the task sweep; the payout re-check adds nothing.
        assert [g.goal_id for g in outcome.finished_goals] == ["pg"]


class TestUpdateOffer:
    def test_update_name_and_dates(self) -> None:
        engine, _ = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        end = _now() + timedelta(days=3)
        engine.update_offer("org", "o1", "name", "Renamed")
        offer = engine.update_offer("org", "o1", "end_date", end)
        assert offer.name == "Renamed"
        assert offer.end_date == end
        assert engine.update_offer("org", "o1", "end_date", None).end_date is None

    def test_update_prize_rejected(self) -> None:
        engine, _ = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        with pytest.raises(EngineError) as exc:
            engine.update_offer("org", "o1", "prize", 999)
        assert exc.value.kind == ErrorKind.INVALID_STATE

    def test_update_closed_offer_rejected(self) -> None:
        engine, _ = _engine()
        engine.create_offer("org", "m1", "t1", "A", 20, offer_id="o1")
        engine.cancel_offer("org", "o1")
        with pytest.raises(EngineError):
            engine.update_offer("org", "o1", "name", "x")


class TestQueries:
    def _listed(self) -> tuple[MarketplaceEngine, Repository]:
        engine, repo = _engine()
        engine.create_offer("org", "m1", "t1", "A", 10, offer_id="o1", now=_now())
        engine.create_offer(
            "org", "m1", "t1", "A", 30, offer_id="o2", now=_now() + timedelta(minutes=1),
        )
        engine.create_offer("org", "m1", "t3", "B", 30, offer_id="o3", now=_now())
        engine.create_offer(
            "org", "m1", "t1", "B", 5, offer_id="o4", now=_now() + timedelta(minutes=2),
        )
        engine.cancel_offer("org", "o4")
        return engine, repo

    def test_offers_by_player(self) -> None:
        engine, _ = self._listed()
        assert [o.offer_id for o in engine.offers_by_player("org", "A")] == ["o1", "o2"]
        assert [o.offer_id for o in engine.offers_by_player("org", "B")] == ["o3", "o4"]

    def test_visibility_by_role(self) -> None:
        engine, _ = self._listed()
        assert [o.offer_id for o in engine.visible_offers("org", "m1", "A")] == ["o1", "o2", "o3"]
        assert [o.offer_id for o in engine.visible_offers("org", "m1", "B")] == ["o1", "o2"]

    def test_recent_orders_by_creation_then_id(self) -> None:
        engine, _ = self._listed()
        recent = engine.recent_offers("org", "m1", "A", 10)
        assert [o.offer_id for o in recent] == ["o2", "o1", "o3"]

    def test_highest_orders_by_prize_then_id(self) -> None:
        engine, _ = self._listed()
        highest = engine.highest_offers("org", "m1", "A", 2)
        assert [o.offer_id for o in highest] == ["o2", "o3"]

    def test_count_must_be_positive(self) -> None:
        engine, _ = self._listed()
        with pytest.raises(EngineError) as exc:
            engine.recent_offers("org", "m1", "A", 0)
        assert exc.value.kind == ErrorKind.INVALID_AMOUNT

    def test_bids_in_creation_order(self) -> None:
        engine, _ = _engine()
        engine.create_offer("org", "m1", "t1", "A", 10, offer_id="o1")
        engine.place_bid("org", "o1", "B", 3, bid_id="b1")
        engine.place_bid("org", "o1", "A", 4, bid_id="b2")
        assert [b.bid_id for b in engine.bids_for_offer("org", "o1")] == ["b1", "b2"]

    def test_expired_offers(self) -> None:
        engine, _ = _engine()
        engine.create_offer("org", "m1", "t1", "A", 10, offer_id="o1", end_date=_now())
        engine.create_offer(
            "org", "m1", "t1", "A", 10, offer_id="o2", end_date=_now() + timedelta(days=1),
        )
        expired = engine.expired_offers("org", _now() + timedelta(hours=1))
        assert [o.offer_id for o in expired] == ["o1"]
