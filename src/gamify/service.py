"""Gamification service — unified facade for the goal engine and marketplace.

This is the primary interface for programmatic access to the engine.
It orchestrates all subsystems:
- Registry (organisations, roles, players, groups, tasks, rules, rewards, goals)
- Goal completion and reward settlement
- Marketplace offers, bids and escrowed payouts
- Present boards
- Persistence (event log, state store)

Every call returns a ServiceResult. Engine failures come back as
success=False with the error kind; nothing is raised for them.

Transaction discipline for every mutating call:
1. Take the per-entity locks of everything the call touches.
2. Snapshot the mutable entities involved.
3. Run the engine (which validates fully before mutating).
4. Append the audit event. If that fails, restore the snapshot and
   fail closed with invalid_state.
5. Persist the state snapshot. A failure here is only a warning: the
   audit trail already holds the change.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from gamify import __version__
from gamify.concurrency import EntityLocks, LockKey
from gamify.config import EngineConfig
from gamify.engine.goal_tracker import GoalCompletionTracker
from gamify.engine.settlement import RewardSettlement, SettlementReceipt
from gamify.errors import EngineError, ErrorKind
from gamify.market.escrow import EscrowBook
from gamify.market.marketplace import MarketplaceEngine
from gamify.models.goal import FinishedGoal, Goal, GoalRule, Task, TaskRuleMode
from gamify.models.market import Bid, MarketPlace, Offer, OfferState
from gamify.models.organisation import Organisation, Role
from gamify.models.player import Player, PlayerGroup, Subject, SubjectKind
from gamify.models.present import Board
from gamify.models.reward import PermanentRewardEntry, Reward, RewardKind
from gamify.persistence.event_log import EventKind, EventLog, EventRecord
from gamify.persistence.repository import Repository
from gamify.persistence.state_store import StateStore
from gamify.presents.board import BoardEngine

logger = logging.getLogger(__name__)

# Goal attributes update_goal() may change.
UPDATABLE_GOAL_ATTRIBUTES = ("name", "repeatable", "group_goal", "reward_ids", "role_ids")
UPDATABLE_GROUP_ATTRIBUTES = ("name", "player_ids")


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None


class _Snapshot:
    """Deep copies of mutable entities, restorable in place."""

    def __init__(self, *entities: Any) -> None:
        self._saved = [(e, copy.deepcopy(e.__dict__)) for e in entities]

    def restore(self) -> None:
        for entity, state in self._saved:
            entity.__dict__.clear()
            entity.__dict__.update(state)


class GamificationService:
    """Unified gamification engine facade.

    Usage:
        service = GamificationService(EngineConfig())
        service.register_organisation("acme", "Acme")
        service.register_player("acme", "alice", "Alice", coins=100)
        service.create_task("acme", "t1", "Write docs", tradeable=True)
        service.create_marketplace("acme", "acme-market")
        result = service.create_offer("acme", "acme-market", "t1", "alice", 20)
        result = service.complete_offer("acme", result.data["offer_id"], "bob")

    Persistence (optional):
        service = GamificationService(config, event_log=log, state_store=store)
        # State is loaded on construction and saved after each mutation.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self._config = config or EngineConfig()

        # Persistence layer (optional, in-memory if not provided)
        self._event_log = event_log
        self._state_store = state_store
        if state_store is not None:
            self._repo, escrow = state_store.load()
        else:
            self._repo, escrow = Repository(), EscrowBook()

        self._settlement = RewardSettlement(
            dedupe_permanent=self._config.dedupe_permanent_rewards,
        )
        self._tracker = GoalCompletionTracker(
            self._repo,
            self._settlement,
            reevaluate_points_on_reward=self._config.reevaluate_points_goals_on_reward,
        )
        self._market = MarketplaceEngine(
            self._repo,
            escrow,
            self._tracker,
            reevaluate_points_on_payout=self._config.reevaluate_points_goals_on_payout,
        )
        self._boards = BoardEngine(self._repo)

        self._locks = EntityLocks()
        # Guards registry inserts, which have no entity of their own to lock.
        self._catalog_lock = threading.Lock()
        # Guards event ids, log appends and snapshot writes.
        self._commit_lock = threading.RLock()
        self._id_counters: dict[str, int] = {}

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

        # Set if a StateStore write fails after the audit event was written.
        # In-memory state stays aligned with the audit trail; the snapshot
        # file is stale until the next successful write.
        self._persistence_degraded: bool = False

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def repository(self) -> Repository:
        return self._repo

    @property
    def escrow(self) -> EscrowBook:
        return self._market.escrow

    @property
    def event_log(self) -> Optional[EventLog]:
        return self._event_log

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_organisation(
        self, org_id: str, name: str, api_key: str = "",
    ) -> ServiceResult:
        try:
            with self._catalog_lock:
                self._repo.add_organisation(
                    Organisation(org_id=org_id, name=name, api_key=api_key),
                )
        except EngineError as e:
            return _failure(e)
        return self._persisted({"org_id": org_id})

    def register_role(self, org_id: str, role_id: str, name: str) -> ServiceResult:
        try:
            with self._catalog_lock:
                self._repo.add_role(Role(role_id=role_id, org_id=org_id, name=name))
        except EngineError as e:
            return _failure(e)
        return self._persisted({"role_id": role_id})

    def register_player(
        self,
        org_id: str,
        player_id: str,
        name: str,
        coins: int = 0,
        points: int = 0,
        role_ids: Optional[Iterable[str]] = None,
        email: Optional[str] = None,
    ) -> ServiceResult:
        """Register a player (and their empty present board)."""
        try:
            if isinstance(coins, bool) or not isinstance(coins, int) or coins < 0:
                raise EngineError(
                    ErrorKind.INVALID_AMOUNT,
                    f"Starting coins must be a non-negative integer, got {coins!r}",
                )
            roles = set(role_ids or ())
            with self._catalog_lock:
                for role_id in sorted(roles):
                    self._repo.get_role(org_id, role_id)
                self._repo.add_player(Player(
                    subject_id=player_id,
                    org_id=org_id,
                    name=name,
                    coins=coins,
                    points=points,
                    role_ids=roles,
                    email=email,
                ))
        except EngineError as e:
            return _failure(e)
        return self._persisted({"player_id": player_id, "coins": coins, "points": points})

    def create_task(
        self,
        org_id: str,
        task_id: str,
        name: str,
        tradeable: bool = False,
        role_ids: Optional[Iterable[str]] = None,
        description: str = "",
    ) -> ServiceResult:
        try:
            roles = set(role_ids or ())
            with self._catalog_lock:
                for role_id in sorted(roles):
                    self._repo.get_role(org_id, role_id)
                self._repo.add_task(Task(
                    task_id=task_id,
                    org_id=org_id,
                    name=name,
                    tradeable=tradeable,
                    description=description,
                    role_ids=roles,
                ))
        except EngineError as e:
            return _failure(e)
        return self._persisted({"task_id": task_id, "tradeable": tradeable})

    def create_task_rule(
        self,
        org_id: str,
        rule_id: str,
        task_ids: list[str],
        mode: str = TaskRuleMode.ALL.value,
        name: str = "",
    ) -> ServiceResult:
        """Create a TaskRule over existing tasks (mode "all" or "one")."""
        try:
            rule_mode = _enum(TaskRuleMode, mode, "rule mode")
            with self._catalog_lock:
                for task_id in task_ids:
                    self._repo.get_task(org_id, task_id)
                self._repo.add_rule(
                    GoalRule.task_rule(rule_id, org_id, task_ids, rule_mode, name),
                )
        except EngineError as e:
            return _failure(e)
        return self._persisted({"rule_id": rule_id, "kind": "task", "mode": rule_mode.value})

    def create_points_rule(
        self, org_id: str, rule_id: str, threshold: int, name: str = "",
    ) -> ServiceResult:
        try:
            with self._catalog_lock:
                self._repo.add_rule(GoalRule.points_rule(rule_id, org_id, threshold, name))
        except EngineError as e:
            return _failure(e)
        return self._persisted({"rule_id": rule_id, "kind": "points", "threshold": threshold})

    def create_reward(
        self,
        org_id: str,
        reward_id: str,
        kind: str,
        amount: int = 0,
        name: str = "",
        description: str = "",
    ) -> ServiceResult:
        """Add a reward to the catalog. Badges and achievements carry no amount."""
        try:
            reward_kind = _enum(RewardKind, kind, "reward kind")
            try:
                reward = Reward(
                    reward_id=reward_id,
                    org_id=org_id,
                    kind=reward_kind,
                    name=name,
                    amount=amount,
                    description=description,
                )
            except ValueError as e:
                raise EngineError(ErrorKind.INVALID_AMOUNT, str(e)) from None
            with self._catalog_lock:
                self._repo.add_reward(reward)
        except EngineError as e:
            return _failure(e)
        return self._persisted({"reward_id": reward_id, "kind": reward_kind.value})

    def create_goal(
        self,
        org_id: str,
        goal_id: str,
        name: str,
        rule_id: str,
        reward_ids: Optional[list[str]] = None,
        role_ids: Optional[Iterable[str]] = None,
        repeatable: bool = True,
        group_goal: bool = False,
    ) -> ServiceResult:
        """Create a goal over an existing rule, rewards and roles."""
        try:
            with self._catalog_lock:
                self._repo.get_rule(org_id, rule_id)
                rewards = list(reward_ids or [])
                roles = set(role_ids or ())
                self._validate_goal_refs(org_id, rewards, roles)
                goal = self._repo.add_goal(Goal(
                    goal_id=goal_id,
                    org_id=org_id,
                    name=name,
                    rule_id=rule_id,
                    reward_ids=rewards,
                    role_ids=roles,
                    repeatable=repeatable,
                    group_goal=group_goal,
                ))
                err = self._record_event(
                    EventKind.GOAL_CREATED, "system",
                    {"org_id": org_id, **_goal_view(goal)},
                )
                if err:
                    del self._repo.goals[goal_id]
                    return _audit_failure(err)
        except EngineError as e:
            return _failure(e)
        return self._persisted(_goal_view(goal))

    def update_goal(
        self, org_id: str, goal_id: str, attribute: str, value: Any,
    ) -> ServiceResult:
        """Change one goal attribute. Unknown attributes are invalid_state."""
        try:
            with self._catalog_lock:
                goal = self._repo.get_goal(org_id, goal_id)
                if attribute not in UPDATABLE_GOAL_ATTRIBUTES:
                    raise EngineError(
                        ErrorKind.INVALID_STATE,
                        f"Goal attribute cannot be changed: {attribute}. "
                        f"Allowed: [{', '.join(UPDATABLE_GOAL_ATTRIBUTES)}]",
                    )
                if attribute == "reward_ids":
                    value = list(value or [])
                    self._validate_goal_refs(org_id, value, set())
                elif attribute == "role_ids":
                    value = set(value or ())
                    self._validate_goal_refs(org_id, [], value)
                elif attribute in ("repeatable", "group_goal"):
                    value = bool(value)

                snapshot = _Snapshot(goal)
                setattr(goal, attribute, value)
                err = self._record_event(
                    EventKind.GOAL_UPDATED, "system",
                    {"org_id": org_id, "goal_id": goal_id, "attribute": attribute},
                )
                if err:
                    snapshot.restore()
                    return _audit_failure(err)
        except EngineError as e:
            return _failure(e)
        return self._persisted(_goal_view(goal))

    def delete_goal(self, org_id: str, goal_id: str) -> ServiceResult:
        """Delete a goal and every FinishedGoal that references it."""
        try:
            with self._catalog_lock:
                self._repo.get_goal(org_id, goal_id)
                subjects = self._repo.subjects(org_id)
                with self._locks.hold(*(_subject_key(s) for s in subjects)):
                    snapshot = _Snapshot(*subjects)
                    goal, removed = self._repo.remove_goal(org_id, goal_id)

                    def _rollback() -> None:
                        snapshot.restore()
                        self._repo.goals[goal_id] = goal

                    return self._commit(
                        EventKind.GOAL_DELETED, "system",
                        {"org_id": org_id, "goal_id": goal_id, "finished_goals_removed": removed},
                        _rollback,
                        {"goal_id": goal_id, "finished_goals_removed": removed},
                    )
        except EngineError as e:
            return _failure(e)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(
        self,
        org_id: str,
        name: str,
        player_ids: Optional[list[str]] = None,
        group_id: Optional[str] = None,
    ) -> ServiceResult:
        try:
            with self._catalog_lock:
                members = list(dict.fromkeys(player_ids or []))
                for pid in members:
                    self._repo.get_player(org_id, pid)
                if group_id is None:
                    group_id = self._next_id("GRP", self._repo.groups)
                group = self._repo.add_group(PlayerGroup(
                    subject_id=group_id, org_id=org_id, name=name, player_ids=members,
                ))
                err = self._record_event(
                    EventKind.GROUP_CREATED, "system",
                    {"org_id": org_id, "group_id": group_id, "player_ids": members},
                )
                if err:
                    self._repo.remove_group(org_id, group_id)
                    return _audit_failure(err)
        except EngineError as e:
            return _failure(e)
        return self._persisted({"group_id": group.subject_id, "player_ids": list(members)})

    def add_group_players(
        self, org_id: str, group_id: str, player_ids: list[str],
    ) -> ServiceResult:
        return self._change_membership(org_id, group_id, player_ids, adding=True)

    def remove_group_players(
        self, org_id: str, group_id: str, player_ids: list[str],
    ) -> ServiceResult:
        return self._change_membership(org_id, group_id, player_ids, adding=False)

    def update_group(
        self, org_id: str, group_id: str, attribute: str, value: Any,
    ) -> ServiceResult:
        """Rename a group or replace its whole member list."""
        try:
            with self._locks.hold(EntityLocks.group(group_id)):
                group = self._repo.get_group(org_id, group_id)
                if attribute not in UPDATABLE_GROUP_ATTRIBUTES:
                    raise EngineError(
                        ErrorKind.INVALID_STATE,
                        f"Group attribute cannot be changed: {attribute}. "
                        f"Allowed: [{', '.join(UPDATABLE_GROUP_ATTRIBUTES)}]",
                    )
                if attribute == "player_ids":
                    value = list(dict.fromkeys(value or []))
                    for pid in value:
                        self._repo.get_player(org_id, pid)
                else:
                    value = str(value)

                snapshot = _Snapshot(group)
                setattr(group, attribute, value)
                self._repo.index_group(group)

                def _rollback() -> None:
                    snapshot.restore()
                    self._repo.index_group(group)

                data = {
                    "group_id": group_id,
                    "name": group.name,
                    "player_ids": list(group.player_ids),
                }
                return self._commit(
                    EventKind.GROUP_UPDATED, "system",
                    {"org_id": org_id, "attribute": attribute, **data}, _rollback, data,
                )
        except EngineError as e:
            return _failure(e)

    def delete_group(self, org_id: str, group_id: str) -> ServiceResult:
        """Delete a group together with its finished goals and rewards."""
        try:
            with self._locks.hold(EntityLocks.group(group_id)):
                group = self._repo.remove_group(org_id, group_id)

                def _rollback() -> None:
                    self._repo.groups[group_id] = group
                    self._repo.index_group(group)

                return self._commit(
                    EventKind.GROUP_DELETED, "system",
                    {
                        "org_id": org_id,
                        "group_id": group_id,
                        "finished_goals_removed": len(group.finished_goals),
                    },
                    _rollback,
                    {"group_id": group_id},
                )
        except EngineError as e:
            return _failure(e)

    # ------------------------------------------------------------------
    # Goal completion and rewards
    # ------------------------------------------------------------------

    def complete_task(
        self,
        org_id: str,
        task_id: str,
        subject_id: str,
        subject_kind: str = SubjectKind.PLAYER.value,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a task completion by a player or group and finish goals."""
        now = now or datetime.now(timezone.utc)
        try:
            kind = _enum(SubjectKind, subject_kind, "subject kind")
            task = self._repo.get_task(org_id, task_id)
            with self._locks.hold(_kind_key(kind, subject_id)):
                subject = self._repo.get_subject(org_id, subject_id, kind)
                snapshot = _Snapshot(subject)
                receipt = SettlementReceipt()
                finished = self._tracker.on_task_completed(
                    subject, task, org_id, now=now, receipt=receipt,
                )
                data = {
                    "task_id": task_id,
                    "subject_id": subject_id,
                    "subject_kind": kind.value,
                    "finished_goals": [g.goal_id for g in finished],
                    **receipt.to_dict(),
                }
                return self._commit(
                    EventKind.TASK_COMPLETED, subject_id,
                    {"org_id": org_id, **data}, snapshot.restore, data, now,
                )
        except EngineError as e:
            return _failure(e)

    def apply_rewards(
        self,
        org_id: str,
        reward_ids: list[str],
        subject_id: str,
        subject_kind: str = SubjectKind.PLAYER.value,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Administrative reward grant outside of goal completion."""
        now = now or datetime.now(timezone.utc)
        try:
            kind = _enum(SubjectKind, subject_kind, "subject kind")
            rewards = self._repo.get_rewards(org_id, reward_ids)
            with self._locks.hold(_kind_key(kind, subject_id)):
                subject = self._repo.get_subject(org_id, subject_id, kind)
                snapshot = _Snapshot(subject)
                receipt = self._settlement.apply(rewards, subject, now=now)
                finished: list[Goal] = []
                if receipt.points_awarded and self._config.reevaluate_points_goals_on_reward:
                    finished = self._tracker.reevaluate_points_goals(
                        subject, now=now, receipt=receipt,
                    )
                data = {
                    "subject_id": subject_id,
                    "subject_kind": kind.value,
                    "reward_ids": list(reward_ids),
                    "finished_goals": [g.goal_id for g in finished],
                    **receipt.to_dict(),
                }
                return self._commit(
                    EventKind.REWARDS_APPLIED, subject_id,
                    {"org_id": org_id, **data}, snapshot.restore, data, now,
                )
        except EngineError as e:
            return _failure(e)

    def award_goal(
        self,
        org_id: str,
        goal_id: str,
        subject_id: str,
        subject_kind: str = SubjectKind.PLAYER.value,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Finish a goal for a subject without evaluating its rule."""
        now = now or datetime.now(timezone.utc)
        try:
            kind = _enum(SubjectKind, subject_kind, "subject kind")
            goal = self._repo.get_goal(org_id, goal_id)
            with self._locks.hold(_kind_key(kind, subject_id)):
                subject = self._repo.get_subject(org_id, subject_id, kind)
                snapshot = _Snapshot(subject)
                receipt = SettlementReceipt()
                record = self._tracker.award_goal(goal, subject, now=now, receipt=receipt)
                data = {
                    "goal_id": goal_id,
                    "subject_id": subject_id,
                    "subject_kind": kind.value,
                    "finished_id": record.finished_id,
                    **receipt.to_dict(),
                }
                return self._commit(
                    EventKind.GOAL_FINISHED, subject_id,
                    {"org_id": org_id, **data}, snapshot.restore, data, now,
                )
        except EngineError as e:
            return _failure(e)

    # ------------------------------------------------------------------
    # Marketplace lifecycle
    # ------------------------------------------------------------------

    def create_marketplace(
        self, org_id: str, market_id: Optional[str] = None,
    ) -> ServiceResult:
        try:
            with self._catalog_lock:
                if market_id is None:
                    market_id = self._next_id("MKT", self._repo.marketplaces)
                self._repo.add_marketplace(MarketPlace(market_id=market_id, org_id=org_id))
                err = self._record_event(
                    EventKind.MARKETPLACE_CREATED, "system",
                    {"org_id": org_id, "market_id": market_id},
                )
                if err:
                    self._repo.remove_marketplace(org_id, market_id)
                    return _audit_failure(err)
        except EngineError as e:
            return _failure(e)
        return self._persisted({"market_id": market_id})

    def delete_marketplace(
        self, org_id: str, market_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Delete a marketplace, first cancelling (with refund) its open offers.

        The market lock is held throughout, so no offer can be listed on
        the market between reading its offers and removing it.
        """
        now = now or datetime.now(timezone.utc)
        try:
            with self._locks.hold(EntityLocks.market(market_id)):
                market = self._repo.get_marketplace(org_id, market_id)
                offer_keys = [EntityLocks.offer(oid) for oid in market.offer_ids]
                with self._locks.hold(*offer_keys):
                    open_offers = [
                        o for o in self._repo.offers_for_market(market_id)
                        if o.state == OfferState.OPEN
                    ]
                    owners = self._escrow_owners(org_id, open_offers)
                    with self._locks.hold(*(EntityLocks.player(p.subject_id) for p in owners)):
                        snapshot = _Snapshot(*open_offers, *owners)
                        restores = [self.escrow.snapshot(o.offer_id) for o in open_offers]

                        def _rollback() -> None:
                            snapshot.restore()
                            for restore in restores:
                                restore()
                            self._repo.marketplaces[market_id] = market

                        refunded: dict[str, int] = {}
                        try:
                            for offer in sorted(open_offers, key=lambda o: o.offer_id):
                                outcome = self._market.cancel_offer(
                                    org_id, offer.offer_id, now=now,
                                )
                                refunded[offer.offer_id] = outcome.total_refunded
                            self._repo.remove_marketplace(org_id, market_id)
                        except EngineError:
                            _rollback()
                            raise
                        data = {"market_id": market_id, "cancelled_offers": refunded}
                        return self._commit(
                            EventKind.MARKETPLACE_DELETED, "system",
                            {"org_id": org_id, **data}, _rollback, data, now,
                        )
        except EngineError as e:
            return _failure(e)

    # ------------------------------------------------------------------
    # Offers and bids
    # ------------------------------------------------------------------

    def create_offer(
        self,
        org_id: str,
        market_id: str,
        task_id: str,
        creator_id: str,
        prize: int,
        name: str = "",
        end_date: Optional[datetime] = None,
        deadline: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """List a tradeable task with an escrowed prize debited from the creator."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locks.hold(
                EntityLocks.market(market_id), EntityLocks.player(creator_id),
            ):
                self._repo.get_marketplace(org_id, market_id)
                creator = self._repo.get_player(org_id, creator_id)
                offer_id = self._next_id("OFR", self._repo.offers)
                snapshot = _Snapshot(creator)
                restore_escrow = self.escrow.snapshot(offer_id)
                offer = self._market.create_offer(
                    org_id, market_id, task_id, creator_id, prize,
                    name=name, end_date=end_date, deadline=deadline,
                    offer_id=offer_id, now=now,
                )

                def _rollback() -> None:
                    snapshot.restore()
                    restore_escrow()
                    self._repo.discard_offer(offer_id)

                return self._commit(
                    EventKind.OFFER_CREATED, creator_id,
                    {"org_id": org_id, **_offer_view(offer)},
                    _rollback,
                    {**_offer_view(offer), "creator_coins": creator.coins},
                    now,
                )
        except EngineError as e:
            return _failure(e)

    def place_bid(
        self,
        org_id: str,
        offer_id: str,
        bidder_id: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Raise an open offer's prize with coins debited from the bidder."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locks.hold(EntityLocks.offer(offer_id), EntityLocks.player(bidder_id)):
                offer = self._repo.get_offer(org_id, offer_id)
                bidder = self._repo.get_player(org_id, bidder_id)
                bid_id = self._next_id("BID", self._repo.bids)
                snapshot = _Snapshot(offer, bidder)
                restore_escrow = self.escrow.snapshot(offer_id)
                bid = self._market.place_bid(
                    org_id, offer_id, bidder_id, amount, bid_id=bid_id, now=now,
                )

                def _rollback() -> None:
                    snapshot.restore()
                    restore_escrow()
                    self._repo.discard_bid(bid_id)

                data = {
                    **_bid_view(bid),
                    "prize": offer.prize,
                    "bidder_coins": bidder.coins,
                }
                return self._commit(
                    EventKind.BID_PLACED, bidder_id,
                    {"org_id": org_id, **_bid_view(bid), "prize": offer.prize},
                    _rollback, data, now,
                )
        except EngineError as e:
            return _failure(e)

    def complete_offer(
        self,
        org_id: str,
        offer_id: str,
        completer_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Complete the offer's task and pay the whole escrow to the completer."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locks.hold(EntityLocks.offer(offer_id), EntityLocks.player(completer_id)):
                offer = self._repo.get_offer(org_id, offer_id)
                completer = self._repo.get_player(org_id, completer_id)
                snapshot = _Snapshot(offer, completer)
                restore_escrow = self.escrow.snapshot(offer_id)
                outcome = self._market.complete_offer(org_id, offer_id, completer_id, now=now)

                def _rollback() -> None:
                    snapshot.restore()
                    restore_escrow()

                data = {
                    **_offer_view(outcome.offer),
                    "payout": outcome.payout,
                    "completer_coins": completer.coins,
                    "finished_goals": [g.goal_id for g in outcome.finished_goals],
                    **outcome.receipt.to_dict(),
                }
                return self._commit(
                    EventKind.OFFER_COMPLETED, completer_id,
                    {"org_id": org_id, **data}, _rollback, data, now,
                )
        except EngineError as e:
            return _failure(e)

    def cancel_offer(
        self, org_id: str, offer_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Cancel an open offer, refunding the creator and every bidder."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locks.hold(EntityLocks.offer(offer_id)):
                offer = self._repo.get_offer(org_id, offer_id)
                owners = self._escrow_owners(org_id, [offer])
                with self._locks.hold(*(EntityLocks.player(p.subject_id) for p in owners)):
                    snapshot = _Snapshot(offer, *owners)
                    restore_escrow = self.escrow.snapshot(offer_id)
                    outcome = self._market.cancel_offer(org_id, offer_id, now=now)

                    def _rollback() -> None:
                        snapshot.restore()
                        restore_escrow()

                    data = {
                        **_offer_view(outcome.offer),
                        "refunds": dict(outcome.refunds),
                        "total_refunded": outcome.total_refunded,
                    }
                    return self._commit(
                        EventKind.OFFER_CANCELLED, offer.creator_id,
                        {"org_id": org_id, **data}, _rollback, data, now,
                    )
        except EngineError as e:
            return _failure(e)

    def update_offer(
        self, org_id: str, offer_id: str, attribute: str, value: Any,
    ) -> ServiceResult:
        """Change an open offer's name, deadline or end date."""
        try:
            with self._locks.hold(EntityLocks.offer(offer_id)):
                offer = self._repo.get_offer(org_id, offer_id)
                snapshot = _Snapshot(offer)
                self._market.update_offer(org_id, offer_id, attribute, value)
                data = _offer_view(offer)
                return self._commit(
                    EventKind.OFFER_UPDATED, offer.creator_id,
                    {"org_id": org_id, "offer_id": offer_id, "attribute": attribute},
                    snapshot.restore, data,
                )
        except EngineError as e:
            return _failure(e)

    def sweep_expired_offers(self, org_id: str, now: datetime) -> ServiceResult:
        """Cancel, with refund, every open offer whose end date is before now.

        Hook for an external scheduler; the engine never expires offers
        on its own. Each offer is cancelled in its own transaction.
        """
        try:
            expired = self._market.expired_offers(org_id, now)
        except EngineError as e:
            return _failure(e)
        cancelled: list[str] = []
        errors: list[str] = []
        for offer in expired:
            result = self.cancel_offer(org_id, offer.offer_id, now=now)
            if result.success:
                cancelled.append(offer.offer_id)
            else:
                errors.extend(result.errors)
        if expired:
            logger.debug("Expiry sweep for %s cancelled %d offer(s)", org_id, len(cancelled))
        return ServiceResult(
            success=not errors,
            errors=errors,
            data={"cancelled": cancelled},
            error_kind=ErrorKind.INVALID_STATE.value if errors else None,
        )

    # ------------------------------------------------------------------
    # Marketplace queries
    # ------------------------------------------------------------------

    def get_bids(self, org_id: str, offer_id: str) -> ServiceResult:
        try:
            bids = self._market.bids_for_offer(org_id, offer_id)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"bids": [_bid_view(b) for b in bids]})

    def offers_for_player(self, org_id: str, player_id: str) -> ServiceResult:
        try:
            offers = self._market.offers_by_player(org_id, player_id)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"offers": [_offer_view(o) for o in offers]})

    def visible_offers(self, org_id: str, market_id: str, player_id: str) -> ServiceResult:
        try:
            offers = self._market.visible_offers(org_id, market_id, player_id)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"offers": [_offer_view(o) for o in offers]})

    def recent_offers(
        self, org_id: str, market_id: str, player_id: str, count: Optional[int] = None,
    ) -> ServiceResult:
        try:
            offers = self._market.recent_offers(
                org_id, market_id, player_id, count or self._config.default_query_count,
            )
        except EngineError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"offers": [_offer_view(o) for o in offers]})

    def highest_offers(
        self, org_id: str, market_id: str, player_id: str, count: Optional[int] = None,
    ) -> ServiceResult:
        try:
            offers = self._market.highest_offers(
                org_id, market_id, player_id, count or self._config.default_query_count,
            )
        except EngineError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"offers": [_offer_view(o) for o in offers]})

    # ------------------------------------------------------------------
    # Present boards
    # ------------------------------------------------------------------

    def send_present(
        self,
        org_id: str,
        sender_id: str,
        receiver_ids: list[str],
        message: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            receivers = list(dict.fromkeys(receiver_ids))
            with self._locks.hold(*(EntityLocks.player(r) for r in receivers)):
                boards = [self._repo.get_board(org_id, r) for r in receivers]
                snapshot = _Snapshot(*boards)
                present_id = self._next_id("PRS", self._repo.presents)
                present = self._boards.send(
                    org_id, sender_id, receivers, message, present_id=present_id, now=now,
                )

                def _rollback() -> None:
                    snapshot.restore()
                    self._repo.presents.pop(present_id, None)

                data = {"present_id": present.present_id, "receiver_ids": receivers}
                return self._commit(
                    EventKind.PRESENT_SENT, sender_id,
                    {"org_id": org_id, **data}, _rollback, data, now,
                )
        except EngineError as e:
            return _failure(e)

    def accept_present(self, org_id: str, player_id: str, present_id: str) -> ServiceResult:
        return self._resolve_present(org_id, player_id, present_id, "accept")

    def deny_present(self, org_id: str, player_id: str, present_id: str) -> ServiceResult:
        return self._resolve_present(org_id, player_id, present_id, "deny")

    def archive_present(self, org_id: str, player_id: str, present_id: str) -> ServiceResult:
        return self._resolve_present(org_id, player_id, present_id, "archive")

    def get_board(self, org_id: str, player_id: str) -> ServiceResult:
        try:
            board = self._repo.get_board(org_id, player_id)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(success=True, data=_board_view(board))

    # ------------------------------------------------------------------
    # Reward views
    # ------------------------------------------------------------------

    def finished_goals(
        self,
        org_id: str,
        subject_id: str,
        subject_kind: str = SubjectKind.PLAYER.value,
        goal_id: Optional[str] = None,
    ) -> ServiceResult:
        """FinishedGoal receipts of a subject, optionally for one goal only."""
        try:
            subject = self._subject(org_id, subject_id, subject_kind)
            if goal_id is not None:
                self._repo.get_goal(org_id, goal_id)
                records = subject.finished_goals_for(goal_id)
            else:
                records = list(subject.finished_goals)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(
            success=True,
            data={"finished_goals": [_finished_view(fg) for fg in records]},
        )

    def badges(
        self, org_id: str, subject_id: str, subject_kind: str = SubjectKind.PLAYER.value,
    ) -> ServiceResult:
        try:
            subject = self._subject(org_id, subject_id, subject_kind)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(
            success=True, data={"badges": [_permanent_view(r) for r in subject.badges()]},
        )

    def achievements(
        self, org_id: str, subject_id: str, subject_kind: str = SubjectKind.PLAYER.value,
    ) -> ServiceResult:
        try:
            subject = self._subject(org_id, subject_id, subject_kind)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(
            success=True,
            data={"achievements": [_permanent_view(r) for r in subject.achievements()]},
        )

    def balances(
        self, org_id: str, subject_id: str, subject_kind: str = SubjectKind.PLAYER.value,
    ) -> ServiceResult:
        try:
            subject = self._subject(org_id, subject_id, subject_kind)
        except EngineError as e:
            return _failure(e)
        return ServiceResult(
            success=True,
            data={
                "subject_id": subject.subject_id,
                "coins": subject.coins,
                "points": subject.points,
                "level": {"index": subject.level.index, "label": subject.level.label},
            },
        )

    def verify_conservation(self, org_id: str) -> ServiceResult:
        errors = self._market.verify_conservation(org_id)
        return ServiceResult(
            success=not errors,
            errors=errors,
            error_kind=ErrorKind.INVALID_STATE.value if errors else None,
        )

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        offers = list(self._repo.offers.values())
        return {
            "version": __version__,
            "organisations": len(self._repo.organisations),
            "players": len(self._repo.players),
            "groups": len(self._repo.groups),
            "goals": len(self._repo.goals),
            "market": {
                "marketplaces": len(self._repo.marketplaces),
                "total_offers": len(offers),
                "open_offers": sum(1 for o in offers if o.state == OfferState.OPEN),
                "total_bids": len(self._repo.bids),
                "escrow_held": sum(
                    self.escrow.held_total(o.offer_id)
                    for o in offers if o.state == OfferState.OPEN
                ),
            },
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _subject(self, org_id: str, subject_id: str, subject_kind: str) -> Subject:
        kind = _enum(SubjectKind, subject_kind, "subject kind")
        return self._repo.get_subject(org_id, subject_id, kind)

    def _validate_goal_refs(
        self, org_id: str, reward_ids: list[str], role_ids: set[str],
    ) -> None:
        self._repo.get_rewards(org_id, reward_ids)
        for role_id in sorted(role_ids):
            self._repo.get_role(org_id, role_id)

    def _escrow_owners(self, org_id: str, offers: list[Offer]) -> list[Player]:
        """Every player holding coins in the escrow of the given offers."""
        owner_ids: set[str] = set()
        for offer in offers:
            owner_ids.update(self.escrow.held_by_owner(offer.offer_id))
        return [self._repo.get_player(org_id, pid) for pid in sorted(owner_ids)]

    def _change_membership(
        self, org_id: str, group_id: str, player_ids: list[str], adding: bool,
    ) -> ServiceResult:
        try:
            with self._locks.hold(EntityLocks.group(group_id)):
                group = self._repo.get_group(org_id, group_id)
                for pid in player_ids:
                    self._repo.get_player(org_id, pid)
                previous = list(group.player_ids)
                if adding:
                    changed = group.add_players(player_ids)
                else:
                    changed = group.remove_players(player_ids)
                self._repo.index_group(group)

                def _rollback() -> None:
                    group.player_ids = previous
                    self._repo.index_group(group)

                data = {
                    "group_id": group_id,
                    "added" if adding else "removed": changed,
                    "player_ids": list(group.player_ids),
                }
                return self._commit(
                    EventKind.GROUP_MEMBERSHIP_CHANGED, "system",
                    {"org_id": org_id, **data}, _rollback, data,
                )
        except EngineError as e:
            return _failure(e)

    def _resolve_present(
        self, org_id: str, player_id: str, present_id: str, action: str,
    ) -> ServiceResult:
        try:
            with self._locks.hold(EntityLocks.player(player_id)):
                board = self._repo.get_board(org_id, player_id)
                snapshot = _Snapshot(board)
                getattr(self._boards, action)(org_id, player_id, present_id)
                data = {"present_id": present_id, "action": action, **_board_view(board)}
                return self._commit(
                    EventKind.PRESENT_RESOLVED, player_id,
                    {"org_id": org_id, "present_id": present_id, "action": action},
                    snapshot.restore, data,
                )
        except EngineError as e:
            return _failure(e)

    def _next_id(self, prefix: str, store: dict) -> str:
        """Sequential entity id, skipping any already taken."""
        with self._commit_lock:
            n = self._id_counters.get(prefix, len(store))
            while True:
                n += 1
                candidate = f"{prefix}-{n:08d}"
                if candidate not in store:
                    self._id_counters[prefix] = n
                    return candidate

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Append an audit event. Returns error string or None."""
        if self._event_log is None:
            return None
        with self._commit_lock:
            try:
                event = EventRecord.create(
                    event_id=self._next_event_id(),
                    event_kind=kind,
                    actor_id=actor_id,
                    payload=payload,
                    timestamp_utc=now,
                )
                self._event_log.append(event)
            except (ValueError, OSError) as e:
                return f"Event log failure: {e}"
        return None

    def _commit(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        on_rollback: Callable[[], None],
        data: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Audit, then persist. A failed audit rolls the mutation back."""
        err = self._record_event(kind, actor_id, payload, now)
        if err:
            on_rollback()
            return _audit_failure(err)
        # Audit event committed: do NOT roll back in-memory state
        return self._persisted(data)

    def _persisted(self, data: dict[str, Any]) -> ServiceResult:
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after audit events have been committed.

        MUST NOT rollback in-memory state; the audit trail is already
        durable. Sets _persistence_degraded and returns a warning.
        """
        if self._state_store is None:
            return None
        with self._commit_lock:
            try:
                self._state_store.save(self._repo, self.escrow)
                return None
            except OSError as e:
                self._persistence_degraded = True
                logger.warning("State snapshot write failed: %s", e)
                return (
                    f"Persistence degraded: {e}; state committed in audit trail "
                    f"but StateStore is stale"
                )


# ----------------------------------------------------------------------
# Module helpers
# ----------------------------------------------------------------------

def _failure(error: EngineError) -> ServiceResult:
    return ServiceResult(success=False, errors=[error.message], error_kind=error.kind.value)


def _audit_failure(message: str) -> ServiceResult:
    return ServiceResult(
        success=False, errors=[message], error_kind=ErrorKind.INVALID_STATE.value,
    )


def _enum(enum_cls: Any, value: Any, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise EngineError(
            ErrorKind.INVALID_STATE, f"Unknown {label}: {value!r}. Allowed: [{allowed}]",
        ) from None


def _kind_key(kind: SubjectKind, subject_id: str) -> LockKey:
    if kind == SubjectKind.GROUP:
        return EntityLocks.group(subject_id)
    return EntityLocks.player(subject_id)


def _subject_key(subject: Subject) -> LockKey:
    return _kind_key(subject.kind, subject.subject_id)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _offer_view(offer: Offer) -> dict[str, Any]:
    return {
        "offer_id": offer.offer_id,
        "market_id": offer.market_id,
        "task_id": offer.task_id,
        "creator_id": offer.creator_id,
        "name": offer.name,
        "initial_prize": offer.initial_prize,
        "prize": offer.prize,
        "state": offer.state.value,
        "created_utc": _ts(offer.created_utc),
        "end_date": _ts(offer.end_date),
        "deadline": _ts(offer.deadline),
        "completed_by": offer.completed_by,
    }


def _bid_view(bid: Bid) -> dict[str, Any]:
    return {
        "bid_id": bid.bid_id,
        "offer_id": bid.offer_id,
        "bidder_id": bid.bidder_id,
        "amount": bid.amount,
        "created_utc": _ts(bid.created_utc),
    }


def _goal_view(goal: Goal) -> dict[str, Any]:
    return {
        "goal_id": goal.goal_id,
        "name": goal.name,
        "rule_id": goal.rule_id,
        "reward_ids": list(goal.reward_ids),
        "role_ids": sorted(goal.role_ids),
        "repeatable": goal.repeatable,
        "group_goal": goal.group_goal,
    }


def _finished_view(record: FinishedGoal) -> dict[str, Any]:
    return {
        "finished_id": record.finished_id,
        "goal_id": record.goal_id,
        "subject_id": record.subject_id,
        "subject_kind": record.subject_kind,
        "finished_utc": _ts(record.finished_utc),
    }


def _permanent_view(entry: PermanentRewardEntry) -> dict[str, Any]:
    return {
        "reward_id": entry.reward_id,
        "kind": entry.kind.value,
        "name": entry.name,
        "awarded_utc": _ts(entry.awarded_utc),
        "goal_id": entry.goal_id,
    }


def _board_view(board: Board) -> dict[str, Any]:
    return {
        "owner_id": board.owner_id,
        "inbox": list(board.inbox),
        "current": list(board.current),
        "archive": list(board.archive),
    }
