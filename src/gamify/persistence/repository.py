"""Organisation-scoped entity lookup — the engine's persistence collaborator.

Storage is in-memory. Durability comes from StateStore snapshots (the
commit hook) and the append-only event log.

Every lookup takes the caller's organisation id. An entity that exists
but belongs to another organisation is reported exactly like a missing
one (NOT_FOUND), so callers never learn about other tenants.

Ownership: subjects own their FinishedGoals; offers own their bids via
the escrow book. The player → groups index is non-owning and is kept in
step by index_group() / unindex_group().
"""

from __future__ import annotations

from typing import Iterable, Optional, TypeVar

from gamify.errors import EngineError, ErrorKind, not_found
from gamify.models.goal import Goal, GoalRule, Task
from gamify.models.market import Bid, MarketPlace, Offer
from gamify.models.organisation import Organisation, Role
from gamify.models.player import Player, PlayerGroup, Subject, SubjectKind
from gamify.models.present import Board, Present
from gamify.models.reward import Reward

T = TypeVar("T")


class Repository:
    """In-memory, organisation-scoped store of every engine entity."""

    def __init__(self) -> None:
        self.organisations: dict[str, Organisation] = {}
        self.roles: dict[str, Role] = {}
        self.players: dict[str, Player] = {}
        self.groups: dict[str, PlayerGroup] = {}
        self.tasks: dict[str, Task] = {}
        self.rules: dict[str, GoalRule] = {}
        self.rewards: dict[str, Reward] = {}
        self.goals: dict[str, Goal] = {}
        self.marketplaces: dict[str, MarketPlace] = {}
        self.offers: dict[str, Offer] = {}
        self.bids: dict[str, Bid] = {}
        self.presents: dict[str, Present] = {}
        self.boards: dict[str, Board] = {}
        self._bids_by_offer: dict[str, list[str]] = {}
        self._groups_by_player: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def add_organisation(self, org: Organisation) -> Organisation:
        self._check_new(self.organisations, org.org_id, "Organisation")
        self.organisations[org.org_id] = org
        return org

    def add_role(self, role: Role) -> Role:
        self._require_org(role.org_id)
        self._check_new(self.roles, role.role_id, "Role")
        self.roles[role.role_id] = role
        return role

    def add_player(self, player: Player) -> Player:
        self._require_org(player.org_id)
        self._check_new(self.players, player.subject_id, "Player")
        self.players[player.subject_id] = player
        self.boards[player.subject_id] = Board(
            owner_id=player.subject_id, org_id=player.org_id,
        )
        return player

    def add_group(self, group: PlayerGroup) -> PlayerGroup:
        self._require_org(group.org_id)
        self._check_new(self.groups, group.subject_id, "PlayerGroup")
        self.groups[group.subject_id] = group
        self.index_group(group)
        return group

    def add_task(self, task: Task) -> Task:
        self._require_org(task.org_id)
        self._check_new(self.tasks, task.task_id, "Task")
        self.tasks[task.task_id] = task
        return task

    def add_rule(self, rule: GoalRule) -> GoalRule:
        self._require_org(rule.org_id)
        self._check_new(self.rules, rule.rule_id, "GoalRule")
        self.rules[rule.rule_id] = rule
        return rule

    def add_reward(self, reward: Reward) -> Reward:
        self._require_org(reward.org_id)
        self._check_new(self.rewards, reward.reward_id, "Reward")
        self.rewards[reward.reward_id] = reward
        return reward

    def add_goal(self, goal: Goal) -> Goal:
        self._require_org(goal.org_id)
        self._check_new(self.goals, goal.goal_id, "Goal")
        self.goals[goal.goal_id] = goal
        return goal

    def add_marketplace(self, market: MarketPlace) -> MarketPlace:
        self._require_org(market.org_id)
        self._check_new(self.marketplaces, market.market_id, "MarketPlace")
        self.marketplaces[market.market_id] = market
        return market

    def add_offer(self, offer: Offer) -> Offer:
        self._check_new(self.offers, offer.offer_id, "Offer")
        self.offers[offer.offer_id] = offer
        self._bids_by_offer.setdefault(offer.offer_id, [])
        return offer

    def add_bid(self, bid: Bid) -> Bid:
        self._check_new(self.bids, bid.bid_id, "Bid")
        self.bids[bid.bid_id] = bid
        self._bids_by_offer.setdefault(bid.offer_id, []).append(bid.bid_id)
        return bid

    def add_present(self, present: Present) -> Present:
        self._check_new(self.presents, present.present_id, "Present")
        self.presents[present.present_id] = present
        return present

    # ------------------------------------------------------------------
    # Organisation-scoped lookup
    # ------------------------------------------------------------------

    def get_organisation(self, org_id: str) -> Organisation:
        org = self.organisations.get(org_id)
        if org is None:
            raise not_found("Organisation", org_id)
        return org

    def get_player(self, org_id: str, player_id: str) -> Player:
        return self._scoped(self.players, org_id, player_id, "Player")

    def get_group(self, org_id: str, group_id: str) -> PlayerGroup:
        return self._scoped(self.groups, org_id, group_id, "PlayerGroup")

    def get_subject(self, org_id: str, subject_id: str, kind: SubjectKind) -> Subject:
        if kind == SubjectKind.GROUP:
            return self.get_group(org_id, subject_id)
        return self.get_player(org_id, subject_id)

    def get_task(self, org_id: str, task_id: str) -> Task:
        return self._scoped(self.tasks, org_id, task_id, "Task")

    def get_rule(self, org_id: str, rule_id: str) -> GoalRule:
        return self._scoped(self.rules, org_id, rule_id, "GoalRule")

    def get_reward(self, org_id: str, reward_id: str) -> Reward:
        return self._scoped(self.rewards, org_id, reward_id, "Reward")

    def get_rewards(self, org_id: str, reward_ids: Iterable[str]) -> list[Reward]:
        return [self.get_reward(org_id, rid) for rid in reward_ids]

    def get_goal(self, org_id: str, goal_id: str) -> Goal:
        return self._scoped(self.goals, org_id, goal_id, "Goal")

    def get_role(self, org_id: str, role_id: str) -> Role:
        return self._scoped(self.roles, org_id, role_id, "Role")

    def get_marketplace(self, org_id: str, market_id: str) -> MarketPlace:
        return self._scoped(self.marketplaces, org_id, market_id, "MarketPlace")

    def get_offer(self, org_id: str, offer_id: str) -> Offer:
        return self._scoped(self.offers, org_id, offer_id, "Offer")

    def get_board(self, org_id: str, player_id: str) -> Board:
        return self._scoped(self.boards, org_id, player_id, "Board")

    def get_present(self, org_id: str, present_id: str) -> Present:
        return self._scoped(self.presents, org_id, present_id, "Present")

    def goals_for_org(self, org_id: str) -> list[Goal]:
        return [g for g in self.goals.values() if g.org_id == org_id]

    def offers_for_market(self, market_id: str) -> list[Offer]:
        market = self.marketplaces.get(market_id)
        if market is None:
            return []
        return [self.offers[oid] for oid in market.offer_ids if oid in self.offers]

    def bids_for_offer(self, offer_id: str) -> list[Bid]:
        return [self.bids[bid] for bid in self._bids_by_offer.get(offer_id, [])]

    def groups_of_player(self, player_id: str) -> list[PlayerGroup]:
        return [
            self.groups[gid]
            for gid in sorted(self._groups_by_player.get(player_id, set()))
            if gid in self.groups
        ]

    # ------------------------------------------------------------------
    # Indexes and cascading deletes
    # ------------------------------------------------------------------

    def index_group(self, group: PlayerGroup) -> None:
        """Rebuild the player → group index entries for one group."""
        self.unindex_group(group.subject_id)
        for pid in group.player_ids:
            self._groups_by_player.setdefault(pid, set()).add(group.subject_id)

    def unindex_group(self, group_id: str) -> None:
        for members in self._groups_by_player.values():
            members.discard(group_id)

    def remove_goal(self, org_id: str, goal_id: str) -> tuple[Goal, int]:
        """Delete a goal and every FinishedGoal that references it.

        Returns (goal, number of FinishedGoal receipts removed).
        """
        goal = self.get_goal(org_id, goal_id)
        removed = 0
        for subject in self.subjects(org_id):
            before = len(subject.finished_goals)
            subject.finished_goals = [
                fg for fg in subject.finished_goals if fg.goal_id != goal_id
            ]
            removed += before - len(subject.finished_goals)
        del self.goals[goal_id]
        return goal, removed

    def remove_group(self, org_id: str, group_id: str) -> PlayerGroup:
        """Delete a group. Its finished goals and rewards go with it."""
        group = self.get_group(org_id, group_id)
        self.unindex_group(group_id)
        del self.groups[group_id]
        return group

    def remove_marketplace(self, org_id: str, market_id: str) -> MarketPlace:
        market = self.get_marketplace(org_id, market_id)
        del self.marketplaces[market_id]
        return market

    def discard_offer(self, offer_id: str) -> None:
        """Forget an offer that never committed (transaction rollback)."""
        offer = self.offers.pop(offer_id, None)
        self._bids_by_offer.pop(offer_id, None)
        if offer is not None:
            market = self.marketplaces.get(offer.market_id)
            if market is not None and offer_id in market.offer_ids:
                market.offer_ids.remove(offer_id)

    def discard_bid(self, bid_id: str) -> None:
        """Forget a bid that never committed (transaction rollback)."""
        bid = self.bids.pop(bid_id, None)
        if bid is not None:
            ids = self._bids_by_offer.get(bid.offer_id, [])
            if bid_id in ids:
                ids.remove(bid_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def subjects(self, org_id: str) -> list[Subject]:
        subjects: list[Subject] = [p for p in self.players.values() if p.org_id == org_id]
        subjects.extend(g for g in self.groups.values() if g.org_id == org_id)
        return subjects

    def _require_org(self, org_id: str) -> None:
        self.get_organisation(org_id)

    @staticmethod
    def _check_new(store: dict, entity_id: str, entity: str) -> None:
        if entity_id in store:
            raise EngineError(ErrorKind.INVALID_STATE, f"{entity} already exists: {entity_id}")

    @staticmethod
    def _scoped(store: dict[str, T], org_id: str, entity_id: str, entity: str) -> T:
        item: Optional[T] = store.get(entity_id)
        if item is None or getattr(item, "org_id", None) != org_id:
            raise not_found(entity, entity_id)
        return item
