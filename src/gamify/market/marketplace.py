"""Marketplace engine — offers, bids, and escrowed prize settlement.

Operations (each validates fully before touching any balance):
- create_offer:   tradeable task, prize > 0, creator can afford it.
                  Debits the creator and holds the prize in escrow.
- place_bid:      offer OPEN, amount > 0, bidder can afford it.
                  Debits the bidder, raises the prize, holds the bid.
- complete_offer: offer OPEN. Runs the task-completion path for the
                  completer, releases the whole escrow to them, and
                  closes the offer as COMPLETED. Bidders get nothing
                  back: their coins were part of the prize.
- cancel_offer:   offer OPEN. Refunds every escrow entry to its owner
                  (creator's initial prize, each bid to its bidder),
                  zeroes the prize, closes the offer as CANCELLED.

Queries never mutate. Recency order is created_utc descending, prize
order is prize descending; ties in both are broken by offer_id
ascending.

Locking is the caller's job (see gamify.concurrency). This engine
assumes it runs inside a transaction holding every entity it touches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from gamify.engine.goal_tracker import GoalCompletionTracker
from gamify.engine.settlement import SettlementReceipt
from gamify.errors import EngineError, ErrorKind
from gamify.market.escrow import EscrowBook
from gamify.market.offer_state_machine import OfferStateMachine
from gamify.models.goal import Goal
from gamify.models.market import Bid, EscrowSource, Offer, OfferState
from gamify.models.player import Player
from gamify.persistence.repository import Repository

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Offer attributes that may be changed while an offer is OPEN.
UPDATABLE_OFFER_ATTRIBUTES = ("name", "deadline", "end_date")


@dataclass
class OfferCompletion:
    """Outcome of completing an offer."""
    offer: Offer
    payout: int
    finished_goals: list[Goal] = field(default_factory=list)
    receipt: SettlementReceipt = field(default_factory=SettlementReceipt)


@dataclass
class OfferCancellation:
    """Outcome of cancelling an offer: refund per contributor."""
    offer: Offer
    refunds: dict[str, int] = field(default_factory=dict)

    @property
    def total_refunded(self) -> int:
        return sum(self.refunds.values())


class MarketplaceEngine:
    """Marketplace escrow protocol over a repository and an escrow book.

    Usage:
        engine = MarketplaceEngine(repo, EscrowBook(), tracker)
        offer = engine.create_offer("org", "market", "task", "alice", 20)
        engine.place_bid("org", offer.offer_id, "bob", 10)
        outcome = engine.complete_offer("org", offer.offer_id, "carol")
    """

    def __init__(
        self,
        repository: Repository,
        escrow: EscrowBook,
        tracker: GoalCompletionTracker,
        reevaluate_points_on_payout: bool = False,
    ) -> None:
        self._repo = repository
        self._escrow = escrow
        self._tracker = tracker
        self._reevaluate_points_on_payout = reevaluate_points_on_payout

    @property
    def escrow(self) -> EscrowBook:
        return self._escrow

    # ------------------------------------------------------------------
    # Mutating operations
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
        offer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Offer:
        """List a tradeable task with an escrowed prize."""
        if now is None:
            now = datetime.now(timezone.utc)
        market = self._repo.get_marketplace(org_id, market_id)
        task = self._repo.get_task(org_id, task_id)
        creator = self._repo.get_player(org_id, creator_id)

        if not task.tradeable:
            raise EngineError(
                ErrorKind.INVALID_STATE, f"Task {task_id} is not tradeable",
            )
        _require_positive(prize, "Offer prize")
        _require_funds(creator, prize, "offer")

        if offer_id is None:
            offer_id = f"offer_{uuid4().hex[:12]}"
        offer = Offer(
            offer_id=offer_id,
            market_id=market.market_id,
            org_id=org_id,
            task_id=task.task_id,
            creator_id=creator.subject_id,
            initial_prize=prize,
            prize=prize,
            name=name,
            state=OfferState.OPEN,
            created_utc=now,
            end_date=end_date,
            deadline=deadline,
        )
        self._repo.add_offer(offer)
        market.add_offer(offer_id)
        creator.coins -= prize
        self._escrow.hold(
            offer_id, creator.subject_id, prize, EscrowSource.OFFER, now=now,
        )
        logger.debug(
            "Offer %s created by %s: escrowed %d coins (balance now %d)",
            offer_id, creator.subject_id, prize, creator.coins,
        )
        return offer

    def place_bid(
        self,
        org_id: str,
        offer_id: str,
        bidder_id: str,
        amount: int,
        bid_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Bid:
        """Raise an open offer's prize with an escrowed bid."""
        if now is None:
            now = datetime.now(timezone.utc)
        offer = self._repo.get_offer(org_id, offer_id)
        bidder = self._repo.get_player(org_id, bidder_id)

        _require_open(offer, "accept bids")
        _require_positive(amount, "Bid amount")
        _require_funds(bidder, amount, "bid")

        if bid_id is None:
            bid_id = f"bid_{uuid4().hex[:12]}"
        bid = Bid(
            bid_id=bid_id,
            offer_id=offer_id,
            bidder_id=bidder.subject_id,
            amount=amount,
            created_utc=now,
        )
        self._repo.add_bid(bid)
        bidder.coins -= amount
        offer.prize += amount
        self._escrow.hold(
            offer_id, bidder.subject_id, amount, EscrowSource.BID,
            bid_id=bid_id, now=now,
        )
        logger.debug(
            "Bid %s on offer %s by %s: escrowed %d coins (prize now %d)",
            bid_id, offer_id, bidder.subject_id, amount, offer.prize,
        )
        return bid

    def complete_offer(
        self,
        org_id: str,
        offer_id: str,
        completer_id: str,
        now: Optional[datetime] = None,
    ) -> OfferCompletion:
        """Complete the offer's task and pay the whole prize to the completer."""
        if now is None:
            now = datetime.now(timezone.utc)
        offer = self._repo.get_offer(org_id, offer_id)
        completer = self._repo.get_player(org_id, completer_id)
        task = self._repo.get_task(org_id, offer.task_id)

        _require_open(offer, "be completed")
        self._require_conserved(offer)

        receipt = SettlementReceipt()
        finished = self._tracker.on_task_completed(
            completer, task, org_id, now=now, receipt=receipt,
        )

        payout = self._escrow.release(offer_id, now=now)
        completer.coins += payout
        OfferStateMachine.close(
            offer, OfferState.COMPLETED, now, completer_id=completer.subject_id,
        )

        if self._reevaluate_points_on_payout:
            finished.extend(
                self._tracker.reevaluate_points_goals(completer, now=now, receipt=receipt)
            )
        logger.debug(
            "Offer %s completed by %s: paid %d coins",
            offer_id, completer.subject_id, payout,
        )
        return OfferCompletion(
            offer=offer, payout=payout, finished_goals=finished, receipt=receipt,
        )

    def cancel_offer(
        self,
        org_id: str,
        offer_id: str,
        now: Optional[datetime] = None,
    ) -> OfferCancellation:
        """Cancel an open offer, refunding every contributor individually."""
        if now is None:
            now = datetime.now(timezone.utc)
        offer = self._repo.get_offer(org_id, offer_id)
        _require_open(offer, "be cancelled")
        self._require_conserved(offer)

        owed = self._escrow.held_by_owner(offer_id)
        owners = {pid: self._repo.get_player(org_id, pid) for pid in owed}

        self._escrow.refund(offer_id, now=now)
        for pid, amount in owed.items():
            owners[pid].coins += amount
            logger.debug("Refunded %d coins to %s from offer %s", amount, pid, offer_id)
        offer.prize = 0
        OfferStateMachine.close(offer, OfferState.CANCELLED, now)
        return OfferCancellation(offer=offer, refunds=owed)

    def update_offer(
        self,
        org_id: str,
        offer_id: str,
        attribute: str,
        value: Any,
    ) -> Offer:
        """Change an open offer's name, deadline or end date."""
        offer = self._repo.get_offer(org_id, offer_id)
        _require_open(offer, "be changed")
        if attribute not in UPDATABLE_OFFER_ATTRIBUTES:
            raise EngineError(
                ErrorKind.INVALID_STATE,
                f"Offer attribute cannot be changed: {attribute}. "
                f"Allowed: [{', '.join(UPDATABLE_OFFER_ATTRIBUTES)}]",
            )
        if attribute == "name":
            offer.name = value or ""
        elif attribute == "deadline":
            offer.deadline = value
        else:
            offer.end_date = value
        return offer

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def offers_by_player(self, org_id: str, player_id: str) -> list[Offer]:
        """Every offer the player created, oldest first."""
        self._repo.get_player(org_id, player_id)
        offers = [
            o for o in self._repo.offers.values()
            if o.org_id == org_id and o.creator_id == player_id
        ]
        return sorted(offers, key=lambda o: (o.created_utc or _EPOCH, o.offer_id))

    def visible_offers(
        self, org_id: str, market_id: str, player_id: str,
    ) -> list[Offer]:
        """Open offers on tradeable tasks whose roles the player shares.

        A task without roles is visible to everyone.
        """
        player = self._repo.get_player(org_id, player_id)
        self._repo.get_marketplace(org_id, market_id)
        visible = []
        for offer in self._repo.offers_for_market(market_id):
            if offer.state != OfferState.OPEN:
                continue
            task = self._repo.tasks.get(offer.task_id)
            if task is None or not task.tradeable:
                continue
            if task.role_ids and not (task.role_ids & player.role_ids):
                continue
            visible.append(offer)
        return sorted(visible, key=lambda o: o.offer_id)

    def recent_offers(
        self, org_id: str, market_id: str, player_id: str, count: int,
    ) -> list[Offer]:
        """Top-N visible offers, newest first."""
        _require_positive(count, "Count")
        offers = self.visible_offers(org_id, market_id, player_id)
        offers.sort(key=lambda o: o.created_utc or _EPOCH, reverse=True)
        return offers[:count]

    def highest_offers(
        self, org_id: str, market_id: str, player_id: str, count: int,
    ) -> list[Offer]:
        """Top-N visible offers, largest prize first."""
        _require_positive(count, "Count")
        offers = self.visible_offers(org_id, market_id, player_id)
        offers.sort(key=lambda o: o.prize, reverse=True)
        return offers[:count]

    def bids_for_offer(self, org_id: str, offer_id: str) -> list[Bid]:
        """Bids on an offer in the order they were placed."""
        self._repo.get_offer(org_id, offer_id)
        return self._repo.bids_for_offer(offer_id)

    def expired_offers(self, org_id: str, now: datetime) -> list[Offer]:
        """Open offers whose end date has passed (for an external sweep)."""
        expired = [
            o for o in self._repo.offers.values()
            if o.org_id == org_id
            and o.state == OfferState.OPEN
            and o.end_date is not None
            and o.end_date < now
        ]
        return sorted(expired, key=lambda o: o.offer_id)

    def verify_conservation(self, org_id: str) -> list[str]:
        """Check escrow conservation for every offer of the organisation."""
        errors: list[str] = []
        for offer in sorted(self._repo.offers.values(), key=lambda o: o.offer_id):
            if offer.org_id == org_id:
                errors.extend(self._escrow.verify(offer))
        return errors

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_conserved(self, offer: Offer) -> None:
        errors = self._escrow.verify(offer)
        if errors:
            raise EngineError(ErrorKind.INVALID_STATE, errors[0])


def _require_open(offer: Offer, action: str) -> None:
    if offer.state != OfferState.OPEN:
        raise EngineError(
            ErrorKind.INVALID_STATE,
            f"Offer {offer.offer_id} cannot {action} (state: {offer.state.value})",
        )


def _require_positive(amount: int, label: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise EngineError(
            ErrorKind.INVALID_AMOUNT, f"{label} must be a positive integer, got {amount!r}",
        )


def _require_funds(player: Player, amount: int, what: str) -> None:
    if not player.has_coins(amount):
        raise EngineError(
            ErrorKind.INSUFFICIENT_FUNDS,
            f"Not enough coins for such a {what}: player {player.subject_id} "
            f"has {player.coins}, needs {amount}",
        )
