"""Marketplace models — marketplaces, offers, bids, and escrow entries.

A player puts a tradeable task up as an Offer with an initial prize that
is debited from them immediately (escrow). Other players raise the prize
with Bids, each debited from the bidder and held against the offer.

Offer lifecycle: OPEN → COMPLETED (prize paid to the completer)
                 OPEN → CANCELLED (every escrow entry refunded to its owner)

Escrow entry lifecycle: HELD → RELEASED / REFUNDED

Invariant while an offer is OPEN:
    sum(entry.amount for HELD entries of the offer) == offer.prize
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


class OfferState(str, enum.Enum):
    """Lifecycle state of an offer."""
    OPEN = "open"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EscrowState(str, enum.Enum):
    """Lifecycle state of a single escrowed contribution."""
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowSource(str, enum.Enum):
    """Where an escrowed contribution came from."""
    OFFER = "offer"
    BID = "bid"


# Valid escrow entry transitions
ESCROW_TRANSITIONS: Dict[EscrowState, frozenset] = {
    EscrowState.HELD: frozenset({EscrowState.RELEASED, EscrowState.REFUNDED}),
    EscrowState.RELEASED: frozenset(),
    EscrowState.REFUNDED: frozenset(),
}


@dataclass
class MarketPlace:
    """One per organisation. Owns its offers by id."""
    market_id: str
    org_id: str
    offer_ids: list[str] = field(default_factory=list)

    def add_offer(self, offer_id: str) -> None:
        if offer_id not in self.offer_ids:
            self.offer_ids.append(offer_id)


@dataclass
class Offer:
    """A tradeable task listed with an escrowed coin prize.

    end_date and deadline are advisory. Nothing in the engine expires
    an offer on its own; see MarketplaceEngine.expired_offers().
    """
    offer_id: str
    market_id: str
    org_id: str
    task_id: str
    creator_id: str
    initial_prize: int
    prize: int
    name: str = ""
    state: OfferState = OfferState.OPEN
    created_utc: Optional[datetime] = None
    end_date: Optional[datetime] = None
    deadline: Optional[datetime] = None
    completed_by: Optional[str] = None
    closed_utc: Optional[datetime] = None


@dataclass
class Bid:
    """A player's escrowed pledge raising an offer's prize."""
    bid_id: str
    offer_id: str
    bidder_id: str
    amount: int
    created_utc: Optional[datetime] = None


@dataclass
class EscrowEntry:
    """One contributor's coins held against an offer.

    Mutable: state transitions happen when the offer closes.
    All transitions are validated against the ESCROW_TRANSITIONS map.
    """
    entry_id: str
    offer_id: str
    owner_id: str
    amount: int
    source: EscrowSource
    bid_id: Optional[str] = None
    state: EscrowState = EscrowState.HELD
    held_utc: Optional[datetime] = None
    settled_utc: Optional[datetime] = None

    def transition_to(self, new_state: EscrowState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = ESCROW_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid escrow transition: {self.state.value} → {new_state.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        self.state = new_state
