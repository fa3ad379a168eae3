"""Escrow book — holds every coin contribution made against an offer.

Each offer's prize is backed by escrow entries: one for the creator's
initial prize and one per bid. Entries are tracked per contributor so a
cancellation can refund each owner exactly what they put in.

On completion, every HELD entry of the offer is RELEASED and the total
goes to the completer. On cancellation, every HELD entry is REFUNDED to
its owner. Either way the offer's escrow ends empty.

Conservation (checked by verify()):
    sum(HELD entry amounts of an open offer) == offer.prize

The escrow book is a pure ledger and never touches balances. Debiting
and crediting players is the marketplace engine's job.

Entry lifecycle:
    HELD → RELEASED   (offer completed)
    HELD → REFUNDED   (offer cancelled)
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from gamify.models.market import (
    EscrowEntry,
    EscrowSource,
    EscrowState,
    Offer,
    OfferState,
)


class EscrowBook:
    """Per-offer ledger of escrowed contributions.

    Usage:
        book = EscrowBook()
        book.hold("offer_1", "alice", 20, EscrowSource.OFFER)
        book.hold("offer_1", "bob", 10, EscrowSource.BID, bid_id="bid_1")
        total = book.release("offer_1")          # 30 → completer
        # or
        refunds = book.refund("offer_1")         # alice 20, bob 10
    """

    def __init__(self) -> None:
        self._entries: Dict[str, EscrowEntry] = {}
        self._by_offer: Dict[str, List[str]] = {}

    def hold(
        self,
        offer_id: str,
        owner_id: str,
        amount: int,
        source: EscrowSource,
        bid_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EscrowEntry:
        """Record coins held against an offer.

        Raises:
            ValueError: non-positive amount or duplicate entry id.
        """
        if amount <= 0:
            raise ValueError("Escrow amount must be positive")
        if now is None:
            now = datetime.now(timezone.utc)
        if entry_id is None:
            entry_id = f"escrow_{uuid4().hex[:12]}"
        if entry_id in self._entries:
            raise ValueError(f"Escrow ID already exists: {entry_id}")

        entry = EscrowEntry(
            entry_id=entry_id,
            offer_id=offer_id,
            owner_id=owner_id,
            amount=amount,
            source=source,
            bid_id=bid_id,
            state=EscrowState.HELD,
            held_utc=now,
        )
        self._entries[entry_id] = entry
        self._by_offer.setdefault(offer_id, []).append(entry_id)
        return entry

    def release(self, offer_id: str, now: Optional[datetime] = None) -> int:
        """Release every held entry of the offer. Returns the total released."""
        if now is None:
            now = datetime.now(timezone.utc)
        total = 0
        for entry in self.held(offer_id):
            entry.transition_to(EscrowState.RELEASED)
            entry.settled_utc = now
            total += entry.amount
        return total

    def refund(
        self, offer_id: str, now: Optional[datetime] = None,
    ) -> List[EscrowEntry]:
        """Refund every held entry of the offer. Returns the refunded entries."""
        if now is None:
            now = datetime.now(timezone.utc)
        refunded = []
        for entry in self.held(offer_id):
            entry.transition_to(EscrowState.REFUNDED)
            entry.settled_utc = now
            refunded.append(entry)
        return refunded

    def entries(self, offer_id: str) -> List[EscrowEntry]:
        """All entries ever recorded for an offer, in hold order."""
        return [self._entries[eid] for eid in self._by_offer.get(offer_id, [])]

    def held(self, offer_id: str) -> List[EscrowEntry]:
        return [e for e in self.entries(offer_id) if e.state == EscrowState.HELD]

    def held_total(self, offer_id: str) -> int:
        return sum(e.amount for e in self.held(offer_id))

    def held_by_owner(self, offer_id: str) -> Dict[str, int]:
        """Held amount per contributor (what a cancellation would refund)."""
        totals: Dict[str, int] = {}
        for entry in self.held(offer_id):
            totals[entry.owner_id] = totals.get(entry.owner_id, 0) + entry.amount
        return totals

    def verify(self, offer: Offer) -> List[str]:
        """Check the conservation invariant for one offer. Returns errors."""
        held = self.held_total(offer.offer_id)
        if offer.state == OfferState.OPEN and held != offer.prize:
            return [
                f"Escrow mismatch on offer {offer.offer_id}: "
                f"held {held} != prize {offer.prize}"
            ]
        if offer.state != OfferState.OPEN and held != 0:
            return [
                f"Closed offer {offer.offer_id} ({offer.state.value}) "
                f"still holds {held} coins"
            ]
        return []

    def snapshot(self, offer_id: str) -> Callable[[], None]:
        """Capture an offer's escrow so a failed transaction can restore it."""
        saved_ids = list(self._by_offer.get(offer_id, []))
        saved = {eid: copy.deepcopy(self._entries[eid]) for eid in saved_ids}

        def _restore() -> None:
            for eid in self._by_offer.get(offer_id, []):
                if eid not in saved:
                    del self._entries[eid]
            self._entries.update(saved)
            if saved_ids:
                self._by_offer[offer_id] = saved_ids
            else:
                self._by_offer.pop(offer_id, None)

        return _restore

    def all_entries(self) -> List[EscrowEntry]:
        return list(self._entries.values())

    def load(self, entries: List[EscrowEntry]) -> None:
        """Replace the book's contents (used when restoring a snapshot file)."""
        self._entries = {}
        self._by_offer = {}
        for entry in entries:
            self._entries[entry.entry_id] = entry
            self._by_offer.setdefault(entry.offer_id, []).append(entry.entry_id)
