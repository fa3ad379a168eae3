"""Tests for the escrow book — proves per-contributor escrow invariants hold."""

import pytest
from datetime import datetime, timezone

from gamify.market.escrow import EscrowBook
from gamify.models.market import EscrowSource, EscrowState, Offer, OfferState


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _offer(prize: int, state: OfferState = OfferState.OPEN) -> Offer:
    return Offer(
        offer_id="o1", market_id="m1", org_id="org", task_id="t1",
        creator_id="alice", initial_prize=20, prize=prize, state=state,
    )


def _funded_book() -> EscrowBook:
    book = EscrowBook()
    book.hold("o1", "alice", 20, EscrowSource.OFFER, now=_now())
    book.hold("o1", "bob", 10, EscrowSource.BID, bid_id="b1", now=_now())
    book.hold("o1", "bob", 5, EscrowSource.BID, bid_id="b2", now=_now())
    return book


class TestHold:
    def test_hold_records_entry(self) -> None:
        book = EscrowBook()
        entry = book.hold("o1", "alice", 20, EscrowSource.OFFER, entry_id="e1", now=_now())
        assert entry.entry_id == "e1"
        assert entry.state == EscrowState.HELD
        assert entry.held_utc == _now()
        assert book.held_total("o1") == 20

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_rejected(self, amount: int) -> None:
        with pytest.raises(ValueError, match="must be positive"):
            EscrowBook().hold("o1", "alice", amount, EscrowSource.OFFER)

    def test_duplicate_entry_id_rejected(self) -> None:
        book = EscrowBook()
        book.hold("o1", "alice", 20, EscrowSource.OFFER, entry_id="e1")
        with pytest.raises(ValueError, match="already exists"):
            book.hold("o1", "bob", 5, EscrowSource.BID, entry_id="e1")

    def test_held_by_owner_sums_per_contributor(self) -> None:
        assert _funded_book().held_by_owner("o1") == {"alice": 20, "bob": 15}


class TestSettlement:
    def test_release_returns_total(self) -> None:
        book = _funded_book()
        assert book.release("o1", now=_now()) == 35
        assert book.held_total("o1") == 0
        assert all(e.state == EscrowState.RELEASED for e in book.entries("o1"))

    def test_refund_returns_entries(self) -> None:
        book = _funded_book()
        refunded = book.refund("o1", now=_now())
        assert [(e.owner_id, e.amount) for e in refunded] == [
            ("alice", 20), ("bob", 10), ("bob", 5),
        ]
        assert all(e.settled_utc == _now() for e in refunded)

    def test_settled_entries_cannot_settle_again(self) -> None:
        book = _funded_book()
        book.release("o1")
        assert book.refund("o1") == []
        assert book.release("o1") == 0

    def test_entry_transition_is_validated(self) -> None:
        book = _funded_book()
        entry = book.entries("o1")[0]
        book.release("o1")
        with pytest.raises(ValueError, match="Invalid escrow transition"):
            entry.transition_to(EscrowState.REFUNDED)


class TestVerify:
    def test_open_offer_conserved(self) -> None:
        assert _funded_book().verify(_offer(35)) == []

    def test_open_offer_mismatch(self) -> None:
        errors = _funded_book().verify(_offer(30))
        assert len(errors) == 1
        assert "held 35 != prize 30" in errors[0]

    def test_closed_offer_must_be_empty(self) -> None:
        errors = _funded_book().verify(_offer(0, OfferState.CANCELLED))
        assert "still holds 35" in errors[0]


class TestSnapshot:
    def test_restore_drops_new_entries_and_states(self) -> None:
        book = EscrowBook()
        book.hold("o1", "alice", 20, EscrowSource.OFFER)
        restore = book.snapshot("o1")
        book.hold("o1", "bob", 10, EscrowSource.BID)
        book.release("o1")
        restore()
        assert book.held_total("o1") == 20
        assert len(book.entries("o1")) == 1

    def test_restore_of_unknown_offer_clears_it(self) -> None:
        book = EscrowBook()
        restore = book.snapshot("o9")
        book.hold("o9", "alice", 3, EscrowSource.OFFER)
        restore()
        assert book.entries("o9") == []
        assert book.all_entries() == []
