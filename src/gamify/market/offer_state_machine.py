"""Offer state machine — the only place an offer's lifecycle state changes.

    OPEN ──complete──▶ COMPLETED   (whole escrow paid to the completer)
    OPEN ──cancel────▶ CANCELLED   (each escrow entry refunded)

COMPLETED and CANCELLED are final. Escrow movements happen in the
marketplace engine; this module only decides whether a move is legal and
stamps the closing fields.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from gamify.errors import EngineError, ErrorKind
from gamify.models.market import Offer, OfferState

_NEXT: dict[OfferState, frozenset[OfferState]] = {
    OfferState.OPEN: frozenset({OfferState.COMPLETED, OfferState.CANCELLED}),
    OfferState.COMPLETED: frozenset(),
    OfferState.CANCELLED: frozenset(),
}


class OfferStateMachine:
    """Legal offer moves. Stateless; every method is a staticmethod."""

    @staticmethod
    def validate_transition(offer: Offer, target: OfferState) -> list[str]:
        """Errors for moving `offer` to `target` (empty when legal)."""
        legal = _NEXT[offer.state]
        if target in legal:
            return []
        options = ", ".join(sorted(s.value for s in legal)) or "none"
        return [
            f"Invalid offer transition: {offer.state.value} → {target.value} "
            f"for {offer.offer_id} (allowed: {options})"
        ]

    @staticmethod
    def apply_transition(offer: Offer, target: OfferState) -> list[str]:
        """Move the offer if legal. The offer is untouched when errors come back."""
        errors = OfferStateMachine.validate_transition(offer, target)
        if not errors:
            offer.state = target
        return errors

    @staticmethod
    def close(
        offer: Offer,
        target: OfferState,
        now: datetime,
        completer_id: Optional[str] = None,
    ) -> None:
        """Move an OPEN offer to a final state and stamp when (and by whom).

        Raises:
            EngineError(INVALID_STATE): target is not final, or the offer
                is already closed.
        """
        if not OfferStateMachine.is_terminal(target):
            raise EngineError(
                ErrorKind.INVALID_STATE, f"{target.value} is not a closing state",
            )
        errors = OfferStateMachine.apply_transition(offer, target)
        if errors:
            raise EngineError(ErrorKind.INVALID_STATE, errors[0])
        offer.closed_utc = now
        if target == OfferState.COMPLETED:
            offer.completed_by = completer_id

    @staticmethod
    def is_terminal(state: OfferState) -> bool:
        return not _NEXT[state]

    @staticmethod
    def valid_transitions(state: OfferState) -> set[OfferState]:
        return set(_NEXT[state])
