"""Marketplace — offers on tradeable tasks with escrowed, bid-raised prizes.

Players list a tradeable task with a coin prize held in escrow, other
players raise the prize with bids, and the whole escrow goes to whoever
completes the task (or back to each contributor on cancellation).
"""

from gamify.market.escrow import EscrowBook
from gamify.market.marketplace import MarketplaceEngine
from gamify.market.offer_state_machine import OfferStateMachine

__all__ = ["EscrowBook", "MarketplaceEngine", "OfferStateMachine"]
