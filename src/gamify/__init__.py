"""Gamification engine — goals, rewards, and a coin-escrow task marketplace."""

__version__ = "0.1.0"
