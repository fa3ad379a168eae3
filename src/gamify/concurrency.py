"""Per-entity locks that serialise balance-affecting work.

Every mutating service operation holds the locks of every entity it
touches for its whole validate-then-mutate body. Locks are always taken
in one global order (marketplaces < offers < groups < players; ids ascending
within a kind), nested holds included, so two operations touching the same entities
can never deadlock.

Usage:
    locks = EntityLocks()
    with locks.hold(EntityLocks.offer("o1"), EntityLocks.player("bob")):
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

# (kind rank, entity id). Lower rank is locked first.
LockKey = tuple[int, str]

_MARKET = 0
_OFFER = 1
_GROUP = 2
_PLAYER = 3


class EntityLocks:
    """Registry of one threading.Lock per entity key."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[LockKey, threading.Lock] = {}

    @staticmethod
    def market(market_id: str) -> LockKey:
        return (_MARKET, market_id)

    @staticmethod
    def offer(offer_id: str) -> LockKey:
        return (_OFFER, offer_id)

    @staticmethod
    def group(group_id: str) -> LockKey:
        return (_GROUP, group_id)

    @staticmethod
    def player(player_id: str) -> LockKey:
        return (_PLAYER, player_id)

    @contextmanager
    def hold(self, *keys: LockKey) -> Iterator[None]:
        """Acquire every key's lock in global order; release in reverse."""
        ordered = sorted(set(keys))
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock
