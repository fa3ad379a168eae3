"""Present boards — players send each other presents and manage them.

Board flow per receiver:
    send    → present lands in the inbox
    accept  → inbox → current
    deny    → removed from the inbox
    archive → current → archive

Acting on a present that is not where the action expects it raises
EngineError(INVALID_STATE) and leaves the board unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from gamify.errors import EngineError, ErrorKind
from gamify.models.present import Board, Present
from gamify.persistence.repository import Repository


class BoardEngine:
    """Present delivery and board transitions."""

    def __init__(self, repository: Repository) -> None:
        self._repo = repository

    def send(
        self,
        org_id: str,
        sender_id: str,
        receiver_ids: list[str],
        message: str,
        present_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Present:
        """Deliver one present to every receiver's inbox."""
        if now is None:
            now = datetime.now(timezone.utc)
        self._repo.get_player(org_id, sender_id)
        if not receiver_ids:
            raise EngineError(ErrorKind.INVALID_STATE, "A present needs at least one receiver")
        boards = [self._repo.get_board(org_id, rid) for rid in dict.fromkeys(receiver_ids)]

        if present_id is None:
            present_id = f"present_{uuid4().hex[:12]}"
        present = Present(
            present_id=present_id,
            org_id=org_id,
            sender_id=sender_id,
            message=message,
            sent_utc=now,
        )
        self._repo.add_present(present)
        for board in boards:
            board.inbox.append(present_id)
        return present

    def accept(self, org_id: str, player_id: str, present_id: str) -> Board:
        board = self._board_with(org_id, player_id, present_id, "inbox", "accept")
        board.inbox.remove(present_id)
        board.current.append(present_id)
        return board

    def deny(self, org_id: str, player_id: str, present_id: str) -> Board:
        board = self._board_with(org_id, player_id, present_id, "inbox", "deny")
        board.inbox.remove(present_id)
        return board

    def archive(self, org_id: str, player_id: str, present_id: str) -> Board:
        board = self._board_with(org_id, player_id, present_id, "current", "archive")
        board.current.remove(present_id)
        board.archive.append(present_id)
        return board

    def _board_with(
        self, org_id: str, player_id: str, present_id: str, where: str, action: str,
    ) -> Board:
        board = self._repo.get_board(org_id, player_id)
        self._repo.get_present(org_id, present_id)
        if present_id not in getattr(board, where):
            raise EngineError(
                ErrorKind.INVALID_STATE,
                f"No such present to {action}: {present_id} is not in {where}",
            )
        return board
