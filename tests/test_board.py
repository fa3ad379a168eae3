"""Tests for present boards — inbox, current and archive transitions."""

import pytest

from gamify.errors import EngineError, ErrorKind
from gamify.models.organisation import Organisation
from gamify.models.player import Player
from gamify.persistence.repository import Repository
from gamify.presents.board import BoardEngine


def _engine() -> tuple[BoardEngine, Repository]:
    repo = Repository()
    repo.add_organisation(Organisation("org", "Org"))
    for pid in ("ann", "ben", "cat"):
        repo.add_player(Player(pid, "org", pid.title()))
    return BoardEngine(repo), repo


class TestSend:
    def test_lands_in_every_inbox(self) -> None:
        engine, repo = _engine()
        present = engine.send("org", "ann", ["ben", "cat", "ben"], "Nice work", present_id="p1")
        assert present.sender_id == "ann"
        assert repo.boards["ben"].inbox == ["p1"]
        assert repo.boards["cat"].inbox == ["p1"]
        assert repo.boards["ann"].inbox == []

    def test_needs_a_receiver(self) -> None:
        engine, _ = _engine()
        with pytest.raises(EngineError) as exc:
            engine.send("org", "ann", [], "Hello")
        assert exc.value.kind == ErrorKind.INVALID_STATE

    def test_unknown_receiver_delivers_nothing(self) -> None:
        engine, repo = _engine()
        with pytest.raises(EngineError) as exc:
            engine.send("org", "ann", ["ben", "zed"], "Hello", present_id="p1")
        assert exc.value.kind == ErrorKind.NOT_FOUND
        assert repo.boards["ben"].inbox == []
        assert repo.presents == {}


class TestBoardTransitions:
    def test_accept_then_archive(self) -> None:
        engine, repo = _engine()
        engine.send("org", "ann", ["ben"], "Thanks", present_id="p1")
        engine.accept("org", "ben", "p1")
        assert repo.boards["ben"].inbox == []
        assert repo.boards["ben"].current == ["p1"]
        engine.archive("org", "ben", "p1")
        assert repo.boards["ben"].current == []
        assert repo.boards["ben"].archive == ["p1"]

    def test_deny_removes_from_inbox(self) -> None:
        engine, repo = _engine()
        engine.send("org", "ann", ["ben"], "Thanks", present_id="p1")
        engine.deny("org", "ben", "p1")
        board = repo.boards["ben"]
        assert (board.inbox, board.current, board.archive) == ([], [], [])

    def test_boards_are_independent(self) -> None:
        engine, repo = _engine()
        engine.send("org", "ann", ["ben", "cat"], "Thanks", present_id="p1")
        engine.accept("org", "ben", "p1")
        assert repo.boards["cat"].inbox == ["p1"]

    def test_accept_twice_rejected(self) -> None:
        engine, repo = _engine()
        engine.send("org", "ann", ["ben"], "Thanks", present_id="p1")
        engine.accept("org", "ben", "p1")
        with pytest.raises(EngineError, match="not in inbox"):
            engine.accept("org", "ben", "p1")
        assert repo.boards["ben"].current == ["p1"]

    def test_unknown_present(self) -> None:
        engine, _ = _engine()
        with pytest.raises(EngineError) as exc:
            engine.accept("org", "ben", "nope")
        assert exc.value.kind == ErrorKind.NOT_FOUND
