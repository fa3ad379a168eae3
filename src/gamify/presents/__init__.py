"""Present boards — player-to-player presents with inbox, current and archive."""

from gamify.presents.board import BoardEngine

__all__ = ["BoardEngine"]
