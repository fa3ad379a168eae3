"""Engine error kinds.

Every engine-level failure is a caller input or state error, never a
transient one. Engines raise EngineError before mutating anything; the
service layer turns it into a failed ServiceResult carrying the kind.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Classification of engine failures."""
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_AMOUNT = "invalid_amount"
    INELIGIBLE = "ineligible"


class EngineError(ValueError):
    """A typed engine failure. Subclasses ValueError like the rest of the engine."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"EngineError({self.kind.value!r}, {self.message!r})"


def not_found(entity: str, entity_id: str) -> EngineError:
    return EngineError(ErrorKind.NOT_FOUND, f"{entity} not found: {entity_id}")
