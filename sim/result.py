"""Non-throwing outcome type for state mutators."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    UNKNOWN_KEY = "unknown_key"
    NOT_NUMERIC = "not_numeric"
    INVALID_DELTA = "invalid_delta"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_VALUE = "invalid_value"
    UNKNOWN_SKILL = "unknown_skill"
    INSUFFICIENT_STAMINA = "insufficient_stamina"
    NO_ACTIONS_LEFT = "no_actions_left"
    UNKNOWN_ACTION = "unknown_action"
    GAME_OVER = "game_over"


@dataclass(frozen=True)
class Result(Generic[T]):
    """A value plus an optional error.

    On error ``value`` holds the unchanged current value, so callers that only
    care about the number can ignore ``error``.
    """

    value: T
    error: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, value: T, error: ErrorKind) -> Result[T]:
        return cls(value=value, error=error)
