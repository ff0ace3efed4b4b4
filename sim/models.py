"""Enums and the state snapshot shared by every system."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Phase(str, Enum):
    DAY = "day"
    NIGHT = "night"


class Condition(str, Enum):
    """Five-level performance modifier. Declaration order is best to worst."""

    SUPERB = "superb"
    GOOD = "good"
    NORMAL = "normal"
    BAD = "bad"
    TERRIBLE = "terrible"


CONDITION_ORDER: tuple[Condition, ...] = tuple(Condition)


class Policy(str, Enum):
    QUALITY = "quality"
    SPEED = "speed"
    CHALLENGE = "challenge"


@dataclass
class KitchenState:
    """Everything the simulation knows. Owned and mutated by GameState only."""

    # Calendar
    day: int = 1
    max_days: int = 7
    episode: int = 1

    # Phase economy
    phase: Phase = Phase.DAY
    day_actions_remaining: int = 0
    night_actions_remaining: int = 0

    # Player
    condition: Condition = Condition.NORMAL
    skills: dict[str, int] = field(default_factory=dict)
    experience: dict[str, int] = field(default_factory=dict)
    stamina: int = 0
    max_stamina: int = 0

    # Kitchen
    technical_debt: int = 0
    mood: int = 0
    dish_progress: int = 0

    # Per-day modifiers
    current_policy: Policy | None = None
    has_rest_bonus: bool = False
    pivot_bonus: bool = False

    # Action tracking
    last_action: str | None = None
    action_history: list[str] = field(default_factory=list)
    today_actions: list[str] = field(default_factory=list)

    judgment_triggered: bool = False

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly copy (enums flattened to their values)."""
        return {k: to_plain(v) for k, v in asdict(self).items()}


def to_plain(value: Any) -> Any:
    """Flatten enums (recursively) so the value is JSON-serializable."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


STATE_FIELDS: frozenset[str] = frozenset(KitchenState.__dataclass_fields__)
