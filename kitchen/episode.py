"""Episode modifiers - per-episode tweaks the engine asks about.

The action engine and the ceremony only see the ``EpisodeModifiers`` protocol,
so a new episode can bend the rules without touching either of them.
"""

from __future__ import annotations

from typing import Protocol

from sim.config import EpisodeConfig
from sim.models import KitchenState


class EpisodeModifiers(Protocol):
    def success_adjustment(self, state: KitchenState, action_name: str) -> float: ...

    def crisis_active(self, day: int) -> bool: ...

    def crisis_starts(self, day: int) -> bool: ...

    def crisis_ends(self, day: int) -> bool: ...


class SprintEpisode:
    """Episode 1: the seven-day sprint with the spice crisis mid-week."""

    def __init__(self, config: EpisodeConfig):
        self._cfg = config

    @property
    def max_days(self) -> int:
        return self._cfg.max_days

    def crisis_active(self, day: int) -> bool:
        crisis = self._cfg.crisis
        return crisis is not None and crisis.start_day <= day < crisis.end_day

    def crisis_starts(self, day: int) -> bool:
        return self._cfg.crisis is not None and day == self._cfg.crisis.start_day

    def crisis_ends(self, day: int) -> bool:
        return self._cfg.crisis is not None and day == self._cfg.crisis.end_day

    def success_adjustment(self, state: KitchenState, action_name: str) -> float:
        if not self.crisis_active(state.day):
            return 0.0
        return self._cfg.crisis.adjustments.get(action_name, 0.0)


class NoEpisode:
    """Null provider: no crisis, no adjustments."""

    def success_adjustment(self, state: KitchenState, action_name: str) -> float:
        return 0.0

    def crisis_active(self, day: int) -> bool:
        return False

    def crisis_starts(self, day: int) -> bool:
        return False

    def crisis_ends(self, day: int) -> bool:
        return False
