"""Event bus - decouples the simulation from whatever renders it.

The engine emits, the UI / dialogue / ceremony layers subscribe. Delivery is
synchronous and in subscription order; a failing handler is logged and the
rest still run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class GameEvents:
    """Topic names."""

    # State
    STATE_CHANGED = "game:state:changed"
    PHASE_CHANGED = "phase:changed"
    DAY_ADVANCED = "day:advanced"
    ACTION_CONSUMED = "action:consumed"
    CONDITION_CHANGED = "condition:changed"
    SKILL_LEVEL_UP = "skill:level_up"
    DISH_PROGRESS = "dish:progress"
    GAME_RESET = "game:reset"
    RETRY_SPRINT = "game:retry_sprint"
    EPISODE_STARTED = "episode:started"

    # Actions
    ACTION_EXECUTED = "action:executed"
    CRITICAL_SUCCESS = "action:critical"
    RANDOM_EVENT = "event:triggered"

    # End of game
    GAME_OVER = "game:over"
    VICTORY = "game:victory"

    # Ceremony
    CEREMONY_PHASE_CHANGED = "ceremony:phase_changed"
    MORNING_STANDUP = "ceremony:morning_standup"
    FOCUS_SELECTED = "ceremony:focus_selected"
    ACTIONS_REMAINING = "ceremony:actions_remaining"
    NIGHT_RETRO = "ceremony:night_retro"
    PIVOT_EXECUTED = "ceremony:pivot_executed"
    PIVOT_DECLINED = "ceremony:pivot_declined"
    CRISIS_STARTED = "ceremony:crisis_started"
    CRISIS_ENDED = "ceremony:crisis_ended"
    JUDGMENT = "ceremony:judgment"


class EventBus:
    """Topic-based publish/subscribe.

    Usage:
        bus = EventBus()
        unsubscribe = bus.on(GameEvents.DAY_ADVANCED, handler)
        bus.emit(GameEvents.DAY_ADVANCED, {"day": 2})
        unsubscribe()
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Handler]] = {}
        self._once_listeners: dict[str, list[Handler]] = {}

    def on(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe and return a function that undoes it."""
        self._listeners.setdefault(topic, []).append(handler)
        return lambda: self.off(topic, handler)

    def once(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe for a single delivery."""
        self._once_listeners.setdefault(topic, []).append(handler)
        return lambda: self.off(topic, handler)

    def off(self, topic: str, handler: Handler) -> None:
        for table in (self._listeners, self._once_listeners):
            handlers = table.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del table[topic]

    def emit(self, topic: str, payload: Any = None) -> None:
        # Snapshot the lists so handlers may (un)subscribe while we iterate.
        handlers = list(self._listeners.get(topic, ()))
        once = self._once_listeners.pop(topic, [])

        for handler in handlers:
            self._deliver(topic, handler, payload)
        for handler in once:
            self._deliver(topic, handler, payload)

    def clear(self, topic: str | None = None) -> None:
        if topic is None:
            self._listeners.clear()
            self._once_listeners.clear()
        else:
            self._listeners.pop(topic, None)
            self._once_listeners.pop(topic, None)

    def listener_count(self, topic: str) -> int:
        return len(self._listeners.get(topic, ())) + len(self._once_listeners.get(topic, ()))

    @staticmethod
    def _deliver(topic: str, handler: Handler, payload: Any) -> None:
        try:
            handler(payload)
        except Exception:
            logger.exception("Handler %r failed for '%s'", handler, topic)
