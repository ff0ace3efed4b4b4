"""Ceremony manager - the day cycle around the action engine.

MORNING (stand-up, pick a focus) -> ACTION (spend the day actions) -> NIGHT
(retrospective, optional pivot, one night action) -> explicit advance.

The manager only listens to ``action:executed``; it never calls the action
engine. ``proceed_to_next_day()`` is the one place that advances the day.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from enum import Enum
from typing import Any

from narrative.progression import day_summary
from sim.events import EventBus, GameEvents
from sim.models import KitchenState, Phase
from sim.state import GameState

from .episode import EpisodeModifiers, NoEpisode

logger = logging.getLogger(__name__)

Scheduler = Callable[[float, Callable[[], None]], Any]


class CeremonyPhase(str, Enum):
    MORNING = "morning"
    ACTION = "action"
    NIGHT = "night"
    GAME_OVER = "game_over"
    VICTORY = "victory"


_TERMINAL = frozenset({CeremonyPhase.GAME_OVER, CeremonyPhase.VICTORY})


def run_immediately(delay: float, callback: Callable[[], None]) -> None:
    """Default scheduler: ignore the presentation delay."""
    callback()


class CeremonyManager:
    """Drives stand-up, retrospective, pivot and judgment for each day."""

    def __init__(
        self,
        event_bus: EventBus,
        game_state: GameState,
        episode: EpisodeModifiers | None = None,
        scheduler: Scheduler | None = None,
    ):
        self._bus = event_bus
        self._gs = game_state
        self._cfg = game_state.config
        self._episode = episode or NoEpisode()
        self._schedule = scheduler or run_immediately

        self._phase = CeremonyPhase.MORNING
        self._day_start: KitchenState = game_state.get_state()
        self._action_counts: Counter[str] = Counter()
        self._failure_counts: Counter[str] = Counter()
        self._night_pending = False
        self._day_token = 0  # bumped every morning; stale night callbacks compare against it
        self._pivot_offered = False
        self._pivot_resolved = False
        self._last_summary: dict[str, Any] | None = None
        self._end_reason: str | None = None

        self._unsubscribe = [
            event_bus.on(GameEvents.ACTION_EXECUTED, self._on_action_executed),
            event_bus.on(GameEvents.GAME_RESET, self._on_restart),
            event_bus.on(GameEvents.RETRY_SPRINT, self._on_restart),
            event_bus.on(GameEvents.EPISODE_STARTED, self._on_restart),
        ]

    def detach(self) -> None:
        """Stop listening to the bus."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    # ── Getters ─────────────────────────────────────────────────

    @property
    def phase(self) -> CeremonyPhase:
        return self._phase

    @property
    def is_finished(self) -> bool:
        return self._phase in _TERMINAL

    @property
    def end_reason(self) -> str | None:
        return self._end_reason

    @property
    def pivot_available(self) -> bool:
        return self._pivot_offered and not self._pivot_resolved

    @property
    def last_summary(self) -> dict[str, Any] | None:
        return self._last_summary

    def action_counts(self) -> dict[str, int]:
        return dict(self._action_counts)

    def failure_counts(self) -> dict[str, int]:
        return dict(self._failure_counts)

    def focus_options(self) -> list[dict[str, Any]]:
        return [
            {
                "id": pc.policy.value,
                "name": pc.name,
                "description": pc.description,
                "exp_multiplier": pc.exp_multiplier,
                "stamina_multiplier": pc.stamina_multiplier,
                "success_bonus": pc.success_bonus,
            }
            for pc in self._cfg.policies.values()
        ]

    # ── Morning ─────────────────────────────────────────────────

    def start_new_day(self) -> None:
        """Enter the stand-up for the current day."""
        if self.is_finished:
            logger.warning("Ceremony: start_new_day ignored, game already finished")
            return

        self._action_counts.clear()
        self._failure_counts.clear()
        self._night_pending = False
        self._day_token += 1
        self._pivot_offered = False
        self._pivot_resolved = False
        self._day_start = self._gs.get_state()
        day = self._day_start.day

        if self._episode.crisis_starts(day):
            self._bus.emit(GameEvents.CRISIS_STARTED, {"day": day})
            logger.info("Day %d: spice crisis begins", day)
        if self._episode.crisis_ends(day):
            self._bus.emit(GameEvents.CRISIS_ENDED, {"day": day})
            logger.info("Day %d: spice crisis is over", day)

        self._set_phase(CeremonyPhase.MORNING)
        self._bus.emit(GameEvents.MORNING_STANDUP, {
            "day": day,
            "max_days": self._day_start.max_days,
            "focus_options": self.focus_options(),
            "crisis_active": self._episode.crisis_active(day),
            "state": self._day_start.to_dict(),
        })

    def select_daily_focus(self, focus_id: str) -> bool:
        if self._phase is not CeremonyPhase.MORNING:
            logger.warning("Ceremony: focus can only be chosen in the morning (now %s)", self._phase.value)
            return False

        result = self._gs.set_policy(focus_id)
        if not result.ok:
            return False

        self._bus.emit(GameEvents.FOCUS_SELECTED, {
            "day": self._gs.get("day"),
            "focus": result.value.value if result.value else None,
        })
        self._set_phase(CeremonyPhase.ACTION)
        return True

    # ── Action phase ────────────────────────────────────────────

    def _on_action_executed(self, payload: dict[str, Any]) -> None:
        if self.is_finished:
            return

        action = payload.get("action", "")
        self._action_counts[action] += 1
        if not payload.get("success"):
            self._failure_counts[action] += 1

        reason = self._gs.game_over_reason()
        if reason is not None:
            self._finish_game_over(reason)
            return

        if payload.get("phase") == Phase.DAY.value:
            if self._phase is CeremonyPhase.MORNING:
                # acted without picking a focus
                self._set_phase(CeremonyPhase.ACTION)
            remaining = self._gs.get("day_actions_remaining")
            self._bus.emit(GameEvents.ACTIONS_REMAINING, {"remaining": remaining, "day": self._gs.get("day")})
            if remaining <= 0 and not self._night_pending:
                self._night_pending = True
                token = self._day_token
                self._schedule(self._cfg.night_transition_delay, lambda: self._enter_night(token))
        elif payload.get("phase") == Phase.NIGHT.value:
            if self._gs.get("night_actions_remaining") <= 0 and self._gs.is_judgment_day():
                self._run_judgment()

    def end_action_phase(self) -> bool:
        """Skip the rest of the day and go straight to the retrospective."""
        if self._phase not in (CeremonyPhase.MORNING, CeremonyPhase.ACTION):
            logger.warning("Ceremony: cannot end the action phase from %s", self._phase.value)
            return False
        self._night_pending = True
        self._enter_night()
        return True

    # ── Night ───────────────────────────────────────────────────

    def _enter_night(self, token: int | None = None) -> None:
        if self.is_finished or self._phase is CeremonyPhase.NIGHT:
            return
        if token is not None and token != self._day_token:
            logger.debug("Ceremony: dropping night transition scheduled for an earlier day")
            return
        if self._gs.get("phase") is not Phase.DAY:
            logger.warning("Ceremony: state already left the day phase, no night transition")
            return

        self._gs.transition_to_night()
        end = self._gs.get_state()
        summary = day_summary(self._day_start, end)

        threshold = self._cfg.pivot_failure_threshold
        failed = sorted(a for a, n in self._failure_counts.items() if n >= threshold)
        self._pivot_offered = bool(failed)
        self._pivot_resolved = False
        self._last_summary = summary

        self._set_phase(CeremonyPhase.NIGHT)
        self._bus.emit(GameEvents.NIGHT_RETRO, {
            "day": end.day,
            "summary": summary,
            "action_counts": dict(self._action_counts),
            "failure_counts": dict(self._failure_counts),
            "pivot_offered": self._pivot_offered,
            "repeated_failures": failed,
            "pivot_cost": min(self._cfg.pivot_progress_cost, end.dish_progress),
            "pivot_debt_reduction": min(self._cfg.pivot_debt_reduction, end.technical_debt),
        })
        if failed:
            logger.info("Day %d retrospective: pivot offered after repeated failures in %s", end.day, ", ".join(failed))

    def handle_pivot_choice(self, accept: bool) -> bool:
        """Resolve the pivot offer. Returns False when none is open."""
        if self._phase is not CeremonyPhase.NIGHT or not self.pivot_available:
            logger.warning("Ceremony: no pivot on offer")
            return False
        self._pivot_resolved = True

        if not accept:
            self._bus.emit(GameEvents.PIVOT_DECLINED, {"day": self._gs.get("day")})
            logger.info("Pivot declined")
            return True

        state = self._gs.get_state()
        cost = min(self._cfg.pivot_progress_cost, state.dish_progress)
        reduction = min(self._cfg.pivot_debt_reduction, state.technical_debt)
        self._gs.update({
            "dish_progress": state.dish_progress - cost,
            "technical_debt": state.technical_debt - reduction,
            "pivot_bonus": True,
        })
        self._bus.emit(GameEvents.PIVOT_EXECUTED, {
            "day": state.day,
            "progress_cost": cost,
            "debt_reduction": reduction,
        })
        logger.info("Pivot: -%d progress, -%d debt, success bonus armed", cost, reduction)
        return True

    def proceed_to_next_day(self) -> bool:
        """Advance the day. Refused until the night action has been spent."""
        if self.is_finished:
            logger.warning("Ceremony: game is over, no next day")
            return False
        if self._phase is not CeremonyPhase.NIGHT or self._gs.get("phase") is not Phase.NIGHT:
            logger.warning("Ceremony: proceed_to_next_day refused outside the night (%s)", self._phase.value)
            return False
        if self._gs.get("night_actions_remaining") > 0:
            logger.warning("Ceremony: proceed_to_next_day refused, night action not taken yet")
            return False

        self._gs.advance_day()
        reason = self._gs.game_over_reason()
        if reason is not None:
            self._finish_game_over(reason)
            return True
        self.start_new_day()
        return True

    # ── Endings ─────────────────────────────────────────────────

    def _run_judgment(self) -> None:
        judgment = self._gs.judgment()
        self._gs.update({"judgment_triggered": True})
        self._bus.emit(GameEvents.JUDGMENT, judgment.to_dict())

        if judgment.passed:
            self._end_reason = "judgment"
            self._set_phase(CeremonyPhase.VICTORY)
            self._bus.emit(GameEvents.VICTORY, {
                "day": self._gs.get("day"),
                "judgment": judgment.to_dict(),
                "state": self._gs.to_dict(),
            })
            logger.info("Judgment passed: the signature dish is accepted")
        else:
            self._finish_game_over("judgment", judgment=judgment.to_dict())

    def _finish_game_over(self, reason: str, judgment: dict[str, Any] | None = None) -> None:
        self._end_reason = reason
        self._set_phase(CeremonyPhase.GAME_OVER)
        payload: dict[str, Any] = {
            "reason": reason,
            "day": self._gs.get("day"),
            "state": self._gs.to_dict(),
        }
        if judgment is not None:
            payload["judgment"] = judgment
        self._bus.emit(GameEvents.GAME_OVER, payload)
        logger.info("Game over on day %d: %s", payload["day"], reason)

    def _on_restart(self, payload: Any) -> None:
        self._phase = CeremonyPhase.MORNING
        self._end_reason = None
        self._last_summary = None
        self.start_new_day()

    def _set_phase(self, phase: CeremonyPhase) -> None:
        if phase is self._phase:
            return
        old = self._phase
        self._phase = phase
        self._bus.emit(GameEvents.CEREMONY_PHASE_CHANGED, {"from": old.value, "to": phase.value})
        logger.debug("Ceremony %s -> %s", old.value, phase.value)
