"""Action engine - resolves one player action into state changes.

Actions live in a registry keyed by (phase, name). Each handler checks what it
can afford, rolls success and critical independently, and applies the outcome
through GameState. Every rejection is a ``success=False`` result, never an
exception.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from sim.config import ActionDef
from sim.events import EventBus, GameEvents
from sim.models import KitchenState, Phase, Policy
from sim.result import ErrorKind
from sim.rng import RandomSource
from sim.state import GameState

from .episode import EpisodeModifiers, NoEpisode

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of one action, also used as the action-executed payload."""

    success: bool
    message: str
    action: str = ""
    action_id: int | None = None
    phase: str = ""
    executed: bool = False  # True once a turn was spent
    error: ErrorKind | None = None
    critical: bool = False
    success_rate: float = 0.0
    rate_breakdown: dict[str, float] = field(default_factory=dict)
    stamina_cost: int = 0
    stamina_recovered: int = 0
    exp_gained: dict[str, int] = field(default_factory=dict)
    level_ups: list[str] = field(default_factory=list)
    dish_progress_gained: int = 0
    debt_change: int = 0
    mood_change: int = 0
    condition_before: str = ""
    condition_after: str = ""
    random_event: dict[str, Any] | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error"] = self.error.value if self.error else None
        return data


ActionHandler = Callable[[ActionDef, Mapping[str, Any]], ActionResult]


@dataclass(frozen=True)
class _Registered:
    definition: ActionDef
    handler: ActionHandler


def _reject(error: ErrorKind, message: str, action: str = "", phase: str = "") -> ActionResult:
    return ActionResult(success=False, message=message, action=action, phase=phase, error=error)


class ActionEngine:
    """Kitchen mechanics for the day and night action sets."""

    def __init__(
        self,
        event_bus: EventBus,
        game_state: GameState,
        rng: RandomSource | None = None,
        episode: EpisodeModifiers | None = None,
    ):
        self._bus = event_bus
        self._gs = game_state
        self._cfg = game_state.config
        self._rng = rng if rng is not None else game_state.rng
        self._episode = episode or NoEpisode()
        self._registry: dict[tuple[Phase, str], _Registered] = {}
        self._register_default_actions()

    # ── Registry ────────────────────────────────────────────────

    def register_action(self, definition: ActionDef, handler: ActionHandler) -> None:
        key = (definition.phase, definition.name)
        if key in self._registry:
            logger.debug("Replacing action handler for %s/%s", definition.phase.value, definition.name)
        self._registry[key] = _Registered(definition=definition, handler=handler)

    def _register_default_actions(self) -> None:
        by_kind: dict[str, ActionHandler] = {
            "train": self._train,
            "trial": self._trial,
            "rest": self._rest,
        }
        for phase in Phase:
            for definition in self._cfg.actions_for(phase):
                self.register_action(definition, by_kind[definition.kind])

    def available_actions(self, phase: Phase | None = None) -> list[ActionDef]:
        phase = phase or self._gs.get("phase")
        defs = [r.definition for (p, _), r in self._registry.items() if p is phase]
        return sorted(defs, key=lambda d: d.id)

    def resolve(self, action: int | str, phase: Phase) -> ActionDef | None:
        """Look an action up by id or name within one phase."""
        if isinstance(action, bool):
            return None
        if isinstance(action, str) and action.strip().isdigit():
            action = int(action.strip())
        for (p, name), reg in self._registry.items():
            if p is not phase:
                continue
            if isinstance(action, int) and reg.definition.id == action:
                return reg.definition
            if isinstance(action, str) and name == action.strip().lower():
                return reg.definition
        return None

    # ── Execution ───────────────────────────────────────────────

    def execute_action(self, action: int | str, options: Mapping[str, Any] | None = None) -> ActionResult:
        """Resolve and apply one action in the current phase."""
        options = dict(options or {})
        phase = self._gs.get("phase")

        if self._gs.is_game_over():
            return _reject(ErrorKind.GAME_OVER, "The game is already over.", str(action), phase.value)
        if self._gs.actions_remaining() <= 0:
            return _reject(
                ErrorKind.NO_ACTIONS_LEFT,
                f"No {phase.value} actions left today.",
                str(action),
                phase.value,
            )

        definition = self.resolve(action, phase)
        if definition is None:
            logger.warning("Unknown %s action: %r", phase.value, action)
            return _reject(ErrorKind.UNKNOWN_ACTION, f"Unknown action '{action}'.", str(action), phase.value)

        handler = self._registry[(phase, definition.name)].handler
        result = handler(definition, options)
        result.options = options

        if result.executed:
            logger.info(
                "Day %d %s: %s -> %s%s (rate=%.2f)",
                self._gs.get("day"),
                phase.value,
                definition.name,
                "success" if result.success else "failure",
                " CRITICAL" if result.critical else "",
                result.success_rate,
            )
            payload = result.to_dict()
            self._bus.emit(GameEvents.ACTION_EXECUTED, payload)
            if result.critical:
                self._bus.emit(GameEvents.CRITICAL_SUCCESS, payload)
        return result

    # ── Success formula ─────────────────────────────────────────

    def success_rate_breakdown(self, definition: ActionDef, state: KitchenState | None = None) -> dict[str, float]:
        state = state or self._gs.get_state()
        cfg = self._cfg
        rate = cfg.success_rate

        stamina = 0.0
        if state.stamina >= cfg.stamina.high_threshold:
            stamina = rate.high_stamina_bonus
        elif state.stamina < cfg.stamina.low_threshold:
            stamina = rate.low_stamina_penalty

        debt = 0.0
        if state.technical_debt <= cfg.tech_debt.low_threshold:
            debt = rate.low_debt_bonus
        elif state.technical_debt > cfg.tech_debt.high_threshold:
            debt = rate.high_debt_penalty

        policy = 0.0
        if state.current_policy is not None and state.current_policy in cfg.policies:
            policy = cfg.policies[state.current_policy].success_bonus

        return {
            "base": rate.base,
            "condition": cfg.condition_level(state.condition).success_bonus,
            "stamina": stamina,
            "debt": debt,
            "mood": rate.low_mood_penalty if state.mood < cfg.mood.low_threshold else 0.0,
            "policy": policy,
            "episode": self._episode.success_adjustment(state, definition.name),
            "pivot": rate.pivot_bonus if state.pivot_bonus and state.phase is Phase.DAY else 0.0,
        }

    def success_rate(self, definition: ActionDef, state: KitchenState | None = None) -> float:
        rate = self._cfg.success_rate
        total = sum(self.success_rate_breakdown(definition, state).values())
        return max(rate.minimum, min(rate.maximum, round(total, 6)))

    def stamina_cost(self, definition: ActionDef) -> int:
        return math.floor(round(definition.cost * self._gs.policy_stamina_multiplier(), 9))

    # ── Handlers ────────────────────────────────────────────────

    def _train(self, definition: ActionDef, options: Mapping[str, Any]) -> ActionResult:
        return self._rolled_action(definition, trial=False)

    def _trial(self, definition: ActionDef, options: Mapping[str, Any]) -> ActionResult:
        return self._rolled_action(definition, trial=True)

    def _rolled_action(self, definition: ActionDef, trial: bool) -> ActionResult:
        state = self._gs.get_state()
        cost = self.stamina_cost(definition)
        if state.stamina < cost:
            return _reject(
                ErrorKind.INSUFFICIENT_STAMINA,
                f"Not enough stamina for {definition.name} (need {cost}, have {state.stamina}).",
                definition.name,
                state.phase.value,
            )

        breakdown = self.success_rate_breakdown(definition, state)
        rate = self.success_rate(definition, state)

        self._gs.consume_action()
        self._gs.consume_stamina(cost)

        success = self._rng.random() < rate
        critical_roll = self._rng.random() < self._cfg.success_rate.critical_chance
        critical = success and critical_roll
        if state.pivot_bonus and state.phase is Phase.DAY:
            self._gs.consume_pivot_bonus()

        result = ActionResult(
            success=success,
            message="",
            action=definition.name,
            action_id=definition.id,
            phase=state.phase.value,
            executed=True,
            critical=critical,
            success_rate=rate,
            rate_breakdown=breakdown,
            stamina_cost=cost,
            condition_before=state.condition.value,
        )

        policy = self._gs.policy_config()
        if success:
            multiplier = policy.success_exp_multiplier if policy else 1.0
            grants = {
                skill: int((tier.critical if critical else tier.base) * multiplier)
                for skill, tier in definition.rewards.items()
            }
            if trial:
                gain = self._gs.calculate_dish_progress_gain()
                result.dish_progress_gained = self._gs.add_dish_progress(gain)["gained"]
            self._apply_exp(result, grants)
            result.mood_change = self._apply_delta("mood", definition.mood_delta)
            result.debt_change = self._apply_delta("technical_debt", definition.debt_delta)
            result.message = f"{definition.name}: {'critical success' if critical else 'success'}!"
        else:
            self._apply_exp(result, dict(definition.failure_exp))
            before = self._gs.get("technical_debt")
            after = self._gs.increase_tech_debt(self._cfg.tech_debt.failure_penalty).value
            result.debt_change = after - before
            if policy is not None and policy.policy is Policy.CHALLENGE and policy.failure_stamina_penalty:
                self._apply_delta("stamina", -policy.failure_stamina_penalty)
            result.message = f"{definition.name}: failed. Technical debt +{result.debt_change}."

        self._gs.record_action(definition.name)

        if state.phase is Phase.DAY:
            result.random_event = self._trigger_random_event()

        result.condition_after = self._gs.get("condition").value
        return result

    def _rest(self, definition: ActionDef, options: Mapping[str, Any]) -> ActionResult:
        state = self._gs.get_state()
        self._gs.consume_action()

        recovered = self._gs.recover_stamina(self._cfg.stamina.rest_recovery).value
        if self._rng.random() < self._cfg.condition.rest_improve_chance:
            self._gs.try_improve_condition()
        self._gs.update({"has_rest_bonus": True})
        self._gs.record_action(definition.name)

        after = self._gs.get("condition")
        message = f"Rested. Stamina +{recovered}."
        if after is not state.condition:
            message += f" Condition {state.condition.value} -> {after.value}."
        return ActionResult(
            success=True,
            message=message,
            action=definition.name,
            action_id=definition.id,
            phase=state.phase.value,
            executed=True,
            success_rate=1.0,
            stamina_recovered=recovered,
            condition_before=state.condition.value,
            condition_after=after.value,
        )

    # ── Helpers ─────────────────────────────────────────────────

    def _apply_exp(self, result: ActionResult, grants: dict[str, int]) -> None:
        if not grants:
            return
        gains = self._gs.grant_experience(grants).value
        result.exp_gained = {skill: g.actual_exp_gained for skill, g in gains.items()}
        result.level_ups = [skill for skill, g in gains.items() if g.level_up]

    def _apply_delta(self, key: str, delta: int) -> int:
        """Apply a signed delta to a bounded field, return the actual change."""
        if not delta:
            return 0
        before = self._gs.get(key)
        after = self._gs.adjust(key, delta, 0, before + abs(delta)).value
        return after - before

    def _trigger_random_event(self) -> dict[str, Any] | None:
        table = self._cfg.event_table
        if not table or self._rng.random() >= self._cfg.event_chance:
            return None

        event = self._rng.choice(table)
        applied = {key: self._apply_delta(key, delta) for key, delta in event.changes.items()}
        payload = {"id": event.id, "message": event.message, "changes": applied}
        self._bus.emit(GameEvents.RANDOM_EVENT, payload)
        logger.info("Kitchen event: %s", event.id)
        return payload
