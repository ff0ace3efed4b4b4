"""GameState - sole owner of the simulation state.

Reads go through deep-copied snapshots. Every write goes through ``update()``,
which clamps to the declared bounds and announces the change on the bus.
Nothing here advances the day on its own: ``advance_day()`` only runs when an
orchestrator calls it.
"""

from __future__ import annotations

import copy
import logging
import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from typing import Any

from narrative.progression import Judgment, check_requirements

from .config import ConditionLevel, GameConfig, PolicyConfig
from .events import EventBus, GameEvents
from .models import CONDITION_ORDER, STATE_FIELDS, Condition, KitchenState, Phase, Policy, to_plain
from .result import ErrorKind, Result
from .rng import RandomSource, make_rng

logger = logging.getLogger(__name__)

_REMAINING_KEY: dict[Phase, str] = {
    Phase.DAY: "day_actions_remaining",
    Phase.NIGHT: "night_actions_remaining",
}

_INT_FIELDS = frozenset({
    "day",
    "max_days",
    "episode",
    "day_actions_remaining",
    "night_actions_remaining",
    "stamina",
    "max_stamina",
    "technical_debt",
    "mood",
    "dish_progress",
})

_BOOL_FIELDS = frozenset({"has_rest_bonus", "pivot_bonus", "judgment_triggered"})

_INVALID = object()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class SkillGain:
    skill: str
    level_up: bool
    levels_gained: int
    new_level: int
    new_exp: int
    actual_exp_gained: int
    multiplier: float
    rest_bonus_applied: bool


class GameState:
    """Canonical mutable game state."""

    def __init__(self, event_bus: EventBus, config: GameConfig, rng: RandomSource | None = None):
        self._bus = event_bus
        self._cfg = config
        self._rng = rng if rng is not None else make_rng(config.seed, "sprint", config.episode.number)
        self._state = self._initial_state()

    def _initial_state(self) -> KitchenState:
        cfg = self._cfg
        return KitchenState(
            day=1,
            max_days=cfg.episode.max_days,
            episode=cfg.episode.number,
            phase=Phase.DAY,
            day_actions_remaining=cfg.phase_actions[Phase.DAY],
            night_actions_remaining=cfg.phase_actions[Phase.NIGHT],
            condition=cfg.condition.initial,
            skills={name: 0 for name in cfg.skills.names},
            experience={name: 0 for name in cfg.skills.names},
            stamina=cfg.stamina.initial,
            max_stamina=cfg.stamina.max,
            technical_debt=cfg.tech_debt.initial,
            mood=cfg.mood.initial,
            dish_progress=cfg.dish_progress.initial,
        )

    @property
    def config(self) -> GameConfig:
        return self._cfg

    @property
    def rng(self) -> RandomSource:
        return self._rng

    # ── Reads ───────────────────────────────────────────────────

    def get_state(self) -> KitchenState:
        """Snapshot; mutating it never touches the live state."""
        return copy.deepcopy(self._state)

    def get(self, key: str) -> Any:
        if key not in STATE_FIELDS:
            logger.error("GameState.get: unknown key '%s'", key)
            return None
        return copy.deepcopy(getattr(self._state, key))

    def to_dict(self) -> dict[str, Any]:
        return self._state.to_dict()

    def actions_remaining(self) -> int:
        return getattr(self._state, _REMAINING_KEY[self._state.phase])

    # ── Writes ──────────────────────────────────────────────────

    def update(self, changes: Mapping[str, Any]) -> Result[dict[str, Any]]:
        """Merge ``changes`` into the state and emit a state-changed event.

        Unknown keys and values of the wrong type are logged and skipped;
        numeric fields are clamped to their bounds. The result carries what was
        actually applied.
        """
        applied: dict[str, Any] = {}
        error: ErrorKind | None = None

        for key, value in changes.items():
            if key not in STATE_FIELDS:
                logger.error("GameState.update: unknown key '%s'", key)
                error = ErrorKind.UNKNOWN_KEY
                continue
            coerced = self._coerce(key, value)
            if coerced is _INVALID:
                logger.error("GameState.update: invalid value %r for '%s'", value, key)
                error = ErrorKind.INVALID_VALUE
                continue
            applied[key] = coerced

        if not applied:
            return Result(value={}, error=error)

        old = self._state
        self._state = replace(old, **applied)
        self._bus.emit(GameEvents.STATE_CHANGED, {
            "old_state": old.to_dict(),
            "new_state": self._state.to_dict(),
            "changes": to_plain(copy.deepcopy(applied)),
        })
        return Result(value=applied, error=error)

    def adjust(self, key: str, delta: float, lo: float = 0, hi: float = 100) -> Result[Any]:
        """Add ``delta`` to a numeric field, clamped to ``[lo, hi]``.

        The range is narrowed to the field's own bounds first, so the value
        returned is always the value stored.

        On bad input nothing changes and the current value comes back with an
        error kind.
        """
        if key not in STATE_FIELDS:
            logger.error("GameState.adjust: unknown key '%s'", key)
            return Result.fail(None, ErrorKind.UNKNOWN_KEY)

        current = getattr(self._state, key)
        if key not in _INT_FIELDS or not _is_number(current):
            logger.error("GameState.adjust: '%s' is not a number", key)
            return Result.fail(copy.deepcopy(current), ErrorKind.NOT_NUMERIC)
        if not _is_number(delta) or not math.isfinite(delta):
            logger.error("GameState.adjust: delta must be a finite number, got %r", delta)
            return Result.fail(current, ErrorKind.INVALID_DELTA)

        field_lo, field_hi = self._bounds(key)
        if field_lo is not None:
            lo = max(lo, field_lo)
        if field_hi is not None:
            hi = min(hi, field_hi)
        if lo > hi:
            logger.error("GameState.adjust: range for '%s' is empty after applying field bounds", key)
            return Result.fail(current, ErrorKind.INVALID_VALUE)

        new_value = max(lo, min(hi, current + delta))
        self.update({key: new_value})
        return Result(value=getattr(self._state, key))

    def _bounds(self, key: str) -> tuple[int | None, int | None]:
        cfg = self._cfg
        return {
            "day": (1, None),
            "max_days": (1, None),
            "episode": (1, None),
            "day_actions_remaining": (0, cfg.phase_actions[Phase.DAY]),
            "night_actions_remaining": (0, cfg.phase_actions[Phase.NIGHT]),
            "stamina": (0, self._state.max_stamina),
            "max_stamina": (0, None),
            "technical_debt": (0, cfg.tech_debt.max),
            "mood": (0, 100),
            "dish_progress": (0, cfg.dish_progress.max),
        }.get(key, (None, None))

    def _coerce(self, key: str, value: Any) -> Any:
        if key in _INT_FIELDS:
            if not _is_number(value) or not math.isfinite(value):
                return _INVALID
            lo, hi = self._bounds(key)
            if lo is not None:
                value = max(lo, value)
            if hi is not None:
                value = min(hi, value)
            return int(value)
        if key in _BOOL_FIELDS:
            return bool(value)
        if key == "phase":
            return self._enum(Phase, value)
        if key == "condition":
            return self._enum(Condition, value)
        if key == "current_policy":
            return None if value is None else self._enum(Policy, value)
        if key in ("skills", "experience"):
            return self._coerce_skill_map(key, value)
        if key in ("action_history", "today_actions"):
            if not isinstance(value, (list, tuple)):
                return _INVALID
            items = [str(v) for v in value]
            if key == "action_history":
                items = items[-self._cfg.history_limit:]
            return items
        if key == "last_action":
            return None if value is None else str(value)
        return copy.deepcopy(value)

    @staticmethod
    def _enum(enum_cls: type, value: Any) -> Any:
        try:
            return enum_cls(value)
        except ValueError:
            return _INVALID

    def _coerce_skill_map(self, key: str, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return _INVALID
        merged = dict(getattr(self._state, key))
        hi = self._cfg.skills.max_level if key == "skills" else self._cfg.skills.exp_per_level - 1
        for skill, amount in value.items():
            if skill not in merged or not _is_number(amount) or not math.isfinite(amount):
                return _INVALID
            merged[skill] = int(max(0, min(hi, amount)))
        return merged

    # ── Phase / day machine ─────────────────────────────────────

    def consume_action(self) -> bool:
        """Spend one action from the active phase. False if none are left."""
        phase = self._state.phase
        key = _REMAINING_KEY[phase]
        remaining = getattr(self._state, key)
        if remaining <= 0:
            return False

        self.update({key: remaining - 1})
        self._bus.emit(GameEvents.ACTION_CONSUMED, {
            "phase": phase.value,
            "remaining": remaining - 1,
            "phase_key": key,
        })
        return True

    def transition_to_night(self) -> bool:
        """Switch to the night phase. Never touches ``day``."""
        if self._state.phase is Phase.NIGHT:
            logger.warning("GameState.transition_to_night: already night on day %d", self._state.day)
            return False

        self.update({
            "phase": Phase.NIGHT,
            "night_actions_remaining": self._cfg.phase_actions[Phase.NIGHT],
        })
        self._bus.emit(GameEvents.PHASE_CHANGED, {
            "from": Phase.DAY.value,
            "to": Phase.NIGHT.value,
            "phase": Phase.NIGHT.value,
            "day": self._state.day,
        })
        logger.info("Day %d: night phase (waiting for the night action)", self._state.day)
        return True

    def advance_day(self) -> int:
        """Sleep: next day, overnight recovery, decay roll, counters reset.

        Must be called explicitly by the orchestrator.
        """
        old_phase = self._state.phase
        new_day = self._state.day + 1

        recovered = self.recover_stamina(self._cfg.stamina.overnight_recovery).value

        if self._rng.random() < self._cfg.condition.daily_decay_chance:
            self.decay_condition()

        self.update({
            "day": new_day,
            "phase": Phase.DAY,
            "day_actions_remaining": self._cfg.phase_actions[Phase.DAY],
            "night_actions_remaining": self._cfg.phase_actions[Phase.NIGHT],
            "today_actions": [],
            "current_policy": None,
            "has_rest_bonus": False,
        })

        self._bus.emit(GameEvents.DAY_ADVANCED, {"day": new_day, "stamina_recovered": recovered})
        self._bus.emit(GameEvents.PHASE_CHANGED, {
            "from": old_phase.value,
            "to": Phase.DAY.value,
            "phase": Phase.DAY.value,
            "day": new_day,
        })
        logger.info("=== Day %d === stamina=%d condition=%s", new_day, self._state.stamina, self._state.condition.value)
        return new_day

    # ── Condition ───────────────────────────────────────────────

    def condition_info(self) -> ConditionLevel:
        return self._cfg.condition_level(self._state.condition)

    def try_improve_condition(self) -> Condition:
        """Roll the rest transition table for the current condition.

        Candidates are walked best to worst; the first whose cumulative
        probability exceeds the roll wins. Leftover mass keeps the condition.
        """
        current = self._state.condition
        distribution = self._cfg.condition.rest_transitions.get(current, {})
        roll = self._rng.random()

        cumulative = 0.0
        for candidate in CONDITION_ORDER:
            if candidate not in distribution:
                continue
            cumulative += distribution[candidate]
            if roll < cumulative:
                if candidate is not current:
                    self._set_condition(candidate, reason="rest")
                return candidate
        return current

    def decay_condition(self) -> Condition:
        """Move one step toward TERRIBLE."""
        current = self._state.condition
        idx = CONDITION_ORDER.index(current)
        if idx < len(CONDITION_ORDER) - 1:
            self._set_condition(CONDITION_ORDER[idx + 1], reason="decay")
        return self._state.condition

    def _set_condition(self, new: Condition, reason: str) -> None:
        old = self._state.condition
        self.update({"condition": new})
        self._bus.emit(GameEvents.CONDITION_CHANGED, {
            "from": old.value,
            "to": new.value,
            "from_info": asdict(self._cfg.condition_level(old)),
            "to_info": asdict(self._cfg.condition_level(new)),
            "reason": reason,
        })
        logger.debug("Condition %s -> %s (%s)", old.value, new.value, reason)

    # ── Skills & experience ─────────────────────────────────────

    def grant_experience(self, grants: Mapping[str, int]) -> Result[dict[str, SkillGain]]:
        """Add base experience to several skills at once.

        The multiplier (condition x policy x rest bonus) is computed once, and
        the rest bonus is consumed once for the whole batch.
        """
        error: ErrorKind | None = None
        valid: dict[str, int] = {}
        for skill, base in grants.items():
            if skill not in self._state.experience:
                logger.error("GameState.grant_experience: unknown skill '%s'", skill)
                error = ErrorKind.UNKNOWN_SKILL
                continue
            if not _is_number(base) or base < 0 or not math.isfinite(base):
                logger.error("GameState.grant_experience: base exp must be a non-negative number, got %r", base)
                error = ErrorKind.INVALID_AMOUNT
                continue
            valid[skill] = base

        if not valid:
            return Result(value={}, error=error)

        rest_bonus = self._state.has_rest_bonus
        multiplier = self.condition_info().exp_multiplier * self.policy_exp_multiplier()
        if rest_bonus:
            multiplier *= self._cfg.rest_bonus_multiplier

        max_level = self._cfg.skills.max_level
        per_level = self._cfg.skills.exp_per_level
        skills = dict(self._state.skills)
        experience = dict(self._state.experience)
        gains: dict[str, SkillGain] = {}

        for skill, base in valid.items():
            # round() first so float noise (20 * 1.8 = 35.999...) does not eat a point
            actual = math.floor(round(base * multiplier, 9))
            old_level = skills[skill]
            experience[skill] += actual

            while experience[skill] >= per_level and skills[skill] < max_level:
                experience[skill] -= per_level
                skills[skill] += 1

            if skills[skill] >= max_level:
                experience[skill] = min(experience[skill], per_level - 1)

            gained = skills[skill] - old_level
            gains[skill] = SkillGain(
                skill=skill,
                level_up=gained > 0,
                levels_gained=gained,
                new_level=skills[skill],
                new_exp=experience[skill],
                actual_exp_gained=actual,
                multiplier=multiplier,
                rest_bonus_applied=rest_bonus,
            )

        changes: dict[str, Any] = {"skills": skills, "experience": experience}
        if rest_bonus:
            changes["has_rest_bonus"] = False
        self.update(changes)

        for gain in gains.values():
            if gain.level_up:
                self._bus.emit(GameEvents.SKILL_LEVEL_UP, {
                    "skill": gain.skill,
                    "old_level": gain.new_level - gain.levels_gained,
                    "new_level": gain.new_level,
                    "levels_gained": gain.levels_gained,
                })
                logger.info("Level up: %s -> Lv.%d", gain.skill, gain.new_level)

        return Result(value=gains, error=error)

    def add_skill_exp(self, skill: str, base_exp: int) -> Result[SkillGain | None]:
        result = self.grant_experience({skill: base_exp})
        return Result(value=result.value.get(skill), error=result.error)

    # ── Policy ──────────────────────────────────────────────────

    def set_policy(self, policy: Policy | str | None) -> Result[Policy | None]:
        if policy is not None:
            try:
                policy = Policy(policy)
            except ValueError:
                logger.warning("GameState.set_policy: invalid policy %r", policy)
                return Result.fail(self._state.current_policy, ErrorKind.INVALID_VALUE)
        self.update({"current_policy": policy})
        logger.info("Policy set to %s", policy.value if policy else None)
        return Result(value=policy)

    def policy_config(self) -> PolicyConfig | None:
        policy = self._state.current_policy
        if policy is None:
            return None
        return self._cfg.policies.get(policy)

    def policy_exp_multiplier(self) -> float:
        pc = self.policy_config()
        return pc.exp_multiplier if pc else 1.0

    def policy_stamina_multiplier(self) -> float:
        pc = self.policy_config()
        return pc.stamina_multiplier if pc else 1.0

    # ── Stamina, debt, mood ─────────────────────────────────────

    def consume_stamina(self, amount: int) -> Result[int]:
        """Spend stamina. Refused (no change) when there is not enough."""
        current = self._state.stamina
        if not _is_number(amount) or amount < 0:
            logger.error("GameState.consume_stamina: amount must be a non-negative number, got %r", amount)
            return Result.fail(current, ErrorKind.INVALID_AMOUNT)
        if current < amount:
            return Result.fail(current, ErrorKind.INSUFFICIENT_STAMINA)
        return self.adjust("stamina", -amount, 0, self._state.max_stamina)

    def recover_stamina(self, amount: int | None = None) -> Result[int]:
        """Recover stamina; the result value is the amount actually gained."""
        if amount is None:
            amount = self._cfg.stamina.overnight_recovery
        if not _is_number(amount) or amount < 0:
            logger.error("GameState.recover_stamina: amount must be a non-negative number, got %r", amount)
            return Result.fail(0, ErrorKind.INVALID_AMOUNT)
        before = self._state.stamina
        after = self.adjust("stamina", amount, 0, self._state.max_stamina).value
        return Result(value=after - before)

    def increase_tech_debt(self, amount: int) -> Result[int]:
        if not _is_number(amount) or amount < 0 or not math.isfinite(amount):
            logger.error("GameState.increase_tech_debt: amount must be a non-negative number, got %r", amount)
            return Result.fail(self._state.technical_debt, ErrorKind.INVALID_AMOUNT)
        return self.adjust("technical_debt", amount, 0, self._cfg.tech_debt.max)

    def reduce_tech_debt(self, amount: int) -> Result[int]:
        if not _is_number(amount) or amount < 0 or not math.isfinite(amount):
            logger.error("GameState.reduce_tech_debt: amount must be a non-negative number, got %r", amount)
            return Result.fail(self._state.technical_debt, ErrorKind.INVALID_AMOUNT)
        return self.adjust("technical_debt", -amount, 0, self._cfg.tech_debt.max)

    def adjust_mood(self, delta: int) -> Result[int]:
        return self.adjust("mood", delta, 0, 100)

    # ── Dish progress ───────────────────────────────────────────

    def calculate_dish_progress_gain(self) -> int:
        """floor((base + sum(level * weight)) * condition dish multiplier)."""
        dish = self._cfg.dish_progress
        progress = dish.base_progress_per_trial
        for skill, weight in dish.skill_weights.items():
            progress += self._state.skills.get(skill, 0) * weight
        return math.floor(round(progress * self.condition_info().dish_multiplier, 9))

    def add_dish_progress(self, amount: int) -> dict[str, int]:
        old = self._state.dish_progress
        if not _is_number(amount) or amount < 0 or not math.isfinite(amount):
            logger.error("GameState.add_dish_progress: amount must be a non-negative number, got %r", amount)
            return {"old_progress": old, "new_progress": old, "gained": 0}
        new = self.adjust("dish_progress", amount, 0, self._cfg.dish_progress.max).value
        payload = {"old_progress": old, "new_progress": new, "gained": new - old}
        self._bus.emit(GameEvents.DISH_PROGRESS, payload)
        return dict(payload)

    def is_dish_complete(self) -> bool:
        return self._state.dish_progress >= self._cfg.dish_progress.victory_threshold

    # ── One-shot flags & history ────────────────────────────────

    def consume_pivot_bonus(self) -> bool:
        if not self._state.pivot_bonus:
            return False
        self.update({"pivot_bonus": False})
        return True

    def record_action(self, action_id: str) -> None:
        self.update({
            "action_history": [*self._state.action_history, action_id],
            "today_actions": [*self._state.today_actions, action_id],
            "last_action": action_id,
        })

    # ── Predicates (polled, never pushed) ───────────────────────

    def game_over_reason(self) -> str | None:
        s = self._state
        if s.technical_debt >= self._cfg.tech_debt.max:
            return "technical_debt"
        if s.mood <= 0:
            return "mood"
        if s.stamina <= 0 and s.condition is Condition.TERRIBLE:
            return "exhausted"
        return None

    def is_game_over(self) -> bool:
        return self.game_over_reason() is not None

    def is_judgment_day(self) -> bool:
        return self._state.day >= self._state.max_days

    def judgment(self) -> Judgment:
        return check_requirements(self._state, self._cfg)

    def is_victory(self) -> bool:
        return self.judgment().passed

    # ── Lifecycle ───────────────────────────────────────────────

    def reset(self) -> None:
        self._state = self._initial_state()
        self._bus.emit(GameEvents.STATE_CHANGED, {
            "old_state": None,
            "new_state": self._state.to_dict(),
            "changes": self._state.to_dict(),
        })
        self._bus.emit(GameEvents.GAME_RESET, {"day": 1})
        logger.info("Game reset")

    def retry_sprint(self) -> None:
        """Back to day 1 keeping skill levels; experience decays a little."""
        decay = self._cfg.retry_exp_decay
        fresh = self._initial_state()
        experience = {k: math.floor(v * decay) for k, v in self._state.experience.items()}
        skills = dict(self._state.skills)

        self.update({
            "day": 1,
            "phase": Phase.DAY,
            "day_actions_remaining": fresh.day_actions_remaining,
            "night_actions_remaining": fresh.night_actions_remaining,
            "stamina": fresh.max_stamina,
            "condition": fresh.condition,
            "skills": skills,
            "experience": experience,
            "dish_progress": fresh.dish_progress,
            "technical_debt": fresh.technical_debt,
            "mood": fresh.mood,
            "current_policy": None,
            "has_rest_bonus": False,
            "pivot_bonus": False,
            "action_history": [],
            "today_actions": [],
            "last_action": None,
            "judgment_triggered": False,
        })
        self._bus.emit(GameEvents.RETRY_SPRINT, {
            "preserved_skills": skills,
            "new_state": self._state.to_dict(),
        })
        logger.info("Retrying sprint with skills %s", skills)

    def start_episode(self, episode: int) -> None:
        fresh = self._initial_state()
        self.update({
            "episode": episode,
            "day": 1,
            "phase": Phase.DAY,
            "day_actions_remaining": fresh.day_actions_remaining,
            "night_actions_remaining": fresh.night_actions_remaining,
            "condition": fresh.condition,
            "stamina": fresh.stamina,
            "technical_debt": fresh.technical_debt,
            "mood": fresh.mood,
            "dish_progress": fresh.dish_progress,
            "skills": fresh.skills,
            "experience": fresh.experience,
            "current_policy": None,
            "has_rest_bonus": False,
            "pivot_bonus": False,
            "action_history": [],
            "today_actions": [],
            "last_action": None,
            "judgment_triggered": False,
        })
        self._bus.emit(GameEvents.EPISODE_STARTED, {"episode": episode})
        logger.info("Episode %d started", episode)
