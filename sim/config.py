"""Configuration loading from settings.yaml and .env.

``load_config`` returns the raw merged dict, ``GameConfig.from_dict`` turns it
into the frozen tables the engine reads. Nothing in the engine hard-codes a
balancing constant; everything comes through here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import Condition, Phase, Policy


class ConfigError(ValueError):
    """Raised when settings.yaml is missing a section or holds a bad value."""


def default_config_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "config"


def load_config(
    config_dir: str | Path | None = None,
) -> dict:
    """Load settings.yaml and .env, return merged config dict."""
    if config_dir is None:
        config_dir = default_config_dir()
    config_dir = Path(config_dir)

    # Load .env (silently skip if missing)
    env_path = config_dir / ".env"
    load_dotenv(env_path)

    settings_path = config_dir / "settings.yaml"
    if not settings_path.exists():
        raise FileNotFoundError(f"Config not found: {settings_path}")

    with open(settings_path, encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    # Runtime overrides that do not belong in the balancing file
    seed = os.getenv("KITCHEN_SEED", "")
    cfg["_env"] = {
        "seed": int(seed) if seed.strip().lstrip("-").isdigit() else None,
        "log_level": os.getenv("KITCHEN_LOG_LEVEL", ""),
    }

    return cfg


def _section(cfg: dict[str, Any], name: str) -> dict[str, Any]:
    value = cfg.get(name)
    if not isinstance(value, dict):
        raise ConfigError(f"Missing config section: {name}")
    return value


# ── Tables ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class SkillConfig:
    max_level: int
    exp_per_level: int
    names: tuple[str, ...]
    grades: dict[str, int]


@dataclass(frozen=True)
class ConditionLevel:
    exp_multiplier: float
    success_bonus: float
    dish_multiplier: float


@dataclass(frozen=True)
class ConditionConfig:
    initial: Condition
    daily_decay_chance: float
    rest_improve_chance: float
    levels: dict[Condition, ConditionLevel]
    rest_transitions: dict[Condition, dict[Condition, float]]


@dataclass(frozen=True)
class StaminaConfig:
    max: int
    initial: int
    overnight_recovery: int
    rest_recovery: int
    low_threshold: int
    high_threshold: int


@dataclass(frozen=True)
class TechDebtConfig:
    initial: int
    max: int
    failure_penalty: int
    low_threshold: int
    high_threshold: int


@dataclass(frozen=True)
class MoodConfig:
    initial: int
    low_threshold: int


@dataclass(frozen=True)
class DishProgressConfig:
    initial: int
    max: int
    victory_threshold: int
    base_progress_per_trial: float
    skill_weights: dict[str, float]


@dataclass(frozen=True)
class SuccessRateConfig:
    base: float
    minimum: float
    maximum: float
    critical_chance: float
    high_stamina_bonus: float
    low_debt_bonus: float
    pivot_bonus: float
    low_stamina_penalty: float
    high_debt_penalty: float
    low_mood_penalty: float


@dataclass(frozen=True)
class PolicyConfig:
    policy: Policy
    name: str
    description: str
    exp_multiplier: float = 1.0
    stamina_multiplier: float = 1.0
    success_bonus: float = 0.0
    success_exp_multiplier: float = 1.0
    failure_stamina_penalty: int = 0


@dataclass(frozen=True)
class RewardTier:
    base: int
    critical: int


@dataclass(frozen=True)
class ActionDef:
    id: int
    name: str
    kind: str  # "train" | "trial" | "rest"
    phase: Phase
    cost: int = 0
    rewards: dict[str, RewardTier] = field(default_factory=dict)
    failure_exp: dict[str, int] = field(default_factory=dict)
    mood_delta: int = 0
    debt_delta: int = 0


@dataclass(frozen=True)
class RandomEventDef:
    id: str
    message: str
    changes: dict[str, int]


@dataclass(frozen=True)
class CrisisConfig:
    start_day: int
    end_day: int
    adjustments: dict[str, float]


@dataclass(frozen=True)
class EpisodeConfig:
    number: int
    max_days: int
    requirements: dict[str, int]
    crisis: CrisisConfig | None = None


@dataclass(frozen=True)
class GameConfig:
    """Read-only view of every tunable the engine uses."""

    skills: SkillConfig
    phase_actions: dict[Phase, int]
    condition: ConditionConfig
    stamina: StaminaConfig
    tech_debt: TechDebtConfig
    mood: MoodConfig
    dish_progress: DishProgressConfig
    success_rate: SuccessRateConfig
    rest_bonus_multiplier: float
    policies: dict[Policy, PolicyConfig]
    actions: dict[Phase, tuple[ActionDef, ...]]
    event_chance: float
    event_table: tuple[RandomEventDef, ...]
    night_transition_delay: float
    pivot_failure_threshold: int
    pivot_progress_cost: int
    pivot_debt_reduction: int
    episode: EpisodeConfig
    history_limit: int
    retry_exp_decay: float
    seed: int | None = None

    @classmethod
    def from_dict(cls, cfg: dict[str, Any]) -> GameConfig:
        skills = _section(cfg, "skills")
        phases = _section(cfg, "phases")
        cond = _section(cfg, "condition")
        stamina = _section(cfg, "stamina")
        debt = _section(cfg, "tech_debt")
        mood = _section(cfg, "mood")
        dish = _section(cfg, "dish_progress")
        rate = _section(cfg, "success_rate")
        events = cfg.get("random_events", {}) or {}
        ceremony = cfg.get("ceremony", {}) or {}
        pivot = cfg.get("pivot", {}) or {}
        lifecycle = cfg.get("lifecycle", {}) or {}

        return cls(
            skills=SkillConfig(
                max_level=int(skills["max_level"]),
                exp_per_level=int(skills["exp_per_level"]),
                names=tuple(skills["names"]),
                grades={k: int(v) for k, v in skills.get("grades", {}).items()},
            ),
            phase_actions={
                Phase.DAY: int(phases["day"]["actions"]),
                Phase.NIGHT: int(phases["night"]["actions"]),
            },
            condition=_condition_from(cond),
            stamina=StaminaConfig(**{k: int(v) for k, v in stamina.items()}),
            tech_debt=TechDebtConfig(**{k: int(v) for k, v in debt.items()}),
            mood=MoodConfig(**{k: int(v) for k, v in mood.items()}),
            dish_progress=DishProgressConfig(
                initial=int(dish["initial"]),
                max=int(dish["max"]),
                victory_threshold=int(dish["victory_threshold"]),
                base_progress_per_trial=float(dish["base_progress_per_trial"]),
                skill_weights={k: float(v) for k, v in dish.get("skill_weights", {}).items()},
            ),
            success_rate=SuccessRateConfig(
                base=float(rate["base"]),
                minimum=float(rate["minimum"]),
                maximum=float(rate.get("maximum", 1.0)),
                critical_chance=float(rate["critical_chance"]),
                high_stamina_bonus=float(rate.get("bonuses", {}).get("high_stamina", 0.0)),
                low_debt_bonus=float(rate.get("bonuses", {}).get("low_debt", 0.0)),
                pivot_bonus=float(rate.get("bonuses", {}).get("pivot", 0.0)),
                low_stamina_penalty=float(rate.get("penalties", {}).get("low_stamina", 0.0)),
                high_debt_penalty=float(rate.get("penalties", {}).get("high_debt", 0.0)),
                low_mood_penalty=float(rate.get("penalties", {}).get("low_mood", 0.0)),
            ),
            rest_bonus_multiplier=float(cfg.get("rest_bonus_multiplier", 1.0)),
            policies=_policies_from(cfg.get("policies", {}) or {}),
            actions=_actions_from(_section(cfg, "actions")),
            event_chance=float(events.get("chance", 0.0)),
            event_table=tuple(
                RandomEventDef(
                    id=str(ev["id"]),
                    message=str(ev.get("message", "")),
                    changes={k: int(v) for k, v in (ev.get("changes") or {}).items()},
                )
                for ev in events.get("table", []) or []
            ),
            night_transition_delay=float(ceremony.get("night_transition_delay", 0.0)),
            pivot_failure_threshold=int(ceremony.get("pivot_failure_threshold", 2)),
            pivot_progress_cost=int(pivot.get("progress_cost", 0)),
            pivot_debt_reduction=int(pivot.get("debt_reduction", 0)),
            episode=_episode_from(_section(cfg, "episode")),
            history_limit=int(lifecycle.get("history_limit", 10)),
            retry_exp_decay=float(lifecycle.get("retry_exp_decay", 1.0)),
            seed=(cfg.get("_env") or {}).get("seed"),
        )

    def actions_for(self, phase: Phase) -> tuple[ActionDef, ...]:
        return self.actions.get(phase, ())

    def condition_level(self, condition: Condition) -> ConditionLevel:
        return self.condition.levels[condition]


def _condition_from(cond: dict[str, Any]) -> ConditionConfig:
    try:
        levels = {
            Condition(name): ConditionLevel(
                exp_multiplier=float(v["exp_multiplier"]),
                success_bonus=float(v["success_bonus"]),
                dish_multiplier=float(v["dish_multiplier"]),
            )
            for name, v in cond["levels"].items()
        }
        transitions = {
            Condition(name): {Condition(to): float(p) for to, p in (dist or {}).items()}
            for name, dist in (cond.get("rest_transitions") or {}).items()
        }
        initial = Condition(cond.get("initial", Condition.NORMAL.value))
    except ValueError as e:
        raise ConfigError(f"Bad condition table: {e}") from e

    missing = [c.value for c in Condition if c not in levels]
    if missing:
        raise ConfigError(f"Condition levels missing: {', '.join(missing)}")

    return ConditionConfig(
        initial=initial,
        daily_decay_chance=float(cond.get("daily_decay_chance", 0.0)),
        rest_improve_chance=float(cond.get("rest_improve_chance", 0.0)),
        levels=levels,
        rest_transitions=transitions,
    )


def _policies_from(raw: dict[str, Any]) -> dict[Policy, PolicyConfig]:
    out: dict[Policy, PolicyConfig] = {}
    for key, v in raw.items():
        try:
            policy = Policy(key)
        except ValueError as e:
            raise ConfigError(f"Unknown policy: {key}") from e
        out[policy] = PolicyConfig(
            policy=policy,
            name=str(v.get("name", key)),
            description=str(v.get("description", "")),
            exp_multiplier=float(v.get("exp_multiplier", 1.0)),
            stamina_multiplier=float(v.get("stamina_multiplier", 1.0)),
            success_bonus=float(v.get("success_bonus", 0.0)),
            success_exp_multiplier=float(v.get("success_exp_multiplier", 1.0)),
            failure_stamina_penalty=int(v.get("failure_stamina_penalty", 0)),
        )
    return out


def _actions_from(raw: dict[str, Any]) -> dict[Phase, tuple[ActionDef, ...]]:
    out: dict[Phase, tuple[ActionDef, ...]] = {}
    for phase_key, items in raw.items():
        phase = Phase(phase_key)
        defs = []
        for item in items or []:
            kind = str(item.get("kind", "train"))
            if kind not in ("train", "trial", "rest"):
                raise ConfigError(f"Unknown action kind '{kind}' for {item.get('name')}")
            defs.append(
                ActionDef(
                    id=int(item["id"]),
                    name=str(item["name"]),
                    kind=kind,
                    phase=phase,
                    cost=int(item.get("cost", 0)),
                    rewards={
                        skill: RewardTier(base=int(t["base"]), critical=int(t["critical"]))
                        for skill, t in (item.get("rewards") or {}).items()
                    },
                    failure_exp={k: int(v) for k, v in (item.get("failure_exp") or {}).items()},
                    mood_delta=int(item.get("mood_delta", 0)),
                    debt_delta=int(item.get("debt_delta", 0)),
                )
            )
        out[phase] = tuple(defs)
    return out


def _episode_from(raw: dict[str, Any]) -> EpisodeConfig:
    crisis_raw = raw.get("crisis")
    crisis = None
    if crisis_raw:
        crisis = CrisisConfig(
            start_day=int(crisis_raw["start_day"]),
            end_day=int(crisis_raw["end_day"]),
            adjustments={k: float(v) for k, v in (crisis_raw.get("adjustments") or {}).items()},
        )
    return EpisodeConfig(
        number=int(raw.get("number", 1)),
        max_days=int(raw["max_days"]),
        requirements={k: int(v) for k, v in (raw.get("requirements") or {}).items()},
        crisis=crisis,
    )


def load_game_config(config_dir: str | Path | None = None) -> GameConfig:
    return GameConfig.from_dict(load_config(config_dir))
