"""Entry point for the kitchen sprint simulation.

Usage:
    python main.py                      # Play the whole sprint on autopilot
    python main.py --seed 42            # Reproducible run
    python main.py --days 3 --verbose   # Stop after three days, debug logging
"""

from __future__ import annotations

import logging
import sys

import click

from kitchen.actions import ActionEngine
from kitchen.ceremony import CeremonyManager, CeremonyPhase
from kitchen.episode import SprintEpisode
from narrative import skill_grade
from sim.config import ActionDef, GameConfig, load_config
from sim.events import EventBus, GameEvents
from sim.models import Phase, Policy
from sim.rng import make_rng
from sim.state import GameState


def _setup_logging(verbose: bool = False, log_file: str | None = None, level_name: str = "") -> None:
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=fmt, handlers=handlers)


# ── Autopilot ───────────────────────────────────────────────────


def _pick_focus(gs: GameState) -> Policy:
    stamina = gs.get("stamina")
    if stamina >= gs.config.stamina.high_threshold:
        return Policy.QUALITY
    return Policy.SPEED


def _pick_day_action(engine: ActionEngine, gs: GameState) -> ActionDef:
    """Train the skill furthest below its requirement that we can afford."""
    cfg = gs.config
    options = engine.available_actions(Phase.DAY)
    rest = next(d for d in options if d.kind == "rest")
    stamina = gs.get("stamina")
    if stamina < cfg.stamina.low_threshold:
        return rest

    skills = gs.get("skills")
    gaps = {s: req - skills.get(s, 0) for s, req in cfg.episode.requirements.items()}

    def score(defn: ActionDef) -> int:
        return sum(max(gaps.get(skill, 0), 0) for skill in defn.rewards)

    affordable = [d for d in options if d.kind != "rest" and engine.stamina_cost(d) <= stamina]
    if not affordable:
        return rest
    return max(affordable, key=lambda d: (score(d), -d.id))


def _pick_night_action(engine: ActionEngine, gs: GameState) -> ActionDef:
    options = {d.kind: d for d in engine.available_actions(Phase.NIGHT)}
    trial = options.get("trial")
    if trial is not None and engine.stamina_cost(trial) <= gs.get("stamina"):
        return trial
    return options["rest"]


def _play(cfg: GameConfig, seed: int | None, days: int | None) -> tuple[GameState, CeremonyManager, list[str]]:
    bus = EventBus()
    log: list[str] = []
    bus.on(GameEvents.RANDOM_EVENT, lambda p: log.append(f"  ! {p['message']}"))
    bus.on(GameEvents.SKILL_LEVEL_UP, lambda p: log.append(f"  * {p['skill']} Lv.{p['new_level']}"))
    bus.on(GameEvents.PIVOT_EXECUTED, lambda p: log.append(f"  ~ pivot: -{p['progress_cost']} progress"))

    gs = GameState(bus, cfg, rng=make_rng(seed, "sprint", cfg.episode.number))
    episode = SprintEpisode(cfg.episode)
    engine = ActionEngine(bus, gs, episode=episode)
    ceremony = CeremonyManager(bus, gs, episode=episode)

    ceremony.start_new_day()
    while not ceremony.is_finished:
        day = gs.get("day")
        log.append(f"Day {day}")
        ceremony.select_daily_focus(_pick_focus(gs).value)

        while gs.get("phase") is Phase.DAY and not ceremony.is_finished:
            result = engine.execute_action(_pick_day_action(engine, gs).id)
            log.append(f"  {result.message}")
            if not result.executed and not ceremony.end_action_phase():
                break

        if ceremony.is_finished:
            break
        if ceremony.pivot_available:
            ceremony.handle_pivot_choice(gs.get("technical_debt") >= cfg.tech_debt.high_threshold // 2)

        result = engine.execute_action(_pick_night_action(engine, gs).id)
        log.append(f"  {result.message}")

        if ceremony.is_finished or (days is not None and day >= days):
            break
        if not ceremony.proceed_to_next_day():
            break

    return gs, ceremony, log


@click.command()
@click.option("--days", type=int, default=None, help="Stop after this many days")
@click.option("--seed", type=int, default=None, help="Random seed (overrides KITCHEN_SEED)")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--log-file", type=click.Path(), default=None, help="Also log to this file")
@click.option("--config-dir", type=click.Path(), default=None, help="Config directory")
def main(days: int | None, seed: int | None, verbose: bool, log_file: str | None, config_dir: str | None) -> None:
    """Kitchen Sprint - run a headless autopilot sprint and print the outcome."""

    raw = load_config(config_dir)
    env = raw.get("_env", {})
    log_cfg = raw.get("logging", {}) or {}
    _setup_logging(
        verbose=verbose,
        log_file=log_file or log_cfg.get("log_file"),
        level_name=env.get("log_level") or log_cfg.get("level", "INFO"),
    )

    cfg = GameConfig.from_dict(raw)
    if seed is None:
        seed = cfg.seed

    gs, ceremony, log = _play(cfg, seed, days)

    click.echo("\n".join(log))
    state = gs.get_state()
    click.echo("")
    click.echo(f"  Day {state.day}/{state.max_days}  phase={ceremony.phase.value}")
    click.echo(f"  Dish progress: {state.dish_progress}/{cfg.dish_progress.victory_threshold}")
    click.echo(f"  Stamina {state.stamina}  Debt {state.technical_debt}  Mood {state.mood}  Condition {state.condition.value}")
    for skill, level in state.skills.items():
        click.echo(f"  {skill:<10} Lv.{level:<3} ({skill_grade(level, cfg.skills.grades)})")

    if ceremony.phase is CeremonyPhase.VICTORY:
        click.echo("\n  The old master nods. The dish is on the menu.")
    elif ceremony.phase is CeremonyPhase.GAME_OVER:
        click.echo(f"\n  Game over ({ceremony.end_reason}).")
        sys.exit(1)


if __name__ == "__main__":
    main()
