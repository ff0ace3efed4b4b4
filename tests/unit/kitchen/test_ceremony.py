"""Tests for the ceremony manager."""

import pytest

from kitchen.actions import ActionEngine
from kitchen.ceremony import CeremonyManager, CeremonyPhase
from kitchen.episode import SprintEpisode
from sim.config import load_game_config
from sim.events import EventBus, GameEvents
from sim.models import Phase, Policy
from sim.rng import ScriptedRandom
from sim.state import GameState

NO_IMPROVE = 0.9  # rest: stay in the current condition
NO_DECAY = 0.99  # advance_day: no condition decay
FAIL = [0.9, 0.99, 0.99]  # success roll, critical roll, event roll
PASSING_SKILLS = {"cutting": 3, "boiling": 2, "frying": 2, "analysis": 2}


class _Deferred:
    """Scheduler that holds callbacks until the test runs them."""

    def __init__(self):
        self.calls = []

    def __call__(self, delay, callback):
        self.calls.append((delay, callback))

    def flush(self):
        calls, self.calls = self.calls, []
        for _, callback in calls:
            callback()


def _make_ceremony(draws=(), scheduler=None, episode=None):
    cfg = load_game_config()
    bus = EventBus()
    gs = GameState(bus, cfg, rng=ScriptedRandom(draws))
    engine = ActionEngine(bus, gs, episode=episode)
    ceremony = CeremonyManager(bus, gs, episode=episode, scheduler=scheduler)
    return ceremony, engine, gs, bus


def _record(bus: EventBus, topic: str) -> list:
    seen: list = []
    bus.on(topic, seen.append)
    return seen


def _rest_through_day(engine: ActionEngine) -> None:
    for _ in range(3):
        engine.execute_action("rest")


class TestMorning:
    def test_standup_offers_focus_options(self):
        ceremony, _, _, bus = _make_ceremony()
        standups = _record(bus, GameEvents.MORNING_STANDUP)
        ceremony.start_new_day()

        assert ceremony.phase is CeremonyPhase.MORNING
        assert standups[0]["day"] == 1
        assert [o["id"] for o in standups[0]["focus_options"]] == ["quality", "speed", "challenge"]

    def test_select_focus_sets_policy_and_moves_to_action(self):
        ceremony, _, gs, bus = _make_ceremony()
        focus = _record(bus, GameEvents.FOCUS_SELECTED)
        ceremony.start_new_day()

        assert ceremony.select_daily_focus("quality") is True
        assert gs.get("current_policy") is Policy.QUALITY
        assert ceremony.phase is CeremonyPhase.ACTION
        assert focus == [{"day": 1, "focus": "quality"}]

        assert ceremony.select_daily_focus("speed") is False
        assert gs.get("current_policy") is Policy.QUALITY

    def test_invalid_focus_keeps_the_morning(self):
        ceremony, _, gs, _ = _make_ceremony()
        ceremony.start_new_day()
        assert ceremony.select_daily_focus("yolo") is False
        assert ceremony.phase is CeremonyPhase.MORNING
        assert gs.get("current_policy") is None

    def test_crisis_start_and_end_are_announced(self):
        cfg = load_game_config()
        ceremony, _, gs, bus = _make_ceremony(episode=SprintEpisode(cfg.episode))
        started = _record(bus, GameEvents.CRISIS_STARTED)
        ended = _record(bus, GameEvents.CRISIS_ENDED)

        gs.update({"day": 3})
        ceremony.start_new_day()
        gs.update({"day": 5})
        ceremony.start_new_day()

        assert started == [{"day": 3}]
        assert ended == [{"day": 5}]


class TestNight:
    def test_day_quota_moves_to_night(self):
        ceremony, engine, gs, bus = _make_ceremony([NO_IMPROVE] * 3)
        retros = _record(bus, GameEvents.NIGHT_RETRO)
        remaining = _record(bus, GameEvents.ACTIONS_REMAINING)
        ceremony.start_new_day()
        ceremony.select_daily_focus("speed")

        _rest_through_day(engine)

        assert ceremony.phase is CeremonyPhase.NIGHT
        assert gs.get("phase") is Phase.NIGHT
        assert gs.get("day") == 1
        assert [r["remaining"] for r in remaining] == [2, 1, 0]
        assert retros[0]["summary"]["actions"] == ["rest", "rest", "rest"]
        assert retros[0]["pivot_offered"] is False
        assert ceremony.action_counts() == {"rest": 3}

    def test_night_transition_waits_for_the_scheduler(self):
        scheduler = _Deferred()
        ceremony, engine, gs, _ = _make_ceremony([NO_IMPROVE] * 3, scheduler=scheduler)
        ceremony.start_new_day()

        _rest_through_day(engine)

        assert ceremony.phase is CeremonyPhase.ACTION
        assert gs.get("phase") is Phase.DAY
        assert [delay for delay, _ in scheduler.calls] == [1.5]

        scheduler.flush()
        assert ceremony.phase is CeremonyPhase.NIGHT
        assert gs.get("phase") is Phase.NIGHT

    def test_retry_before_the_delay_keeps_the_new_day(self):
        scheduler = _Deferred()
        ceremony, engine, gs, _ = _make_ceremony([NO_IMPROVE] * 3, scheduler=scheduler)
        ceremony.start_new_day()
        _rest_through_day(engine)
        assert len(scheduler.calls) == 1

        gs.retry_sprint()
        scheduler.flush()

        assert ceremony.phase is CeremonyPhase.MORNING
        assert gs.get("phase") is Phase.DAY
        assert gs.get("day_actions_remaining") == 3

    def test_late_callback_after_manual_night_is_ignored(self):
        scheduler = _Deferred()
        ceremony, engine, gs, bus = _make_ceremony([NO_IMPROVE] * 3, scheduler=scheduler)
        retros = _record(bus, GameEvents.NIGHT_RETRO)
        ceremony.start_new_day()
        _rest_through_day(engine)
        assert ceremony.end_action_phase() is True

        scheduler.flush()
        assert len(retros) == 1
        assert ceremony.phase is CeremonyPhase.NIGHT
    def test_end_action_phase_skips_the_rest_of_the_day(self):
        ceremony, engine, gs, _ = _make_ceremony([NO_IMPROVE])
        ceremony.start_new_day()
        engine.execute_action("rest")

        assert ceremony.end_action_phase() is True
        assert gs.get("phase") is Phase.NIGHT
        assert gs.get("day_actions_remaining") == 2
        assert ceremony.end_action_phase() is False


class TestProceed:
    def test_refused_until_the_night_action_is_spent(self):
        ceremony, engine, gs, _ = _make_ceremony([NO_IMPROVE] * 4 + [NO_DECAY])
        ceremony.start_new_day()
        assert ceremony.proceed_to_next_day() is False

        _rest_through_day(engine)
        assert ceremony.proceed_to_next_day() is False
        assert gs.get("day") == 1

        engine.execute_action("rest")
        assert ceremony.proceed_to_next_day() is True
        assert gs.get("day") == 2
        assert ceremony.phase is CeremonyPhase.MORNING

    def test_summary_diffs_the_day(self):
        ceremony, engine, gs, bus = _make_ceremony([NO_IMPROVE] * 4 + [NO_DECAY] + FAIL + [NO_IMPROVE] * 2)
        retros = _record(bus, GameEvents.NIGHT_RETRO)
        ceremony.start_new_day()
        _rest_through_day(engine)
        engine.execute_action("rest")
        ceremony.proceed_to_next_day()

        engine.execute_action("dishwashing")
        engine.execute_action("rest")
        engine.execute_action("rest")

        summary = retros[-1]["summary"]
        assert summary["day"] == 2
        assert summary["debt_change"] == 2
        assert summary["actions"] == ["dishwashing", "rest", "rest"]
        # counters restart every morning
        assert ceremony.action_counts() == {"dishwashing": 1, "rest": 2}


class TestPivot:
    def _fail_twice(self, engine):
        engine.execute_action("dishwashing")
        engine.execute_action("dishwashing")
        engine.execute_action("rest")

    def test_repeated_failures_offer_a_pivot(self):
        ceremony, engine, gs, bus = _make_ceremony(FAIL * 2 + [NO_IMPROVE])
        retros = _record(bus, GameEvents.NIGHT_RETRO)
        executed = _record(bus, GameEvents.PIVOT_EXECUTED)
        ceremony.start_new_day()
        gs.update({"dish_progress": 30})

        self._fail_twice(engine)

        assert retros[0]["pivot_offered"] is True
        assert retros[0]["repeated_failures"] == ["dishwashing"]
        assert ceremony.failure_counts() == {"dishwashing": 2}
        assert ceremony.pivot_available

        assert ceremony.handle_pivot_choice(True) is True
        state = gs.get_state()
        assert state.dish_progress == 25
        assert state.technical_debt == 0
        assert state.pivot_bonus is True
        assert executed == [{"day": 1, "progress_cost": 5, "debt_reduction": 4}]

        assert ceremony.handle_pivot_choice(True) is False

    def test_bonus_waits_for_the_next_day(self):
        draws = FAIL * 2 + [NO_IMPROVE] + [0.99, 0.99] + [NO_DECAY] + FAIL
        ceremony, engine, gs, _ = _make_ceremony(draws)
        ceremony.start_new_day()
        self._fail_twice(engine)
        ceremony.handle_pivot_choice(True)

        night = engine.execute_action("study")
        assert night.rate_breakdown["pivot"] == 0.0
        assert gs.get("pivot_bonus") is True

        assert ceremony.proceed_to_next_day() is True
        morning = engine.execute_action("dishwashing")
        assert morning.rate_breakdown["pivot"] == pytest.approx(0.15)
        assert gs.get("pivot_bonus") is False

    def test_pivot_never_goes_below_zero(self):
        ceremony, engine, gs, _ = _make_ceremony(FAIL * 2 + [NO_IMPROVE])
        ceremony.start_new_day()
        self._fail_twice(engine)
        ceremony.handle_pivot_choice(True)
        assert gs.get("dish_progress") == 0
        assert gs.get("technical_debt") == 0

    def test_declining_changes_nothing(self):
        ceremony, engine, gs, bus = _make_ceremony(FAIL * 2 + [NO_IMPROVE])
        declined = _record(bus, GameEvents.PIVOT_DECLINED)
        ceremony.start_new_day()
        self._fail_twice(engine)
        before = gs.get_state()

        assert ceremony.handle_pivot_choice(False) is True
        assert gs.get_state() == before
        assert declined == [{"day": 1}]

    def test_single_failure_offers_nothing(self):
        ceremony, engine, _, bus = _make_ceremony(FAIL + [NO_IMPROVE] * 2)
        retros = _record(bus, GameEvents.NIGHT_RETRO)
        ceremony.start_new_day()
        engine.execute_action("dishwashing")
        engine.execute_action("rest")
        engine.execute_action("rest")

        assert retros[0]["pivot_offered"] is False
        assert ceremony.handle_pivot_choice(True) is False


class TestEndings:
    def test_game_over_is_detected_after_an_action(self):
        ceremony, engine, gs, bus = _make_ceremony(FAIL)
        over = _record(bus, GameEvents.GAME_OVER)
        ceremony.start_new_day()
        gs.update({"technical_debt": 18})

        engine.execute_action("dishwashing")

        assert ceremony.phase is CeremonyPhase.GAME_OVER
        assert ceremony.end_reason == "technical_debt"
        assert over[0]["reason"] == "technical_debt"
        assert ceremony.proceed_to_next_day() is False

    def test_final_night_runs_the_judgment(self):
        ceremony, engine, gs, bus = _make_ceremony([NO_IMPROVE] * 4)
        judgments = _record(bus, GameEvents.JUDGMENT)
        victories = _record(bus, GameEvents.VICTORY)
        gs.update({"day": 7, "dish_progress": 100, "skills": PASSING_SKILLS})
        ceremony.start_new_day()

        _rest_through_day(engine)
        assert judgments == []
        engine.execute_action("rest")

        assert judgments[0]["passed"] is True
        assert len(victories) == 1
        assert ceremony.phase is CeremonyPhase.VICTORY
        assert gs.get("judgment_triggered") is True
        assert ceremony.proceed_to_next_day() is False

    def test_failed_judgment_ends_the_game(self):
        ceremony, engine, gs, bus = _make_ceremony([NO_IMPROVE] * 4)
        over = _record(bus, GameEvents.GAME_OVER)
        gs.update({"day": 7, "dish_progress": 60, "skills": PASSING_SKILLS})
        ceremony.start_new_day()

        _rest_through_day(engine)
        engine.execute_action("rest")

        assert ceremony.phase is CeremonyPhase.GAME_OVER
        assert over[0]["reason"] == "judgment"
        assert over[0]["judgment"]["dish_complete"] is False

    def test_retry_restarts_the_ceremony(self):
        ceremony, engine, gs, _ = _make_ceremony(FAIL)
        ceremony.start_new_day()
        gs.update({"technical_debt": 18})
        engine.execute_action("dishwashing")
        assert ceremony.is_finished

        gs.retry_sprint()
        assert ceremony.phase is CeremonyPhase.MORNING
        assert ceremony.end_reason is None
        assert gs.get("day") == 1


def test_detach_stops_counting():
    ceremony, engine, _, _ = _make_ceremony([NO_IMPROVE])
    ceremony.start_new_day()
    ceremony.detach()
    engine.execute_action("rest")
    assert ceremony.action_counts() == {}
