"""Tests for episode modifiers."""

from kitchen.episode import NoEpisode, SprintEpisode
from sim.config import CrisisConfig, EpisodeConfig
from sim.models import KitchenState


def _sprint() -> SprintEpisode:
    return SprintEpisode(EpisodeConfig(
        number=1,
        max_days=7,
        requirements={},
        crisis=CrisisConfig(start_day=3, end_day=5, adjustments={"trial": -0.2, "study": 0.2}),
    ))


def test_crisis_window_is_half_open():
    episode = _sprint()
    assert [d for d in range(1, 8) if episode.crisis_active(d)] == [3, 4]
    assert episode.crisis_starts(3) and not episode.crisis_starts(4)
    assert episode.crisis_ends(5) and not episode.crisis_ends(4)
    assert episode.max_days == 7


def test_adjustment_only_for_listed_actions_during_crisis():
    episode = _sprint()
    assert episode.success_adjustment(KitchenState(day=4), "trial") == -0.2
    assert episode.success_adjustment(KitchenState(day=4), "prep") == 0.0
    assert episode.success_adjustment(KitchenState(day=2), "trial") == 0.0


def test_episode_without_crisis():
    episode = SprintEpisode(EpisodeConfig(number=2, max_days=5, requirements={}))
    assert not episode.crisis_active(3)
    assert not episode.crisis_starts(3)
    assert episode.success_adjustment(KitchenState(day=3), "trial") == 0.0


def test_no_episode_is_neutral():
    episode = NoEpisode()
    assert episode.success_adjustment(KitchenState(day=3), "trial") == 0.0
    assert not episode.crisis_active(3)
    assert not episode.crisis_starts(3)
    assert not episode.crisis_ends(5)
