"""Progression helpers: skill grades, the final-day judgment, day summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sim.config import GameConfig
from sim.models import KitchenState


@dataclass(frozen=True)
class RequirementCheck:
    current: int
    required: int
    passed: bool


@dataclass(frozen=True)
class Judgment:
    passed: bool
    skills_passed: bool
    dish_complete: bool
    dish_progress: int
    details: dict[str, RequirementCheck] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "skills_passed": self.skills_passed,
            "dish_complete": self.dish_complete,
            "dish_progress": self.dish_progress,
            "details": {
                skill: {"current": c.current, "required": c.required, "passed": c.passed}
                for skill, c in self.details.items()
            },
        }


def skill_grade(level: int, grades: dict[str, int]) -> str:
    """Letter grade for a level: the best grade whose threshold it reaches."""
    for letter, threshold in sorted(grades.items(), key=lambda kv: kv[1], reverse=True):
        if level >= threshold:
            return letter
    return "G"


def check_requirements(state: KitchenState, cfg: GameConfig) -> Judgment:
    """Judge the signature dish: every required skill level plus a finished dish."""
    details: dict[str, RequirementCheck] = {}
    for skill, required in cfg.episode.requirements.items():
        current = int(state.skills.get(skill, 0))
        details[skill] = RequirementCheck(current=current, required=required, passed=current >= required)

    skills_passed = all(c.passed for c in details.values())
    dish_complete = state.dish_progress >= cfg.dish_progress.victory_threshold
    return Judgment(
        passed=skills_passed and dish_complete,
        skills_passed=skills_passed,
        dish_complete=dish_complete,
        dish_progress=state.dish_progress,
        details=details,
    )


def day_summary(start: KitchenState, end: KitchenState) -> dict[str, Any]:
    """Diff two snapshots for the night retrospective."""
    return {
        "day": end.day,
        "dish_progress_change": end.dish_progress - start.dish_progress,
        "stamina_change": end.stamina - start.stamina,
        "debt_change": end.technical_debt - start.technical_debt,
        "mood_change": end.mood - start.mood,
        "skill_changes": {
            skill: end.skills.get(skill, 0) - start.skills.get(skill, 0)
            for skill in end.skills
            if end.skills.get(skill, 0) != start.skills.get(skill, 0)
        },
        "condition_from": start.condition.value,
        "condition_to": end.condition.value,
        "actions": list(end.today_actions),
    }
