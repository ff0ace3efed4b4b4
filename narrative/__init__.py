"""Narrative layer: skill grades, the final-day judgment and retrospective summaries."""

from .progression import (
    Judgment,
    RequirementCheck,
    check_requirements,
    day_summary,
    skill_grade,
)

__all__ = [
    "Judgment",
    "RequirementCheck",
    "check_requirements",
    "day_summary",
    "skill_grade",
]
