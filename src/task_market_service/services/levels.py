"""Tasker levels, experience points, and commission rates."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum


class TaskerLevel(StrEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


@dataclass(frozen=True)
class LevelInfo:
    level: TaskerLevel
    min_points: int
    commission_rate: Decimal


# Ordered from lowest to highest threshold.
LEVELS: tuple[LevelInfo, ...] = (
    LevelInfo(TaskerLevel.BRONZE, 0, Decimal("0.05")),
    LevelInfo(TaskerLevel.SILVER, 100, Decimal("0.05")),
    LevelInfo(TaskerLevel.GOLD, 300, Decimal("0.04")),
    LevelInfo(TaskerLevel.PLATINUM, 600, Decimal("0.03")),
    LevelInfo(TaskerLevel.DIAMOND, 1000, Decimal("0.02")),
)

TASK_COMPLETED_POINTS = 10


def calculate_level(experience_points: int) -> TaskerLevel:
    """Highest level whose threshold the points reach."""
    for info in reversed(LEVELS):
        if experience_points >= info.min_points:
            return info.level
    return TaskerLevel.BRONZE


def get_level_info(level: TaskerLevel) -> LevelInfo:
    for info in LEVELS:
        if info.level == level:
            return info
    return LEVELS[0]


def commission_rate(level: TaskerLevel) -> Decimal:
    """Platform fee rate charged on a tasker's payouts at ``level``."""
    return get_level_info(level).commission_rate


def level_progress(experience_points: int) -> dict[str, object]:
    """
    Progress summary toward the next level.

    Returns the current level, the next level (None at the top), percent
    progress through the current band, and points still needed.
    """
    current = get_level_info(calculate_level(experience_points))
    index = LEVELS.index(current)
    if index == len(LEVELS) - 1:
        return {
            "level": str(current.level),
            "next_level": None,
            "progress_percent": 100,
            "points_to_next": 0,
        }

    upcoming = LEVELS[index + 1]
    band = upcoming.min_points - current.min_points
    earned = experience_points - current.min_points
    return {
        "level": str(current.level),
        "next_level": str(upcoming.level),
        "progress_percent": min(100, round(earned * 100 / band)),
        "points_to_next": upcoming.min_points - experience_points,
    }
