"""Unit tests for tasker levels and commission rates."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_market_service.services.levels import (
    TaskerLevel,
    calculate_level,
    commission_rate,
    level_progress,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("points", "level"),
    [
        (0, TaskerLevel.BRONZE),
        (99, TaskerLevel.BRONZE),
        (100, TaskerLevel.SILVER),
        (299, TaskerLevel.SILVER),
        (300, TaskerLevel.GOLD),
        (600, TaskerLevel.PLATINUM),
        (999, TaskerLevel.PLATINUM),
        (1000, TaskerLevel.DIAMOND),
        (25000, TaskerLevel.DIAMOND),
    ],
)
def test_calculate_level_thresholds(points: int, level: TaskerLevel) -> None:
    assert calculate_level(points) == level


@pytest.mark.unit
@pytest.mark.parametrize(
    ("level", "rate"),
    [
        (TaskerLevel.BRONZE, Decimal("0.05")),
        (TaskerLevel.SILVER, Decimal("0.05")),
        (TaskerLevel.GOLD, Decimal("0.04")),
        (TaskerLevel.PLATINUM, Decimal("0.03")),
        (TaskerLevel.DIAMOND, Decimal("0.02")),
    ],
)
def test_commission_rate_by_level(level: TaskerLevel, rate: Decimal) -> None:
    assert commission_rate(level) == rate


@pytest.mark.unit
def test_level_progress_mid_band() -> None:
    """200 points is halfway from silver (100) to gold (300)."""
    progress = level_progress(200)
    assert progress == {
        "level": "silver",
        "next_level": "gold",
        "progress_percent": 50,
        "points_to_next": 100,
    }


@pytest.mark.unit
def test_level_progress_at_top_level() -> None:
    progress = level_progress(1500)
    assert progress["level"] == "diamond"
    assert progress["next_level"] is None
    assert progress["progress_percent"] == 100
    assert progress["points_to_next"] == 0
