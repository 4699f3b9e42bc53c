"""Unit test fixtures: auto-clear caches and build engine components."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from task_market_service.config import clear_settings_cache
from task_market_service.core.state import reset_app_state
from tests.helpers import Engine

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def engine(tmp_path: Path) -> Engine:
    """Engine components on a fresh database."""
    return Engine(str(tmp_path / "task-market.db"))
