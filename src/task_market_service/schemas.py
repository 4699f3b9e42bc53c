"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class AccountResponse(BaseModel):
    """Response model for GET /accounts/{user_id}."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    balance: str
    level: str
    experience_points: int
    completed_tasks: int
    next_level: str | None
    progress_percent: int
    points_to_next: int


class ReconciliationResponse(BaseModel):
    """Response model for GET /accounts/{user_id}/reconciliation."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    stored_balance: str
    ledger_balance: str
    entry_count: int
    consistent: bool
