"""API routers."""

from task_market_service.routers import accounts, bids, health, tasks

__all__ = ["accounts", "bids", "health", "tasks"]
