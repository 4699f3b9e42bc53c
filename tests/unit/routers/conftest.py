"""Router test fixtures: temp database, app lifespan, HTTP client."""

from __future__ import annotations

import os
import uuid
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.config import clear_settings_cache
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import reset_app_state
from tests.helpers import write_config

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed user IDs
# ---------------------------------------------------------------------------
PLATFORM_ID = "u-platform"
CLIENT_ID = "u-client"
TASKER_ID = "u-tasker"
OTHER_TASKER_ID = "u-other-tasker"

TASK_PAYLOAD: dict[str, Any] = {
    "title": "Mount a TV on a brick wall",
    "description": "55 inch TV, bracket already bought",
    "category": "Handyman",
    "budget": "100.00",
}


def as_user(user_id: str) -> dict[str, str]:
    """Headers identifying the acting user."""
    return {"X-User-Id": user_id}


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app on a temp database with the logging notifier."""
    config_path = tmp_path / "config.yaml"
    write_config(config_path, str(tmp_path / "test.db"), max_body_size=4096)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Lifecycle helper functions
# ---------------------------------------------------------------------------
async def create_task(
    client: AsyncClient,
    client_id: str = CLIENT_ID,
    **overrides: Any,
) -> Any:
    """Create a task via POST /tasks and return the response."""
    return await client.post(
        "/tasks",
        json={**TASK_PAYLOAD, **overrides},
        headers=as_user(client_id),
    )


async def submit_bid(
    client: AsyncClient,
    task_id: str,
    tasker_id: str = TASKER_ID,
    amount: str = "100.00",
) -> Any:
    """Submit a bid via POST /tasks/{task_id}/bids and return the response."""
    return await client.post(
        f"/tasks/{task_id}/bids",
        json={"amount": amount},
        headers=as_user(tasker_id),
    )


async def accept_bid(client: AsyncClient, bid_id: str, client_id: str = CLIENT_ID) -> Any:
    """Accept a bid via POST /bids/{bid_id}/accept."""
    return await client.post(f"/bids/{bid_id}/accept", headers=as_user(client_id))


async def deposit(client: AsyncClient, user_id: str, amount: str) -> Any:
    """Top up a user's balance as the platform."""
    return await client.post(
        f"/accounts/{user_id}/deposits",
        json={"amount": amount, "reference": f"charge-{uuid.uuid4()}"},
        headers=as_user(PLATFORM_ID),
    )


async def setup_task_awaiting_payment(
    client: AsyncClient,
    amount: str = "100.00",
) -> str:
    """Drive a task through bid, acceptance and completion request."""
    task = (await create_task(client, budget=amount)).json()
    bid = (await submit_bid(client, task["task_id"], amount=amount)).json()
    accepted = await accept_bid(client, bid["bid_id"])
    assert accepted.status_code == 200
    requested = await client.post(
        f"/tasks/{task['task_id']}/request-completion", headers=as_user(TASKER_ID)
    )
    assert requested.status_code == 200
    return str(task["task_id"])
