"""Task endpoint tests: creation, listing, editing, cancellation, settlement."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from starlette.concurrency import run_in_threadpool

from task_market_service.core.state import get_app_state
from task_market_service.services.event_outbox import EventOutbox
from tests.unit.routers.conftest import (
    CLIENT_ID,
    PLATFORM_ID,
    TASKER_ID,
    accept_bid,
    as_user,
    create_task,
    deposit,
    setup_task_awaiting_payment,
    submit_bid,
)


@pytest.mark.unit
async def test_create_task_returns_201(client):
    response = await create_task(client)
    assert response.status_code == 201

    data = response.json()
    assert data["task_id"].startswith("t-")
    assert data["client_id"] == CLIENT_ID
    assert data["status"] == "open"
    assert data["budget"] == "100.00"
    assert data["tasker_id"] is None
    assert data["allowed_events"] == ["accept_bid", "cancel"]


@pytest.mark.unit
async def test_create_task_requires_user_header(client):
    response = await client.post(
        "/tasks",
        json={"title": "x", "description": "y", "category": "Other", "budget": "1"},
    )
    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"


@pytest.mark.unit
async def test_create_task_rejects_float_budget(client):
    response = await client.post(
        "/tasks",
        content=b'{"title": "t", "description": "d", "category": "Other", "budget": 10.005}',
        headers={**as_user(CLIENT_ID), "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_AMOUNT"


@pytest.mark.unit
async def test_create_task_rejects_out_of_range_budget(client):
    response = await client.post(
        "/tasks",
        content=b'{"title": "t", "description": "d", "category": "Other", "budget": 1E400}',
        headers={**as_user(CLIENT_ID), "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_AMOUNT"


@pytest.mark.unit
async def test_create_task_unknown_category(client):
    response = await create_task(client, category="Space Travel")
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_CATEGORY"
    assert response.json()["kind"] == "validation"


@pytest.mark.unit
async def test_create_task_invalid_json(client):
    response = await client.post(
        "/tasks",
        content=b"{not json",
        headers={**as_user(CLIENT_ID), "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_JSON"


@pytest.mark.unit
async def test_create_task_wrong_content_type(client):
    response = await client.post(
        "/tasks",
        content=b"title=x",
        headers={**as_user(CLIENT_ID), "Content-Type": "text/plain"},
    )
    assert response.status_code == 415
    assert response.json()["error"] == "UNSUPPORTED_MEDIA_TYPE"


@pytest.mark.unit
async def test_create_task_body_too_large(client):
    response = await create_task(client, description="x" * 5000)
    assert response.status_code == 413
    assert response.json()["error"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.unit
async def test_get_task_and_not_found(client):
    task = (await create_task(client)).json()

    response = await client.get(f"/tasks/{task['task_id']}")
    assert response.status_code == 200
    assert response.json()["title"] == task["title"]

    missing = await client.get("/tasks/t-missing")
    assert missing.status_code == 404
    assert missing.json()["error"] == "TASK_NOT_FOUND"


@pytest.mark.unit
async def test_list_tasks_filters(client):
    await create_task(client, client_id="u-alice")
    await create_task(client, client_id="u-alice")
    await create_task(client, client_id="u-bob")

    everything = (await client.get("/tasks")).json()["tasks"]
    alice = (await client.get("/tasks", params={"client_id": "u-alice"})).json()["tasks"]
    page = (await client.get("/tasks", params={"limit": 1, "offset": 1})).json()["tasks"]

    assert len(everything) == 3
    assert {t["client_id"] for t in alice} == {"u-alice"}
    assert len(alice) == 2
    assert len(page) == 1


@pytest.mark.unit
async def test_list_tasks_bad_query(client):
    bad_limit = await client.get("/tasks", params={"limit": "zero"})
    assert bad_limit.status_code == 400
    bad_status = await client.get("/tasks", params={"status": "archived"})
    assert bad_status.status_code == 400


@pytest.mark.unit
async def test_patch_task_while_open(client):
    task = (await create_task(client)).json()

    response = await client.patch(
        f"/tasks/{task['task_id']}",
        json={"title": "Mount two TVs", "budget": "150.00"},
        headers=as_user(CLIENT_ID),
    )
    assert response.status_code == 200
    assert response.json()["title"] == "Mount two TVs"
    assert response.json()["budget"] == "150.00"

    forbidden = await client.patch(
        f"/tasks/{task['task_id']}",
        json={"title": "Hijacked"},
        headers=as_user(TASKER_ID),
    )
    assert forbidden.status_code == 403


@pytest.mark.unit
async def test_patch_task_after_assignment_fails(client):
    task = (await create_task(client)).json()
    bid = (await submit_bid(client, task["task_id"])).json()
    await accept_bid(client, bid["bid_id"])

    response = await client.patch(
        f"/tasks/{task['task_id']}",
        json={"budget": "1.00"},
        headers=as_user(CLIENT_ID),
    )
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_STATE"


@pytest.mark.unit
async def test_cancel_open_task_without_body(client):
    task = (await create_task(client)).json()

    response = await client.post(f"/tasks/{task['task_id']}/cancel", headers=as_user(CLIENT_ID))
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["cancelled_at"] is not None

    again = await client.post(f"/tasks/{task['task_id']}/cancel", headers=as_user(CLIENT_ID))
    assert again.status_code == 409
    assert again.json()["error"] == "INVALID_TRANSITION"


@pytest.mark.unit
async def test_cancel_by_stranger_is_unauthorized(client):
    task = (await create_task(client)).json()
    response = await client.post(f"/tasks/{task['task_id']}/cancel", headers=as_user("u-nobody"))
    assert response.status_code == 403
    assert response.json()["kind"] == "unauthorized"


@pytest.mark.unit
async def test_admin_cancels_task_awaiting_payment(client):
    task_id = await setup_task_awaiting_payment(client)

    by_client = await client.post(f"/tasks/{task_id}/cancel", headers=as_user(CLIENT_ID))
    assert by_client.status_code == 403

    by_admin = await client.post(f"/tasks/{task_id}/cancel", headers=as_user(PLATFORM_ID))
    assert by_admin.status_code == 200
    assert by_admin.json()["status"] == "cancelled"


@pytest.mark.unit
async def test_request_completion_only_by_tasker(client):
    task = (await create_task(client)).json()
    bid = (await submit_bid(client, task["task_id"])).json()
    await accept_bid(client, bid["bid_id"])

    by_client = await client.post(
        f"/tasks/{task['task_id']}/request-completion", headers=as_user(CLIENT_ID)
    )
    assert by_client.status_code == 403

    by_tasker = await client.post(
        f"/tasks/{task['task_id']}/request-completion", headers=as_user(TASKER_ID)
    )
    assert by_tasker.status_code == 200
    assert by_tasker.json()["status"] == "in_progress"
    assert by_tasker.json()["allowed_events"] == ["settle", "cancel"]


@pytest.mark.unit
async def test_settle_pays_tasker(client):
    await deposit(client, CLIENT_ID, "100.00")
    task_id = await setup_task_awaiting_payment(client, amount="100.00")

    response = await client.post(f"/tasks/{task_id}/settle", headers=as_user(CLIENT_ID))
    assert response.status_code == 200
    data = response.json()
    assert data["task"]["status"] == "completed"
    assert data["settlement"] == {
        **data["settlement"],
        "amount": "100.00",
        "fee": "5.00",
        "payout": "95.00",
        "fee_rate": "0.05",
        "tasker_level": "bronze",
    }

    task = (await client.get(f"/tasks/{task_id}")).json()
    assert task["settlement"]["payout"] == "95.00"

    again = await client.post(f"/tasks/{task_id}/settle", headers=as_user(CLIENT_ID))
    assert again.status_code == 409
    assert again.json()["error"] == "INVALID_STATE"


@pytest.mark.unit
async def test_settle_with_insufficient_balance(client):
    await deposit(client, CLIENT_ID, "50.00")
    task_id = await setup_task_awaiting_payment(client, amount="100.00")

    response = await client.post(f"/tasks/{task_id}/settle", headers=as_user(CLIENT_ID))
    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "INSUFFICIENT_BALANCE"
    assert body["kind"] == "insufficient_balance"
    assert body["retryable"] is False

    task = (await client.get(f"/tasks/{task_id}")).json()
    assert task["status"] == "in_progress"


@pytest.mark.unit
async def test_settle_delivers_events_after_responding(client):
    await deposit(client, CLIENT_ID, "100.00")
    task_id = await setup_task_awaiting_payment(client, amount="100.00")

    response = await client.post(f"/tasks/{task_id}/settle", headers=as_user(CLIENT_ID))
    assert response.status_code == 200

    manager = get_app_state().require_task_manager()
    outbox = EventOutbox(manager._database)
    assert await run_in_threadpool(outbox.count_pending) == 0


@pytest.mark.unit
async def test_settle_succeeds_when_notifier_crashes(client, monkeypatch):
    await deposit(client, CLIENT_ID, "100.00")
    task_id = await setup_task_awaiting_payment(client, amount="100.00")

    manager = get_app_state().require_task_manager()
    crashing = AsyncMock(side_effect=RuntimeError("webhook exploded"))
    monkeypatch.setattr(manager._dispatcher.notifier, "send", crashing)

    response = await client.post(f"/tasks/{task_id}/settle", headers=as_user(CLIENT_ID))
    assert response.status_code == 200
    assert response.json()["task"]["status"] == "completed"
    crashing.assert_awaited()

    outbox = EventOutbox(manager._database)
    assert await run_in_threadpool(outbox.count_pending) >= 1
