"""Bid submission, listing, and acceptance endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from task_market_service.routers.helpers import (
    get_task_manager,
    parse_json_body,
    parse_optional_json_body,
    require_actor,
)

router = APIRouter()


@router.post("/tasks/{task_id}/bids", status_code=201)
async def submit_bid(
    task_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """Submit a bid on an open task."""
    actor = require_actor(request)
    body = await request.body()
    data = parse_json_body(body)

    manager = get_task_manager()
    result = await manager.submit_bid(task_id, actor, data)
    background_tasks.add_task(manager.dispatch_events)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/bids")
async def list_bids(task_id: str) -> dict[str, Any]:
    """List bids for a task."""
    bids = await get_task_manager().list_bids(task_id)
    return {"task_id": task_id, "bids": bids}


@router.post("/bids/{bid_id}/accept")
async def accept_bid(
    bid_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """Accept a bid, assign its tasker, and reject the other bids."""
    actor = require_actor(request)
    parse_optional_json_body(await request.body())

    manager = get_task_manager()
    result = await manager.accept_bid(bid_id, actor)
    background_tasks.add_task(manager.dispatch_events)
    return JSONResponse(status_code=200, content=result)
