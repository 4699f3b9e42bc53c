"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from task_market_service.routers.helpers import (
    get_task_manager,
    parse_json_body,
    parse_optional_json_body,
    parse_query_int,
    require_actor,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Post a new task for the acting client."""
    actor = require_actor(request)
    body = await request.body()
    data = parse_json_body(body)

    result = await get_task_manager().create_task(actor, data)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: list tasks
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    params = request.query_params
    offset = parse_query_int(params.get("offset"), "offset", 0)
    limit = parse_query_int(params.get("limit"), "limit", 1)

    tasks = await get_task_manager().list_tasks(
        status=params.get("status"),
        client_id=params.get("client_id"),
        tasker_id=params.get("tasker_id"),
        offset=offset,
        limit=limit,
    )
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# GET / PATCH /tasks/{task_id}
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get task details."""
    return await get_task_manager().get_task(task_id)


@router.patch("/tasks/{task_id}")
async def update_task(task_id: str, request: Request) -> JSONResponse:
    """Edit an open task's title, description, category or budget."""
    actor = require_actor(request)
    body = await request.body()
    data = parse_json_body(body)

    result = await get_task_manager().update_task(task_id, actor, data)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """Cancel an open task, or any unfinished task as an admin."""
    actor = require_actor(request)
    parse_optional_json_body(await request.body())

    manager = get_task_manager()
    result = await manager.cancel_task(task_id, actor)
    background_tasks.add_task(manager.dispatch_events)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/request-completion")
async def request_completion(
    task_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """Tasker reports the work done; the task then awaits payment."""
    actor = require_actor(request)
    parse_optional_json_body(await request.body())

    manager = get_task_manager()
    result = await manager.request_completion(task_id, actor)
    background_tasks.add_task(manager.dispatch_events)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/settle")
async def settle_task(
    task_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """Client pays the accepted bid; the tasker is credited minus the fee."""
    actor = require_actor(request)
    parse_optional_json_body(await request.body())

    manager = get_task_manager()
    result = await manager.settle(task_id, actor)
    background_tasks.add_task(manager.dispatch_events)
    return JSONResponse(status_code=200, content=result)
