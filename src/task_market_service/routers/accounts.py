"""Account endpoints: balances, ledger entries, reconciliation, deposits."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.logging import get_logger
from task_market_service.routers.helpers import get_task_manager, parse_json_body, require_actor
from task_market_service.schemas import AccountResponse, ReconciliationResponse

router = APIRouter()


# === GET /accounts/{user_id} ===


@router.get("/accounts/{user_id}", response_model=AccountResponse)
async def get_account(user_id: str, request: Request) -> AccountResponse:
    """Balance, level and completed tasks of a user."""
    actor = require_actor(request)
    account = await get_task_manager().get_account(user_id, actor)
    return AccountResponse(**account)


# === GET /accounts/{user_id}/transactions ===


@router.get("/accounts/{user_id}/transactions")
async def get_transactions(user_id: str, request: Request) -> dict[str, Any]:
    """Ledger entries of a user, oldest first."""
    actor = require_actor(request)
    task_id = request.query_params.get("task_id")
    transactions = await get_task_manager().get_transactions(user_id, actor, task_id)
    return {"user_id": user_id, "transactions": transactions}


# === GET /accounts/{user_id}/reconciliation ===


@router.get("/accounts/{user_id}/reconciliation", response_model=ReconciliationResponse)
async def reconcile(user_id: str, request: Request) -> ReconciliationResponse:
    """Compare the stored balance with the ledger sum."""
    actor = require_actor(request)
    result = await get_task_manager().reconcile(user_id, actor)
    return ReconciliationResponse(**result)


# === POST /accounts/{user_id}/deposits ===


@router.post("/accounts/{user_id}/deposits", status_code=201)
async def create_deposit(user_id: str, request: Request) -> JSONResponse:
    """Credit a user after an external card charge. Replays return 200."""
    actor = require_actor(request)
    body = await request.body()
    data = parse_json_body(body)

    entry = await get_task_manager().deposit(user_id, actor, data)

    logger = get_logger(__name__)
    logger.info(
        "Deposit request handled",
        extra={"user_id": user_id, "actor_id": actor.user_id, "replayed": entry["replayed"]},
    )
    status_code = 200 if entry["replayed"] else 201
    return JSONResponse(status_code=status_code, content=entry)
