"""Task lifecycle facade used by the HTTP layer."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from starlette.concurrency import run_in_threadpool

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.database import now_iso
from task_market_service.services.event_outbox import EventOutbox, EventType
from task_market_service.services.levels import level_progress
from task_market_service.services.money import format_amount, parse_positive_amount
from task_market_service.services.task_state_machine import (
    Actor,
    TaskEvent,
    TaskStatus,
    allowed_events,
)

if TYPE_CHECKING:
    from task_market_service.services.bid_arbiter import BidArbiter
    from task_market_service.services.database import Database
    from task_market_service.services.ledger import Ledger
    from task_market_service.services.notifier import EventDispatcher
    from task_market_service.services.settlement import SettlementCoordinator
    from task_market_service.services.task_state_machine import TaskStateMachine
    from task_market_service.services.task_store import TaskStore

TASK_CATEGORIES: tuple[str, ...] = (
    "Cleaning",
    "Moving",
    "Delivery",
    "Handyman",
    "Assembly",
    "Gardening",
    "Painting",
    "Errands",
    "Pet Care",
    "Tech Help",
    "Other",
)

_MAX_TITLE_LENGTH = 200
_MAX_DESCRIPTION_LENGTH = 5000
_EDITABLE_FIELDS = ("title", "description", "category", "budget")


def _require_text(data: dict[str, Any], field_name: str, max_length: int) -> str:
    value = data.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be a non-empty string",
            400,
            {"field": field_name},
        )
    if len(value) > max_length:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must not exceed {max_length} characters",
            400,
            {"field": field_name},
        )
    return value.strip()


def _require_category(value: object) -> str:
    if value not in TASK_CATEGORIES:
        raise ServiceError(
            "INVALID_CATEGORY",
            "category is not a known task category",
            400,
            {"field": "category", "allowed": list(TASK_CATEGORIES)},
        )
    return str(value)


class TaskManager:
    """
    Entry point for every task, bid, settlement and account operation.

    The engine components are synchronous and serialize through SQLite;
    this class runs them in the threadpool. Events they record are delivered
    later by ``dispatch_events``; delivery problems are logged and never change
    the outcome of an operation that already committed.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        ledger: Ledger,
        state_machine: TaskStateMachine,
        bid_arbiter: BidArbiter,
        settlement: SettlementCoordinator,
        dispatcher: EventDispatcher,
        admin_ids: list[str],
    ) -> None:
        self._database = database
        self._store = store
        self._ledger = ledger
        self._state_machine = state_machine
        self._bid_arbiter = bid_arbiter
        self._settlement = settlement
        self._dispatcher = dispatcher
        self._admin_ids = frozenset(admin_ids)
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def actor_for(self, user_id: str) -> Actor:
        """Build the actor for an authenticated user id."""
        return Actor(user_id=user_id, is_admin=user_id in self._admin_ids)

    @staticmethod
    def _task_to_response(task: dict[str, Any]) -> dict[str, Any]:
        response = dict(task)
        response["budget"] = format_amount(task["budget"])
        response["allowed_events"] = [str(event) for event in allowed_events(task["status"])]
        return response

    @staticmethod
    def _bid_to_response(bid: dict[str, Any]) -> dict[str, Any]:
        response = dict(bid)
        response["amount"] = format_amount(bid["amount"])
        return response

    @staticmethod
    def _entry_to_response(entry: dict[str, Any]) -> dict[str, Any]:
        response = dict(entry)
        response["amount"] = format_amount(entry["amount"])
        response["balance_after"] = format_amount(entry["balance_after"])
        return response

    @staticmethod
    def _settlement_to_response(settlement: dict[str, Any]) -> dict[str, Any]:
        return {
            "task_id": settlement["task_id"],
            "bid_id": settlement["bid_id"],
            "client_id": settlement["client_id"],
            "tasker_id": settlement["tasker_id"],
            "amount": format_amount(settlement["amount"]),
            "tasker_level": settlement["tasker_level"],
            "fee_rate": str(settlement["fee_rate"]),
            "fee": format_amount(settlement["fee"]),
            "payout": format_amount(settlement["payout"]),
            "settled_at": settlement["settled_at"],
        }

    @staticmethod
    def _require_self_or_admin(user_id: str, actor: Actor) -> None:
        if actor.user_id != user_id and not actor.is_admin:
            raise ServiceError(
                "UNAUTHORIZED",
                "Account data is only visible to its owner",
                403,
                {"user_id": user_id},
            )

    async def dispatch_events(self) -> int:
        """
        Deliver pending domain events. Never raises.

        Routers schedule this as a background task once the response is
        sent, so a slow or failing notifier never delays a request.
        """
        try:
            return await self._dispatcher.dispatch_pending()
        except ServiceError as exc:
            self._logger.warning(
                "Event dispatch skipped",
                extra={"error_code": exc.error, "error": exc.message},
            )
        except Exception:
            self._logger.exception("Event dispatch failed")
        return 0

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _create_task(self, actor: Actor, data: dict[str, Any]) -> dict[str, Any]:
        title = _require_text(data, "title", _MAX_TITLE_LENGTH)
        description = _require_text(data, "description", _MAX_DESCRIPTION_LENGTH)
        category = _require_category(data.get("category"))
        if "budget" not in data:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Missing required field: budget",
                400,
                {"field": "budget"},
            )
        budget = parse_positive_amount(data["budget"], "budget")

        now = now_iso()
        task = {
            "task_id": f"t-{uuid.uuid4()}",
            "client_id": actor.user_id,
            "tasker_id": None,
            "title": title,
            "description": description,
            "category": category,
            "budget": budget,
            "status": str(TaskStatus.OPEN),
            "created_at": now,
            "updated_at": now,
            "assigned_at": None,
            "completion_requested_at": None,
            "completed_at": None,
            "cancelled_at": None,
        }
        with self._database.transaction() as conn:
            self._store.insert_task(conn, task)

        self._logger.info(
            "Task created",
            extra={"task_id": task["task_id"], "client_id": actor.user_id},
        )
        return task

    async def create_task(self, actor: Actor, data: dict[str, Any]) -> dict[str, Any]:
        """
        Post a new open task for the acting client.

        Raises:
            ServiceError: INVALID_PAYLOAD, INVALID_CATEGORY, INVALID_AMOUNT
        """
        task = await run_in_threadpool(self._create_task, actor, data)
        return self._task_to_response(task)

    def _get_task(self, task_id: str) -> dict[str, Any]:
        with self._database.read() as conn:
            task = self._store.get_task(conn, task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """
        Get a single task by ID.

        Completed tasks include their settlement record.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        task = await run_in_threadpool(self._get_task, task_id)
        response = self._task_to_response(task)
        if task["status"] == TaskStatus.COMPLETED:
            settlement = await run_in_threadpool(self._settlement.get_settlement, task_id)
            if settlement is not None:
                response["settlement"] = self._settlement_to_response(settlement)
        return response

    def _list_tasks(
        self,
        status: str | None,
        client_id: str | None,
        tasker_id: str | None,
        offset: int | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        with self._database.read() as conn:
            return self._store.list_tasks(
                conn,
                status=status,
                client_id=client_id,
                tasker_id=tasker_id,
                limit=limit,
                offset=offset,
            )

    async def list_tasks(
        self,
        status: str | None,
        client_id: str | None,
        tasker_id: str | None,
        offset: int | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        """
        List tasks with optional filters. All filters use AND logic.

        Raises:
            ServiceError: INVALID_PAYLOAD for an unknown status filter
        """
        if status is not None and status not in {str(s) for s in TaskStatus}:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Unknown task status: {status}",
                400,
                {"field": "status"},
            )
        tasks = await run_in_threadpool(
            self._list_tasks, status, client_id, tasker_id, offset, limit
        )
        return [self._task_to_response(task) for task in tasks]

    def _update_task(self, task_id: str, actor: Actor, data: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(data) - set(_EDITABLE_FIELDS))
        if unknown:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Fields cannot be edited: {', '.join(unknown)}",
                400,
                {"fields": unknown},
            )
        if not data:
            raise ServiceError("INVALID_PAYLOAD", "No fields to update", 400, {})

        updates: dict[str, Any] = {}
        if "title" in data:
            updates["title"] = _require_text(data, "title", _MAX_TITLE_LENGTH)
        if "description" in data:
            updates["description"] = _require_text(data, "description", _MAX_DESCRIPTION_LENGTH)
        if "category" in data:
            updates["category"] = _require_category(data["category"])
        if "budget" in data:
            updates["budget"] = parse_positive_amount(data["budget"], "budget")

        with self._database.transaction() as conn:
            task = self._store.get_task(conn, task_id)
            if task is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
            if actor.user_id != task["client_id"]:
                raise ServiceError(
                    "UNAUTHORIZED",
                    "Only the task's client can edit it",
                    403,
                    {"task_id": task_id},
                )
            if task["status"] != TaskStatus.OPEN:
                raise ServiceError(
                    "INVALID_STATE",
                    "Only open tasks can be edited",
                    409,
                    {"task_id": task_id, "status": task["status"]},
                )
            updated_at = now_iso()
            self._store.update_details(conn, task_id, updates, updated_at)

        task.update(updates)
        task["updated_at"] = updated_at
        return task

    async def update_task(
        self,
        task_id: str,
        actor: Actor,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Edit title, description, category or budget of an open task.

        Raises:
            ServiceError: INVALID_PAYLOAD, INVALID_CATEGORY, INVALID_AMOUNT,
                TASK_NOT_FOUND, UNAUTHORIZED, INVALID_STATE
        """
        task = await run_in_threadpool(self._update_task, task_id, actor, data)
        return self._task_to_response(task)

    def _cancel_task(self, task_id: str, actor: Actor) -> dict[str, Any]:
        with self._database.transaction() as conn:
            task = self._store.get_task(conn, task_id)
            if task is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
            previous_status = task["status"]
            previous_tasker = task["tasker_id"]

            cancelled = self._state_machine.transition(conn, task, TaskEvent.CANCEL, actor)
            if previous_status == TaskStatus.OPEN:
                self._bid_arbiter.reject_pending_bids(conn, task_id)

            EventOutbox.record(
                conn,
                EventType.TASK_CANCELLED,
                {
                    "taskId": task_id,
                    "clientId": task["client_id"],
                    "taskerId": previous_tasker,
                },
            )

        self._logger.info(
            "Task cancelled",
            extra={
                "task_id": task_id,
                "actor_id": actor.user_id,
                "previous_status": previous_status,
            },
        )
        return cancelled

    async def cancel_task(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Cancel a task.

        The client may cancel while the task is open; pending bids are
        rejected. Admins may also cancel assigned or awaiting-payment tasks.

        Raises:
            ServiceError: TASK_NOT_FOUND, INVALID_TRANSITION, UNAUTHORIZED
        """
        task = await run_in_threadpool(self._cancel_task, task_id, actor)
        return self._task_to_response(task)

    def _request_completion(self, task_id: str, actor: Actor) -> dict[str, Any]:
        with self._database.transaction() as conn:
            task = self._store.get_task(conn, task_id)
            if task is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
            updated = self._state_machine.transition(
                conn, task, TaskEvent.REQUEST_COMPLETION, actor
            )
            EventOutbox.record(
                conn,
                EventType.COMPLETION_REQUESTED,
                {
                    "taskId": task_id,
                    "clientId": task["client_id"],
                    "taskerId": task["tasker_id"],
                },
            )
        return updated

    async def request_completion(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Tasker marks the work done; the task then awaits payment.

        Raises:
            ServiceError: TASK_NOT_FOUND, INVALID_TRANSITION, UNAUTHORIZED
        """
        task = await run_in_threadpool(self._request_completion, task_id, actor)
        return self._task_to_response(task)

    # ------------------------------------------------------------------
    # Bids and settlement
    # ------------------------------------------------------------------

    async def submit_bid(self, task_id: str, actor: Actor, data: dict[str, Any]) -> dict[str, Any]:
        """
        Place a bid on an open task.

        Raises:
            ServiceError: INVALID_PAYLOAD, INVALID_AMOUNT, TASK_NOT_FOUND,
                TASK_NOT_OPEN, SELF_BID, DUPLICATE_BID
        """
        if "amount" not in data:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Missing required field: amount",
                400,
                {"field": "amount"},
            )
        bid = await run_in_threadpool(
            self._bid_arbiter.submit_bid,
            task_id,
            actor.user_id,
            data["amount"],
            data.get("message"),
        )
        return self._bid_to_response(bid)

    async def list_bids(self, task_id: str) -> list[dict[str, Any]]:
        """
        List bids for a task.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        bids = await run_in_threadpool(self._bid_arbiter.list_bids, task_id)
        return [self._bid_to_response(bid) for bid in bids]

    async def accept_bid(self, bid_id: str, actor: Actor) -> dict[str, Any]:
        """
        Accept a bid; the task is assigned to its tasker and all other bids
        are rejected.

        Raises:
            ServiceError: BID_NOT_FOUND, TASK_NOT_FOUND, UNAUTHORIZED,
                TASK_NOT_OPEN, BID_NOT_PENDING
        """
        result = await run_in_threadpool(self._bid_arbiter.accept_bid, bid_id, actor)
        return {
            "task": self._task_to_response(result["task"]),
            "bid": self._bid_to_response(result["bid"]),
            "rejected_bid_ids": result["rejected_bid_ids"],
        }

    async def settle(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Pay for a task awaiting payment.

        Raises:
            ServiceError: TASK_NOT_FOUND, UNAUTHORIZED, INVALID_STATE,
                NO_ACCEPTED_BID, INSUFFICIENT_BALANCE
        """
        result = await run_in_threadpool(self._settlement.settle, task_id, actor)
        return {
            "task": self._task_to_response(result["task"]),
            "settlement": self._settlement_to_response(result["settlement"]),
        }

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _get_account(self, user_id: str) -> dict[str, Any]:
        account = self._ledger.get_account(user_id)
        stats = self._settlement.get_tasker_stats(user_id)
        if account is None and stats is None:
            raise ServiceError(
                "ACCOUNT_NOT_FOUND",
                "Account not found",
                404,
                {"user_id": user_id},
            )

        experience_points = stats["experience_points"] if stats is not None else 0
        progress = level_progress(experience_points)
        return {
            "user_id": user_id,
            "balance": format_amount(self._ledger.get_balance(user_id)),
            "level": progress["level"],
            "experience_points": experience_points,
            "completed_tasks": stats["completed_tasks"] if stats is not None else 0,
            "next_level": progress["next_level"],
            "progress_percent": progress["progress_percent"],
            "points_to_next": progress["points_to_next"],
        }

    async def get_account(self, user_id: str, actor: Actor) -> dict[str, Any]:
        """
        Balance, tasker level and completed task count of a user.

        Raises:
            ServiceError: UNAUTHORIZED, ACCOUNT_NOT_FOUND
        """
        self._require_self_or_admin(user_id, actor)
        return await run_in_threadpool(self._get_account, user_id)

    async def get_transactions(
        self,
        user_id: str,
        actor: Actor,
        task_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Ledger entries of a user, oldest first.

        Raises:
            ServiceError: UNAUTHORIZED
        """
        self._require_self_or_admin(user_id, actor)
        entries = await run_in_threadpool(self._ledger.get_transactions, user_id, task_id)
        return [self._entry_to_response(entry) for entry in entries]

    async def reconcile(self, user_id: str, actor: Actor) -> dict[str, Any]:
        """
        Compare a user's stored balance with their ledger sum.

        Raises:
            ServiceError: UNAUTHORIZED
        """
        self._require_self_or_admin(user_id, actor)
        result = await run_in_threadpool(self._ledger.reconcile, user_id)
        if not result["consistent"]:
            self._logger.error(
                "Balance does not match ledger",
                extra={
                    "user_id": user_id,
                    "stored_balance": format_amount(result["stored_balance"]),
                    "ledger_balance": format_amount(result["ledger_balance"]),
                },
            )
        return {
            "user_id": user_id,
            "stored_balance": format_amount(result["stored_balance"]),
            "ledger_balance": format_amount(result["ledger_balance"]),
            "entry_count": result["entry_count"],
            "consistent": result["consistent"],
        }

    async def deposit(
        self,
        user_id: str,
        actor: Actor,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Credit a user after an external card charge. Platform admins only.

        Raises:
            ServiceError: UNAUTHORIZED, INVALID_PAYLOAD, INVALID_AMOUNT,
                PAYLOAD_MISMATCH
        """
        if not actor.is_admin:
            raise ServiceError(
                "UNAUTHORIZED",
                "Only the platform can record deposits",
                403,
                {"user_id": user_id},
            )
        for field_name in ("amount", "reference"):
            if field_name not in data:
                raise ServiceError(
                    "INVALID_PAYLOAD",
                    f"Missing required field: {field_name}",
                    400,
                    {"field": field_name},
                )
        reference = data["reference"]
        if not isinstance(reference, str) or not reference.strip():
            raise ServiceError(
                "INVALID_PAYLOAD",
                "reference must be a non-empty string",
                400,
                {"field": "reference"},
            )
        title = data.get("title", "Balance top-up")
        if not isinstance(title, str) or not title.strip():
            raise ServiceError(
                "INVALID_PAYLOAD",
                "title must be a non-empty string",
                400,
                {"field": "title"},
            )

        entry = await run_in_threadpool(
            self._ledger.deposit,
            user_id,
            data["amount"],
            reference.strip(),
            title.strip(),
        )
        return self._entry_to_response(entry)

    # ------------------------------------------------------------------
    # Statistics and lifecycle
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return aggregate task statistics for health reporting."""
        with self._database.read() as conn:
            counts = self._store.count_tasks_by_status(conn)
        tasks_by_status: dict[str, int] = {str(status): 0 for status in TaskStatus}
        tasks_by_status.update(counts)
        return {
            "total_tasks": sum(tasks_by_status.values()),
            "tasks_by_status": tasks_by_status,
        }

    async def close(self) -> None:
        """Release the notifier's resources."""
        await self._dispatcher.notifier.close()
