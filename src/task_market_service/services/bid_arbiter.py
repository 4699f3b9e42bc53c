"""Bid submission and the accept-one-reject-the-rest operation."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.database import now_iso
from task_market_service.services.event_outbox import EventOutbox, EventType
from task_market_service.services.money import format_amount, parse_positive_amount
from task_market_service.services.task_state_machine import TaskEvent, TaskStatus
from task_market_service.services.task_store import DuplicateBidError

if TYPE_CHECKING:
    import sqlite3

    from task_market_service.services.database import Database
    from task_market_service.services.task_state_machine import Actor, TaskStateMachine
    from task_market_service.services.task_store import TaskStore

_MAX_MESSAGE_LENGTH = 2000


class BidArbiter:
    """
    Owns bid creation and resolution.

    Both operations run as a single write transaction, so the task status
    read at the start cannot change before the bid rows and the task row
    are written.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        state_machine: TaskStateMachine,
    ) -> None:
        self._database = database
        self._store = store
        self._state_machine = state_machine
        self._logger = get_logger(__name__)

    def _load_task(self, conn: sqlite3.Connection, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(conn, task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    @staticmethod
    def _validate_message(message: object) -> str | None:
        if message is None:
            return None
        if not isinstance(message, str):
            raise ServiceError(
                "INVALID_PAYLOAD",
                "message must be a string",
                400,
                {"field": "message"},
            )
        if len(message) > _MAX_MESSAGE_LENGTH:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"message must be at most {_MAX_MESSAGE_LENGTH} characters",
                400,
                {"field": "message"},
            )
        stripped = message.strip()
        return stripped if stripped else None

    def submit_bid(
        self,
        task_id: str,
        tasker_id: str,
        amount: object,
        message: object = None,
    ) -> dict[str, Any]:
        """
        Place a pending bid on an open task.

        Raises:
            ServiceError: INVALID_AMOUNT, INVALID_PAYLOAD, TASK_NOT_FOUND,
                TASK_NOT_OPEN, SELF_BID, DUPLICATE_BID.
        """
        bid_amount = parse_positive_amount(amount)
        bid_message = self._validate_message(message)

        with self._database.transaction() as conn:
            task = self._load_task(conn, task_id)
            if task["status"] != TaskStatus.OPEN:
                raise ServiceError(
                    "TASK_NOT_OPEN",
                    "Task is not accepting bids",
                    409,
                    {"task_id": task_id, "status": task["status"]},
                )
            if task["client_id"] == tasker_id:
                raise ServiceError(
                    "SELF_BID",
                    "Cannot bid on your own task",
                    400,
                    {"task_id": task_id},
                )
            existing = self._store.find_bid(conn, task_id, tasker_id)
            if existing is not None:
                raise ServiceError(
                    "DUPLICATE_BID",
                    "This tasker has already bid on this task",
                    400,
                    {"task_id": task_id, "tasker_id": tasker_id, "bid_id": existing["bid_id"]},
                )

            bid = {
                "bid_id": f"bid-{uuid.uuid4()}",
                "task_id": task_id,
                "tasker_id": tasker_id,
                "amount": bid_amount,
                "message": bid_message,
                "status": "pending",
                "created_at": now_iso(),
                "decided_at": None,
            }
            try:
                self._store.insert_bid(conn, bid)
            except DuplicateBidError as exc:
                raise ServiceError(
                    "DUPLICATE_BID",
                    "This tasker has already bid on this task",
                    400,
                    {"task_id": task_id, "tasker_id": tasker_id},
                ) from exc

            EventOutbox.record(
                conn,
                EventType.BID_PLACED,
                {
                    "taskId": task_id,
                    "bidId": bid["bid_id"],
                    "taskerId": tasker_id,
                    "clientId": task["client_id"],
                    "amount": format_amount(bid_amount),
                },
            )

        self._logger.info(
            "Bid placed",
            extra={"task_id": task_id, "bid_id": bid["bid_id"], "tasker_id": tasker_id},
        )
        return bid

    def accept_bid(self, bid_id: str, actor: Actor) -> dict[str, Any]:
        """
        Accept one pending bid and reject every other pending bid of its task.

        The bid updates and the task's move to ``assigned`` commit together
        or not at all. Returns the updated task, the accepted bid and the
        ids of the rejected bids.

        Raises:
            ServiceError: BID_NOT_FOUND, TASK_NOT_FOUND, UNAUTHORIZED,
                TASK_NOT_OPEN, BID_NOT_PENDING, CONFLICT.
        """
        with self._database.transaction() as conn:
            bid = self._store.get_bid(conn, bid_id)
            if bid is None:
                raise ServiceError("BID_NOT_FOUND", "Bid not found", 404, {"bid_id": bid_id})

            task = self._load_task(conn, bid["task_id"])
            if actor.user_id != task["client_id"]:
                raise ServiceError(
                    "UNAUTHORIZED",
                    "Only the task's client can accept bids",
                    403,
                    {"task_id": task["task_id"], "bid_id": bid_id},
                )
            if task["status"] != TaskStatus.OPEN:
                raise ServiceError(
                    "TASK_NOT_OPEN",
                    "Task is no longer open",
                    409,
                    {"task_id": task["task_id"], "status": task["status"]},
                )
            if bid["status"] != "pending":
                raise ServiceError(
                    "BID_NOT_PENDING",
                    "Bid has already been decided",
                    409,
                    {"bid_id": bid_id, "status": bid["status"]},
                )

            decided_at = now_iso()
            accepted, rejected_ids = self._store.decide_bids(
                conn, task["task_id"], bid_id, decided_at
            )
            if accepted != 1:
                raise ServiceError(
                    "CONFLICT",
                    "Bid changed status concurrently",
                    409,
                    {"bid_id": bid_id},
                )

            updated_task = self._state_machine.transition(
                conn,
                task,
                TaskEvent.ACCEPT_BID,
                actor,
                tasker_id=bid["tasker_id"],
            )

            EventOutbox.record(
                conn,
                EventType.BID_ACCEPTED,
                {
                    "taskId": task["task_id"],
                    "bidId": bid_id,
                    "taskerId": bid["tasker_id"],
                    "clientId": task["client_id"],
                },
            )
            for rejected_id in rejected_ids:
                EventOutbox.record(
                    conn,
                    EventType.BID_REJECTED,
                    {"taskId": task["task_id"], "bidId": rejected_id},
                )

        accepted_bid = dict(bid)
        accepted_bid["status"] = "accepted"
        accepted_bid["decided_at"] = decided_at

        self._logger.info(
            "Bid accepted",
            extra={
                "task_id": task["task_id"],
                "bid_id": bid_id,
                "tasker_id": bid["tasker_id"],
                "rejected_bids": len(rejected_ids),
            },
        )
        return {
            "task": updated_task,
            "bid": accepted_bid,
            "rejected_bid_ids": rejected_ids,
        }

    def reject_pending_bids(self, conn: sqlite3.Connection, task_id: str) -> list[str]:
        """Reject every pending bid of a task on the caller's connection."""
        _, rejected_ids = self._store.decide_bids(conn, task_id, None, now_iso())
        for rejected_id in rejected_ids:
            EventOutbox.record(
                conn,
                EventType.BID_REJECTED,
                {"taskId": task_id, "bidId": rejected_id},
            )
        return rejected_ids

    def list_bids(self, task_id: str) -> list[dict[str, Any]]:
        """
        All bids of a task, oldest first.

        Raises:
            ServiceError: TASK_NOT_FOUND.
        """
        with self._database.read() as conn:
            self._load_task(conn, task_id)
            return self._store.get_bids_for_task(conn, task_id)
