"""Settlement of completed tasks: fee split, balance transfer, completion."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.database import now_iso
from task_market_service.services.event_outbox import EventOutbox, EventType
from task_market_service.services.levels import (
    TASK_COMPLETED_POINTS,
    calculate_level,
    commission_rate,
)
from task_market_service.services.money import (
    format_amount,
    from_cents,
    split_payment,
    to_cents,
)
from task_market_service.services.task_state_machine import TaskEvent, TaskStatus

if TYPE_CHECKING:
    import sqlite3

    from task_market_service.services.database import Database
    from task_market_service.services.ledger import Ledger
    from task_market_service.services.task_state_machine import Actor, TaskStateMachine
    from task_market_service.services.task_store import TaskStore


class SettlementCoordinator:
    """
    Moves the accepted bid amount from client to tasker when a task completes.

    The client debit, the tasker credit, the status change, the tasker's
    statistics, the settlement record and the outbox event are written in
    one transaction. If any step fails nothing is written and the task
    stays awaiting payment.
    """

    def __init__(
        self,
        database: Database,
        store: TaskStore,
        ledger: Ledger,
        state_machine: TaskStateMachine,
    ) -> None:
        self._database = database
        self._store = store
        self._ledger = ledger
        self._state_machine = state_machine
        self._logger = get_logger(__name__)

    @staticmethod
    def _experience_points(conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT experience_points FROM tasker_stats WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return int(row["experience_points"]) if row is not None else 0

    @staticmethod
    def _award_completion(conn: sqlite3.Connection, user_id: str, settled_at: str) -> None:
        conn.execute(
            "INSERT INTO tasker_stats (user_id, completed_tasks, experience_points, updated_at) "
            "VALUES (?, 1, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET "
            "completed_tasks = completed_tasks + 1, "
            "experience_points = experience_points + excluded.experience_points, "
            "updated_at = excluded.updated_at",
            (user_id, TASK_COMPLETED_POINTS, settled_at),
        )

    def settle(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Pay the tasker for a task awaiting payment.

        Returns the completed task and the settlement record.

        Raises:
            ServiceError: TASK_NOT_FOUND, UNAUTHORIZED, INVALID_STATE
                (including a task that is already completed), NO_ACCEPTED_BID,
                INSUFFICIENT_BALANCE.
        """
        with self._database.transaction() as conn:
            task = self._store.get_task(conn, task_id)
            if task is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
            if actor.user_id != task["client_id"]:
                raise ServiceError(
                    "UNAUTHORIZED",
                    "Only the task's client can pay for it",
                    403,
                    {"task_id": task_id},
                )
            if task["status"] != TaskStatus.AWAITING_PAYMENT:
                raise ServiceError(
                    "INVALID_STATE",
                    "Task is not awaiting payment",
                    409,
                    {"task_id": task_id, "status": task["status"]},
                )

            bid = self._store.get_accepted_bid(conn, task_id)
            if bid is None:
                raise ServiceError(
                    "NO_ACCEPTED_BID",
                    "Task has no accepted bid",
                    409,
                    {"task_id": task_id},
                )

            tasker_id = bid["tasker_id"]
            level = calculate_level(self._experience_points(conn, tasker_id))
            fee_rate = commission_rate(level)
            fee, payout = split_payment(bid["amount"], fee_rate)

            self._ledger.debit(
                task["client_id"],
                bid["amount"],
                task_id,
                f"Payment for {task['title']}",
                conn=conn,
            )
            self._ledger.credit(
                tasker_id,
                payout,
                task_id,
                f"Earnings for {task['title']}",
                conn=conn,
            )

            completed_task = self._state_machine.transition(conn, task, TaskEvent.SETTLE, actor)

            settled_at = now_iso()
            self._award_completion(conn, tasker_id, settled_at)
            conn.execute(
                "INSERT INTO settlements (task_id, bid_id, client_id, tasker_id, amount, "
                "tasker_level, fee_rate, fee, payout, settled_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    bid["bid_id"],
                    task["client_id"],
                    tasker_id,
                    to_cents(bid["amount"]),
                    str(level),
                    str(fee_rate),
                    to_cents(fee),
                    to_cents(payout),
                    settled_at,
                ),
            )

            EventOutbox.record(
                conn,
                EventType.TASK_COMPLETED,
                {
                    "taskId": task_id,
                    "clientId": task["client_id"],
                    "taskerId": tasker_id,
                    "payout": format_amount(payout),
                },
            )

        settlement = {
            "task_id": task_id,
            "bid_id": bid["bid_id"],
            "client_id": task["client_id"],
            "tasker_id": tasker_id,
            "amount": bid["amount"],
            "tasker_level": str(level),
            "fee_rate": fee_rate,
            "fee": fee,
            "payout": payout,
            "settled_at": settled_at,
        }
        self._logger.info(
            "Task settled",
            extra={
                "task_id": task_id,
                "client_id": task["client_id"],
                "tasker_id": tasker_id,
                "amount": format_amount(bid["amount"]),
                "fee": format_amount(fee),
                "tasker_level": str(level),
            },
        )
        return {"task": completed_task, "settlement": settlement}

    def get_settlement(self, task_id: str) -> dict[str, Any] | None:
        """The settlement record of a task, if it was settled."""
        with self._database.read() as conn:
            row = conn.execute(
                "SELECT task_id, bid_id, client_id, tasker_id, amount, tasker_level, "
                "fee_rate, fee, payout, settled_at FROM settlements WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "task_id": row["task_id"],
            "bid_id": row["bid_id"],
            "client_id": row["client_id"],
            "tasker_id": row["tasker_id"],
            "amount": from_cents(int(row["amount"])),
            "tasker_level": row["tasker_level"],
            "fee_rate": Decimal(row["fee_rate"]),
            "fee": from_cents(int(row["fee"])),
            "payout": from_cents(int(row["payout"])),
            "settled_at": row["settled_at"],
        }

    def get_tasker_stats(self, user_id: str) -> dict[str, Any] | None:
        """Completed task count and experience points of a tasker."""
        with self._database.read() as conn:
            row = conn.execute(
                "SELECT user_id, completed_tasks, experience_points, updated_at "
                "FROM tasker_stats WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "completed_tasks": int(row["completed_tasks"]),
            "experience_points": int(row["experience_points"]),
            "updated_at": row["updated_at"],
        }
