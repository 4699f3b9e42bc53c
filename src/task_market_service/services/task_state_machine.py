"""Task status enum and the single writer of task status."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.database import now_iso

if TYPE_CHECKING:
    import sqlite3

    from task_market_service.services.task_store import TaskStore


class TaskStatus(StrEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    # Persisted as "in_progress": the tasker claims the work is done and
    # the task is awaiting payment.
    AWAITING_PAYMENT = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class TaskEvent(StrEnum):
    ACCEPT_BID = "accept_bid"
    CANCEL = "cancel"
    REQUEST_COMPLETION = "request_completion"
    SETTLE = "settle"


class Role(StrEnum):
    CLIENT = "client"
    TASKER = "tasker"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""

    user_id: str
    is_admin: bool = False


@dataclass(frozen=True)
class _Rule:
    target: TaskStatus
    roles: frozenset[Role]
    timestamp_column: str


_CLIENT = frozenset({Role.CLIENT})
_TASKER = frozenset({Role.TASKER})
_ADMIN = frozenset({Role.ADMIN})

_TRANSITIONS: dict[tuple[TaskEvent, TaskStatus], _Rule] = {
    (TaskEvent.ACCEPT_BID, TaskStatus.OPEN): _Rule(TaskStatus.ASSIGNED, _CLIENT, "assigned_at"),
    (TaskEvent.CANCEL, TaskStatus.OPEN): _Rule(
        TaskStatus.CANCELLED, frozenset({Role.CLIENT, Role.ADMIN}), "cancelled_at"
    ),
    (TaskEvent.REQUEST_COMPLETION, TaskStatus.ASSIGNED): _Rule(
        TaskStatus.AWAITING_PAYMENT, _TASKER, "completion_requested_at"
    ),
    (TaskEvent.SETTLE, TaskStatus.AWAITING_PAYMENT): _Rule(
        TaskStatus.COMPLETED, _CLIENT, "completed_at"
    ),
    # Administrative override, e.g. after a dispute.
    (TaskEvent.CANCEL, TaskStatus.ASSIGNED): _Rule(TaskStatus.CANCELLED, _ADMIN, "cancelled_at"),
    (TaskEvent.CANCEL, TaskStatus.AWAITING_PAYMENT): _Rule(
        TaskStatus.CANCELLED, _ADMIN, "cancelled_at"
    ),
}


def allowed_events(status: str) -> list[TaskEvent]:
    """Events that have a transition out of ``status``."""
    return [event for (event, source) in _TRANSITIONS if source == status]


class TaskStateMachine:
    """
    Validates and applies task status transitions.

    ``transition`` performs no ledger or bid writes; the only side effect is
    the compare-and-swap of the task row on the caller's connection, so it
    joins whatever transaction the caller holds.
    """

    def __init__(self, store: TaskStore) -> None:
        self._store = store

    @staticmethod
    def _holds_role(task: dict[str, Any], actor: Actor, role: Role) -> bool:
        if role == Role.CLIENT:
            return actor.user_id == task["client_id"]
        if role == Role.TASKER:
            return task["tasker_id"] is not None and actor.user_id == task["tasker_id"]
        return actor.is_admin

    def transition(
        self,
        conn: sqlite3.Connection,
        task: dict[str, Any],
        event: TaskEvent,
        actor: Actor,
        *,
        tasker_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Move ``task`` to the status ``event`` leads to and return the new row.

        ``tasker_id`` is required for ACCEPT_BID and ignored otherwise.

        Raises:
            ServiceError: INVALID_TRANSITION if the current status does not
                permit ``event``; UNAUTHORIZED if the actor does not hold a
                role the transition requires; CONFLICT if the row changed
                status underneath the caller.
        """
        current = TaskStatus(task["status"])
        rule = _TRANSITIONS.get((event, current))
        if rule is None:
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot {event} a task that is {current}",
                409,
                {"task_id": task["task_id"], "status": str(current), "event": str(event)},
            )

        if not any(self._holds_role(task, actor, role) for role in rule.roles):
            raise ServiceError(
                "UNAUTHORIZED",
                f"Only the task's {' or '.join(sorted(rule.roles))} may {event} it",
                403,
                {"task_id": task["task_id"], "event": str(event)},
            )

        if event == TaskEvent.ACCEPT_BID:
            if tasker_id is None:
                msg = "tasker_id is required when accepting a bid"
                raise ValueError(msg)
            new_tasker_id: str | None = tasker_id
        elif rule.target == TaskStatus.CANCELLED:
            new_tasker_id = None
        else:
            new_tasker_id = task["tasker_id"]

        timestamp = now_iso()
        changed = self._store.write_status(
            conn,
            task["task_id"],
            expected_status=str(current),
            new_status=str(rule.target),
            tasker_id=new_tasker_id,
            timestamp_column=rule.timestamp_column,
            timestamp=timestamp,
        )
        if changed != 1:
            raise ServiceError(
                "CONFLICT",
                "Task status changed concurrently",
                409,
                {"task_id": task["task_id"], "expected_status": str(current)},
            )

        updated = dict(task)
        updated["status"] = str(rule.target)
        updated["tasker_id"] = new_tasker_id
        updated["updated_at"] = timestamp
        updated[rule.timestamp_column] = timestamp
        return updated
