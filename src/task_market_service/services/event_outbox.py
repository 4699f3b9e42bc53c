"""Durable domain event outbox."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from task_market_service.services.database import now_iso

if TYPE_CHECKING:
    import sqlite3
    from datetime import timedelta

    from task_market_service.services.database import Database


class EventType(StrEnum):
    BID_PLACED = "BidPlaced"
    BID_ACCEPTED = "BidAccepted"
    BID_REJECTED = "BidRejected"
    COMPLETION_REQUESTED = "CompletionRequested"
    TASK_COMPLETED = "TaskCompleted"
    TASK_CANCELLED = "TaskCancelled"


class EventOutbox:
    """
    Outbox table access.

    Events are recorded on the caller's connection so they commit or roll
    back together with the state change they describe. Delivery happens
    later, outside any engine transaction.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    @staticmethod
    def record(
        conn: sqlite3.Connection,
        event_type: EventType,
        payload: dict[str, Any],
    ) -> str:
        """Add an event inside the caller's transaction. Returns its event_id."""
        event_id = f"evt-{uuid.uuid4()}"
        conn.execute(
            "INSERT INTO event_outbox (event_id, event_type, payload, created_at) "
            "VALUES (?, ?, ?, ?)",
            (event_id, str(event_type), json.dumps(payload, sort_keys=True), now_iso()),
        )
        return event_id

    def pending(self, limit: int) -> list[dict[str, Any]]:
        """Undelivered events, oldest first."""
        with self._database.read() as conn:
            rows = conn.execute(
                "SELECT event_id, event_type, payload, created_at, attempts "
                "FROM event_outbox WHERE delivered_at IS NULL ORDER BY seq LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "event_id": row["event_id"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload"]),
                "created_at": row["created_at"],
                "attempts": int(row["attempts"]),
            }
            for row in rows
        ]

    def mark_delivered(self, event_id: str) -> None:
        with self._database.transaction() as conn:
            conn.execute(
                "UPDATE event_outbox SET delivered_at = ?, attempts = attempts + 1 "
                "WHERE event_id = ? AND delivered_at IS NULL",
                (now_iso(), event_id),
            )

    def mark_failed(self, event_id: str, error: str) -> None:
        with self._database.transaction() as conn:
            conn.execute(
                "UPDATE event_outbox SET attempts = attempts + 1, last_error = ? "
                "WHERE event_id = ? AND delivered_at IS NULL",
                (error, event_id),
            )

    def count_pending(self) -> int:
        with self._database.read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM event_outbox WHERE delivered_at IS NULL"
            ).fetchone()
        return int(row[0])

    def purge_delivered(self, older_than: timedelta) -> int:
        """
        Delete events delivered more than ``older_than`` ago.

        Undelivered events are never removed, however old. Returns the
        number of rows deleted.
        """
        cutoff = datetime.now(UTC) - older_than
        cutoff_iso = cutoff.isoformat(timespec="microseconds").replace("+00:00", "Z")
        with self._database.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM event_outbox WHERE delivered_at IS NOT NULL AND delivered_at < ?",
                (cutoff_iso,),
            )
        return int(cursor.rowcount)
