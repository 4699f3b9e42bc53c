"""SQL access for tasks and bids."""

from __future__ import annotations

import sqlite3
from typing import Any

from task_market_service.services.money import from_cents, to_cents


class DuplicateBidError(Exception):
    """Raised when a tasker already has a bid on the task."""


class TaskStore:
    """
    Row-level queries for the ``tasks`` and ``bids`` tables.

    Every method takes the connection to run on; the caller decides the
    transaction scope. Status columns are written only by the task state
    machine and the bid arbiter.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "client_id",
        "tasker_id",
        "title",
        "description",
        "category",
        "budget",
        "status",
        "created_at",
        "updated_at",
        "assigned_at",
        "completion_requested_at",
        "completed_at",
        "cancelled_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _EDITABLE_COLUMNS = frozenset({"title", "description", "category", "budget"})
    _BID_COLUMNS_SQL = (
        "bid_id, task_id, tasker_id, amount, message, status, created_at, decided_at"
    )

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["budget"] = from_cents(int(row["budget"]))
        return task

    @staticmethod
    def _row_to_bid(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "bid_id": row["bid_id"],
            "task_id": row["task_id"],
            "tasker_id": row["tasker_id"],
            "amount": from_cents(int(row["amount"])),
            "message": row["message"],
            "status": row["status"],
            "created_at": row["created_at"],
            "decided_at": row["decided_at"],
        }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, conn: sqlite3.Connection, task: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = [task[column] for column in self._TASK_COLUMNS]
        values[self._TASK_COLUMNS.index("budget")] = to_cents(task["budget"])
        placeholders = ", ".join("?" for _ in self._TASK_COLUMNS)
        conn.execute(
            f"INSERT INTO tasks ({self._TASK_COLUMNS_SQL}) VALUES ({placeholders})",  # nosec B608
            values,
        )

    def get_task(self, conn: sqlite3.Connection, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        row = conn.execute(
            f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks WHERE task_id = ?",  # nosec B608
            (task_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_details(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        updates: dict[str, Any],
        updated_at: str,
    ) -> int:
        """Update editable task fields while the task is open. Returns affected rows."""
        if any(column not in self._EDITABLE_COLUMNS for column in updates):
            msg = "Attempted to update a non-editable task column"
            raise ValueError(msg)

        values = dict(updates)
        if "budget" in values:
            values["budget"] = to_cents(values["budget"])
        values["updated_at"] = updated_at

        set_clause = ", ".join(f"{column} = ?" for column in values)
        params: list[object] = [*values.values(), task_id]
        cursor = conn.execute(
            "UPDATE tasks SET " + set_clause + " WHERE task_id = ? AND status = 'open'",  # nosec B608
            params,
        )
        return int(cursor.rowcount)

    def write_status(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        *,
        expected_status: str,
        new_status: str,
        tasker_id: str | None,
        timestamp_column: str,
        timestamp: str,
    ) -> int:
        """
        Compare-and-swap the task status. Returns the number of rows changed.

        Zero means the status was not ``expected_status`` any more.
        """
        if timestamp_column not in self._TASK_COLUMNS or not timestamp_column.endswith("_at"):
            msg = f"Unknown timestamp column: {timestamp_column}"
            raise ValueError(msg)
        cursor = conn.execute(
            "UPDATE tasks SET status = ?, tasker_id = ?, updated_at = ?, "  # nosec B608
            f"{timestamp_column} = ? WHERE task_id = ? AND status = ?",
            (new_status, tasker_id, timestamp, timestamp, task_id, expected_status),
        )
        return int(cursor.rowcount)

    def list_tasks(
        self,
        conn: sqlite3.Connection,
        *,
        status: str | None,
        client_id: str | None,
        tasker_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = f"SELECT {self._TASK_COLUMNS_SQL} FROM tasks"  # nosec B608
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if client_id is not None:
            clauses.append("client_id = ?")
            params.append(client_id)
        if tasker_id is not None:
            clauses.append("tasker_id = ?")
            params.append(tasker_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, task_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks_by_status(self, conn: sqlite3.Connection) -> dict[str, int]:
        """Count tasks grouped by status."""
        rows = conn.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def insert_bid(self, conn: sqlite3.Connection, bid: dict[str, Any]) -> None:
        """
        Insert a pending bid.

        Raises:
            DuplicateBidError: the tasker already bid on this task.
        """
        try:
            conn.execute(
                f"INSERT INTO bids ({self._BID_COLUMNS_SQL}) "  # nosec B608
                "VALUES (?, ?, ?, ?, ?, 'pending', ?, NULL)",
                (
                    bid["bid_id"],
                    bid["task_id"],
                    bid["tasker_id"],
                    to_cents(bid["amount"]),
                    bid["message"],
                    bid["created_at"],
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateBidError("This tasker already bid on this task") from exc
            raise

    def get_bid(self, conn: sqlite3.Connection, bid_id: str) -> dict[str, Any] | None:
        """Fetch a bid by ID."""
        row = conn.execute(
            f"SELECT {self._BID_COLUMNS_SQL} FROM bids WHERE bid_id = ?",  # nosec B608
            (bid_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_bid(row)

    def find_bid(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        tasker_id: str,
    ) -> dict[str, Any] | None:
        """Fetch the bid a tasker placed on a task, if any."""
        row = conn.execute(
            f"SELECT {self._BID_COLUMNS_SQL} FROM bids "  # nosec B608
            "WHERE task_id = ? AND tasker_id = ?",
            (task_id, tasker_id),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_bid(row)

    def get_bids_for_task(self, conn: sqlite3.Connection, task_id: str) -> list[dict[str, Any]]:
        """Fetch all bids for a task in submission order."""
        rows = conn.execute(
            f"SELECT {self._BID_COLUMNS_SQL} FROM bids "  # nosec B608
            "WHERE task_id = ? ORDER BY created_at, bid_id",
            (task_id,),
        ).fetchall()
        return [self._row_to_bid(row) for row in rows]

    def get_accepted_bid(self, conn: sqlite3.Connection, task_id: str) -> dict[str, Any] | None:
        """The single accepted bid of a task, if any."""
        row = conn.execute(
            f"SELECT {self._BID_COLUMNS_SQL} FROM bids "  # nosec B608
            "WHERE task_id = ? AND status = 'accepted'",
            (task_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_bid(row)

    def decide_bids(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        accepted_bid_id: str | None,
        decided_at: str,
    ) -> tuple[int, list[str]]:
        """
        Resolve every pending bid of a task.

        The bid named by ``accepted_bid_id`` becomes accepted and all other
        pending bids become rejected. Returns (accepted_count, rejected_ids).
        """
        rejected_rows = conn.execute(
            "SELECT bid_id FROM bids WHERE task_id = ? AND status = 'pending' "
            "AND bid_id IS NOT ? ORDER BY created_at, bid_id",
            (task_id, accepted_bid_id),
        ).fetchall()
        rejected_ids = [str(row["bid_id"]) for row in rejected_rows]

        accepted = 0
        if accepted_bid_id is not None:
            cursor = conn.execute(
                "UPDATE bids SET status = 'accepted', decided_at = ? "
                "WHERE bid_id = ? AND task_id = ? AND status = 'pending'",
                (decided_at, accepted_bid_id, task_id),
            )
            accepted = int(cursor.rowcount)

        conn.execute(
            "UPDATE bids SET status = 'rejected', decided_at = ? "
            "WHERE task_id = ? AND status = 'pending' AND bid_id IS NOT ?",
            (decided_at, task_id, accepted_bid_id),
        )
        return accepted, rejected_ids
