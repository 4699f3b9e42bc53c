"""Ledger business logic: balances and the append-only transaction log."""

from __future__ import annotations

import uuid
from contextlib import nullcontext
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.database import now_iso
from task_market_service.services.money import (
    MAX_BALANCE,
    from_cents,
    parse_positive_amount,
    to_cents,
)

if TYPE_CHECKING:
    import sqlite3
    from contextlib import AbstractContextManager
    from decimal import Decimal

    from task_market_service.services.database import Database

_ENTRY_COLUMNS_SQL = (
    "entry_id, user_id, task_id, title, amount, direction, status, balance_after, "
    "reference, created_at"
)


class Ledger:
    """
    The only component that changes user balances.

    Every credit or debit appends exactly one ledger entry and moves the
    stored balance by the same amount inside one transaction. Callers that
    already hold a transaction (the settlement coordinator) pass their
    connection in so the ledger writes join their atomic unit; otherwise
    the ledger opens its own.
    """

    def __init__(self, database: Database) -> None:
        self._database = database
        self._logger = get_logger(__name__)

    def _scope(
        self,
        conn: sqlite3.Connection | None,
    ) -> AbstractContextManager[sqlite3.Connection]:
        if conn is not None:
            return nullcontext(conn)
        return self._database.transaction()

    @staticmethod
    def _new_entry_id() -> str:
        return f"tx-{uuid.uuid4()}"

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "entry_id": row["entry_id"],
            "user_id": row["user_id"],
            "task_id": row["task_id"],
            "title": row["title"],
            "amount": from_cents(int(row["amount"])),
            "direction": row["direction"],
            "status": row["status"],
            "balance_after": from_cents(int(row["balance_after"])),
            "reference": row["reference"],
            "created_at": row["created_at"],
        }

    def _append(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: str,
        amount: Decimal,
        direction: str,
        task_id: str | None,
        title: str,
        reference: str | None,
    ) -> dict[str, Any]:
        """
        Append one entry and move the balance. Must run inside a transaction.

        The entry is written before the balance so the accounts trigger can
        check the new balance against it.
        """
        now = now_iso()
        conn.execute(
            "INSERT OR IGNORE INTO accounts (user_id, balance, created_at) VALUES (?, 0, ?)",
            (user_id, now),
        )
        row = conn.execute(
            "SELECT balance FROM accounts WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        balance_cents = int(row["balance"])
        amount_cents = to_cents(amount)

        if direction == "debit":
            new_balance_cents = balance_cents - amount_cents
            if new_balance_cents < 0:
                raise ServiceError(
                    "INSUFFICIENT_BALANCE",
                    "Balance is too low for this debit",
                    402,
                    {
                        "user_id": user_id,
                        "balance": str(from_cents(balance_cents)),
                        "amount": str(amount),
                    },
                )
        else:
            new_balance_cents = balance_cents + amount_cents
            if new_balance_cents > to_cents(MAX_BALANCE):
                raise ServiceError(
                    "INVALID_AMOUNT",
                    "Credit would take the balance above the maximum",
                    400,
                    {
                        "user_id": user_id,
                        "balance": str(from_cents(balance_cents)),
                        "amount": str(amount),
                        "max_balance": str(MAX_BALANCE),
                    },
                )

        entry_id = self._new_entry_id()
        conn.execute(
            f"INSERT INTO ledger_entries ({_ENTRY_COLUMNS_SQL}) "  # nosec B608
            "VALUES (?, ?, ?, ?, ?, ?, 'completed', ?, ?, ?)",
            (
                entry_id,
                user_id,
                task_id,
                title,
                amount_cents,
                direction,
                new_balance_cents,
                reference,
                now,
            ),
        )
        conn.execute(
            "UPDATE accounts SET balance = ? WHERE user_id = ?",
            (new_balance_cents, user_id),
        )

        return {
            "entry_id": entry_id,
            "user_id": user_id,
            "task_id": task_id,
            "title": title,
            "amount": amount,
            "direction": direction,
            "status": "completed",
            "balance_after": from_cents(new_balance_cents),
            "reference": reference,
            "created_at": now,
        }

    def credit(
        self,
        user_id: str,
        amount: Decimal,
        task_id: str | None,
        title: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any]:
        """
        Add funds to a user's balance.

        Raises:
            ServiceError: INVALID_AMOUNT if amount is not positive.
        """
        amount = parse_positive_amount(amount)
        with self._scope(conn) as scoped:
            return self._append(
                scoped,
                user_id=user_id,
                amount=amount,
                direction="credit",
                task_id=task_id,
                title=title,
                reference=None,
            )

    def debit(
        self,
        user_id: str,
        amount: Decimal,
        task_id: str | None,
        title: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any]:
        """
        Remove funds from a user's balance.

        The balance check and the write happen under the same write lock, so
        concurrent debits can never both pass against a stale balance.

        Raises:
            ServiceError: INVALID_AMOUNT, INSUFFICIENT_BALANCE.
        """
        amount = parse_positive_amount(amount)
        with self._scope(conn) as scoped:
            return self._append(
                scoped,
                user_id=user_id,
                amount=amount,
                direction="debit",
                task_id=task_id,
                title=title,
                reference=None,
            )

    def deposit(
        self,
        user_id: str,
        amount: Decimal,
        reference: str,
        title: str = "Balance top-up",
    ) -> dict[str, Any]:
        """
        Credit a user after an external charge, idempotent by reference.

        Replaying the same (user_id, reference, amount) returns the original
        entry with ``replayed`` set and writes nothing.

        Raises:
            ServiceError: INVALID_AMOUNT, PAYLOAD_MISMATCH when the reference
                was already used with a different amount.
        """
        amount = parse_positive_amount(amount)
        if not reference:
            raise ServiceError("INVALID_PAYLOAD", "reference must not be empty", 400, {})

        with self._database.transaction() as conn:
            existing = conn.execute(
                f"SELECT {_ENTRY_COLUMNS_SQL} FROM ledger_entries "  # nosec B608
                "WHERE user_id = ? AND reference = ?",
                (user_id, reference),
            ).fetchone()
            if existing is not None:
                entry = self._row_to_entry(existing)
                if entry["amount"] != amount:
                    raise ServiceError(
                        "PAYLOAD_MISMATCH",
                        "Deposit reference already used with a different amount",
                        409,
                        {"reference": reference},
                    )
                entry["replayed"] = True
                return entry

            entry = self._append(
                conn,
                user_id=user_id,
                amount=amount,
                direction="credit",
                task_id=None,
                title=title,
                reference=reference,
            )

        self._logger.info(
            "Deposit recorded",
            extra={"user_id": user_id, "entry_id": entry["entry_id"], "amount": str(amount)},
        )
        entry["replayed"] = False
        return entry

    def get_account(self, user_id: str) -> dict[str, Any] | None:
        """Look up an account. Returns None if the user never held a balance."""
        with self._database.read() as conn:
            row = conn.execute(
                "SELECT user_id, balance, created_at FROM accounts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "balance": from_cents(int(row["balance"])),
            "created_at": row["created_at"],
        }

    def get_balance(self, user_id: str) -> Decimal:
        """Stored balance; users without an account hold zero."""
        account = self.get_account(user_id)
        if account is None:
            return from_cents(0)
        balance: Decimal = account["balance"]
        return balance

    def get_transactions(
        self,
        user_id: str,
        task_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Ledger entries for a user, oldest first, optionally for one task."""
        query = f"SELECT {_ENTRY_COLUMNS_SQL} FROM ledger_entries WHERE user_id = ?"  # nosec B608
        params: list[object] = [user_id]
        if task_id is not None:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY seq"

        with self._database.read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_task_entries(self, task_id: str) -> list[dict[str, Any]]:
        """All ledger entries tagged with a task, across users."""
        with self._database.read() as conn:
            rows = conn.execute(
                f"SELECT {_ENTRY_COLUMNS_SQL} FROM ledger_entries "  # nosec B608
                "WHERE task_id = ? ORDER BY seq",
                (task_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def reconcile(self, user_id: str) -> dict[str, Any]:
        """Compare the stored balance with the sum of the user's ledger entries."""
        with self._database.read() as conn:
            account = conn.execute(
                "SELECT balance FROM accounts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            totals = conn.execute(
                "SELECT "
                "COALESCE(SUM(CASE WHEN direction = 'credit' THEN amount ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN direction = 'debit' THEN amount ELSE 0 END), 0), "
                "COUNT(*) "
                "FROM ledger_entries WHERE user_id = ? AND status = 'completed'",
                (user_id,),
            ).fetchone()

        stored_cents = int(account["balance"]) if account is not None else 0
        ledger_cents = int(totals[0]) - int(totals[1])
        return {
            "user_id": user_id,
            "stored_balance": from_cents(stored_cents),
            "ledger_balance": from_cents(ledger_cents),
            "entry_count": int(totals[2]),
            "consistent": stored_cents == ledger_cents,
        }
