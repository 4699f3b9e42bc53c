"""SQLite connection management, schema, and transaction scope."""

from __future__ import annotations

import contextlib
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    tasker_id TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT NOT NULL,
    budget INTEGER NOT NULL CHECK (budget > 0),
    status TEXT NOT NULL DEFAULT 'open'
        CHECK (status IN ('open', 'assigned', 'in_progress', 'completed', 'cancelled')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    assigned_at TEXT,
    completion_requested_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT,
    CHECK ((status IN ('assigned', 'in_progress', 'completed')) = (tasker_id IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS ix_tasks_client ON tasks(client_id);
CREATE INDEX IF NOT EXISTS ix_tasks_tasker ON tasks(tasker_id);
CREATE INDEX IF NOT EXISTS ix_tasks_status ON tasks(status);

CREATE TRIGGER IF NOT EXISTS trg_tasks_budget_frozen
BEFORE UPDATE OF budget ON tasks
WHEN OLD.status != 'open' AND NEW.budget != OLD.budget
BEGIN
    SELECT RAISE(ABORT, 'task budget is immutable once the task leaves open');
END;

CREATE TRIGGER IF NOT EXISTS trg_tasks_no_delete
BEFORE DELETE ON tasks
BEGIN
    SELECT RAISE(ABORT, 'tasks are never deleted');
END;

CREATE TABLE IF NOT EXISTS bids (
    bid_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    tasker_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    message TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'accepted', 'rejected')),
    created_at TEXT NOT NULL,
    decided_at TEXT,
    UNIQUE (task_id, tasker_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_bids_one_accepted
    ON bids(task_id)
    WHERE status = 'accepted';

CREATE TRIGGER IF NOT EXISTS trg_bids_decided_immutable
BEFORE UPDATE ON bids
WHEN OLD.status != 'pending'
BEGIN
    SELECT RAISE(ABORT, 'bids are immutable once accepted or rejected');
END;

CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL REFERENCES accounts(user_id),
    task_id TEXT REFERENCES tasks(task_id),
    title TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    direction TEXT NOT NULL CHECK (direction IN ('credit', 'debit')),
    status TEXT NOT NULL DEFAULT 'completed' CHECK (status IN ('completed', 'pending')),
    balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
    reference TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_ledger_user ON ledger_entries(user_id, seq);
CREATE INDEX IF NOT EXISTS ix_ledger_task ON ledger_entries(task_id);

CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_reference
    ON ledger_entries(user_id, reference)
    WHERE reference IS NOT NULL;

CREATE TRIGGER IF NOT EXISTS trg_ledger_no_update
BEFORE UPDATE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_ledger_no_delete
BEFORE DELETE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_accounts_open_empty
BEFORE INSERT ON accounts
WHEN NEW.balance != 0
BEGIN
    SELECT RAISE(ABORT, 'accounts open with a zero balance');
END;

CREATE TRIGGER IF NOT EXISTS trg_accounts_balance_matches_ledger
BEFORE UPDATE OF balance ON accounts
WHEN NEW.balance != COALESCE(
    (SELECT balance_after FROM ledger_entries
     WHERE user_id = NEW.user_id ORDER BY seq DESC LIMIT 1),
    0
)
BEGIN
    SELECT RAISE(ABORT, 'balance changes must follow a ledger entry');
END;

CREATE TABLE IF NOT EXISTS tasker_stats (
    user_id TEXT PRIMARY KEY,
    completed_tasks INTEGER NOT NULL DEFAULT 0 CHECK (completed_tasks >= 0),
    experience_points INTEGER NOT NULL DEFAULT 0 CHECK (experience_points >= 0),
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settlements (
    task_id TEXT PRIMARY KEY REFERENCES tasks(task_id),
    bid_id TEXT NOT NULL REFERENCES bids(bid_id),
    client_id TEXT NOT NULL,
    tasker_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    tasker_level TEXT NOT NULL,
    fee_rate TEXT NOT NULL,
    fee INTEGER NOT NULL CHECK (fee >= 0),
    payout INTEGER NOT NULL CHECK (payout >= 0),
    settled_at TEXT NOT NULL,
    CHECK (amount = fee + payout)
);

CREATE TABLE IF NOT EXISTS event_outbox (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    delivered_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_outbox_pending
    ON event_outbox(seq)
    WHERE delivered_at IS NULL;

CREATE INDEX IF NOT EXISTS ix_outbox_delivered
    ON event_outbox(delivered_at)
    WHERE delivered_at IS NOT NULL;
"""

_LOCK_MESSAGES = ("database is locked", "database table is locked", "database is busy")
_UNAVAILABLE_MESSAGES = ("unable to open database", "disk i/o error", "readonly database")


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _translate_operational_error(exc: sqlite3.OperationalError) -> ServiceError | None:
    message = str(exc).lower()
    if any(fragment in message for fragment in _LOCK_MESSAGES):
        return ServiceError(
            "TIMEOUT",
            "Timed out waiting for a database lock",
            503,
            {},
        )
    if any(fragment in message for fragment in _UNAVAILABLE_MESSAGES):
        return ServiceError("UNAVAILABLE", "Database is unavailable", 503, {})
    return None


class Database:
    """
    SQLite database shared by every engine component.

    Each unit of work opens its own connection, so concurrent requests
    (threads or processes) are serialized by SQLite's write lock rather than
    by anything held in memory. Write transactions start with
    ``BEGIN IMMEDIATE``: the write lock is taken before the first read, so
    precondition checks always see the latest committed state.
    """

    def __init__(self, db_path: str, timeout_seconds: float) -> None:
        self._db_path = db_path
        self._timeout_seconds = timeout_seconds
        self._logger = get_logger(__name__)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self._db_path,
                timeout=self._timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.OperationalError as exc:
            translated = _translate_operational_error(exc)
            if translated is not None:
                raise translated from exc
            raise
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        """Create tables, indexes, and guard triggers if they don't exist."""
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block as one all-or-nothing write transaction.

        Commits when the block exits normally; rolls back on any exception.
        Lock waits longer than the configured timeout raise a retryable
        TIMEOUT ServiceError with nothing written.
        """
        conn = self._connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._rollback(conn)
                translated = _translate_operational_error(exc)
                if translated is not None:
                    self._logger.warning(
                        "Database transaction aborted",
                        extra={"error_code": translated.error, "reason": str(exc)},
                    )
                    raise translated from exc
                raise
            except BaseException:
                self._rollback(conn)
                raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for read-only queries."""
        conn = self._connect()
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            translated = _translate_operational_error(exc)
            if translated is not None:
                raise translated from exc
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
