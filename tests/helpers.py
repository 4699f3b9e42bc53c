"""Shared test helpers."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from task_market_service.services.bid_arbiter import BidArbiter
from task_market_service.services.database import Database, now_iso
from task_market_service.services.ledger import Ledger
from task_market_service.services.settlement import SettlementCoordinator
from task_market_service.services.task_state_machine import Actor, TaskEvent, TaskStateMachine
from task_market_service.services.task_store import TaskStore


def make_task_row(
    client_id: str = "u-client",
    budget: Decimal = Decimal("100.00"),
    category: str = "Cleaning",
) -> dict[str, Any]:
    """A task row as TaskStore.insert_task expects it."""
    timestamp = now_iso()
    return {
        "task_id": f"t-{uuid.uuid4()}",
        "client_id": client_id,
        "tasker_id": None,
        "title": "Deep clean two-bedroom flat",
        "description": "Kitchen, bathroom and floors",
        "category": category,
        "budget": budget,
        "status": "open",
        "created_at": timestamp,
        "updated_at": timestamp,
        "assigned_at": None,
        "completion_requested_at": None,
        "completed_at": None,
        "cancelled_at": None,
    }


class Engine:
    """All engine components wired to one database file."""

    def __init__(self, db_path: str) -> None:
        self.database = Database(db_path=db_path, timeout_seconds=10)
        self.store = TaskStore()
        self.ledger = Ledger(self.database)
        self.state_machine = TaskStateMachine(self.store)
        self.arbiter = BidArbiter(self.database, self.store, self.state_machine)
        self.settlement = SettlementCoordinator(
            self.database, self.store, self.ledger, self.state_machine
        )

    def create_task(self, client_id: str = "u-client", budget: str = "100.00") -> str:
        row = make_task_row(client_id=client_id, budget=Decimal(budget))
        with self.database.transaction() as conn:
            self.store.insert_task(conn, row)
        return str(row["task_id"])

    def get_task(self, task_id: str) -> dict[str, Any]:
        with self.database.read() as conn:
            task = self.store.get_task(conn, task_id)
        assert task is not None
        return task

    def fund(self, user_id: str, amount: str) -> None:
        self.ledger.deposit(user_id, Decimal(amount), reference=f"fund-{uuid.uuid4()}")

    def task_awaiting_payment(
        self,
        client_id: str = "u-client",
        tasker_id: str = "u-tasker",
        amount: str = "100.00",
    ) -> str:
        """Drive a fresh task through bid, acceptance and completion request."""
        task_id = self.create_task(client_id=client_id, budget=amount)
        bid = self.arbiter.submit_bid(task_id, tasker_id, Decimal(amount))
        self.arbiter.accept_bid(bid["bid_id"], Actor(client_id))
        with self.database.transaction() as conn:
            task = self.store.get_task(conn, task_id)
            assert task is not None
            self.state_machine.transition(
                conn, task, TaskEvent.REQUEST_COMPLETION, Actor(tasker_id)
            )
        return task_id

    def outbox_events(self) -> list[dict[str, Any]]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT event_id, event_type, payload, delivered_at, attempts "
                "FROM event_outbox ORDER BY seq"
            ).fetchall()
        return [dict(row) for row in rows]


def write_config(
    path: Any,
    db_path: str,
    *,
    admin_ids: list[str] | None = None,
    webhook_url: str | None = None,
    max_body_size: int = 10240,
) -> None:
    """Write a complete service config YAML file."""
    admins = admin_ids if admin_ids is not None else ["u-platform"]
    admin_lines = "\n".join(f'    - "{admin}"' for admin in admins) or "    []"
    webhook = f'"{webhook_url}"' if webhook_url is not None else "null"
    path.write_text(
        f"""
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "127.0.0.1"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: null
database:
  path: "{db_path}"
  timeout_seconds: 5
platform:
  admin_ids:
{admin_lines}
notifier:
  webhook_url: {webhook}
  timeout_seconds: 2
  batch_size: 50
  retention_days: 7
request:
  max_body_size: {max_body_size}
"""
    )
