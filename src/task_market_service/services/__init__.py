"""Service layer components."""

from task_market_service.services.bid_arbiter import BidArbiter
from task_market_service.services.database import Database
from task_market_service.services.ledger import Ledger
from task_market_service.services.notifier import EventDispatcher
from task_market_service.services.settlement import SettlementCoordinator
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.task_state_machine import TaskStateMachine
from task_market_service.services.task_store import TaskStore

__all__ = [
    "BidArbiter",
    "Database",
    "EventDispatcher",
    "Ledger",
    "SettlementCoordinator",
    "TaskManager",
    "TaskStateMachine",
    "TaskStore",
]
