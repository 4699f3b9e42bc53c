"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

from starlette.concurrency import run_in_threadpool

from task_market_service.config import get_safe_config, get_settings
from task_market_service.core.state import init_app_state
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.bid_arbiter import BidArbiter
from task_market_service.services.database import Database
from task_market_service.services.event_outbox import EventOutbox
from task_market_service.services.ledger import Ledger
from task_market_service.services.notifier import (
    EventDispatcher,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)
from task_market_service.services.settlement import SettlementCoordinator
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.task_state_machine import TaskStateMachine
from task_market_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    database = Database(
        db_path=settings.database.path,
        timeout_seconds=settings.database.timeout_seconds,
    )
    store = TaskStore()
    ledger = Ledger(database)
    state_machine = TaskStateMachine(store)
    bid_arbiter = BidArbiter(database, store, state_machine)
    settlement = SettlementCoordinator(database, store, ledger, state_machine)

    # Without a webhook, events are only written to the log
    notifier: Notifier
    if settings.notifier.webhook_url:
        notifier = WebhookNotifier(
            webhook_url=settings.notifier.webhook_url,
            timeout_seconds=settings.notifier.timeout_seconds,
        )
    else:
        notifier = LoggingNotifier()
    outbox = EventOutbox(database)
    dispatcher = EventDispatcher(
        outbox=outbox,
        notifier=notifier,
        batch_size=settings.notifier.batch_size,
        retention=timedelta(days=settings.notifier.retention_days),
    )

    task_manager = TaskManager(
        database=database,
        store=store,
        ledger=ledger,
        state_machine=state_machine,
        bid_arbiter=bid_arbiter,
        settlement=settlement,
        dispatcher=dispatcher,
        admin_ids=settings.platform.admin_ids,
    )
    state.task_manager = task_manager

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "notifier": type(notifier).__name__,
            "admin_count": len(settings.platform.admin_ids),
        },
    )

    logger.debug("Effective configuration", extra={"config": get_safe_config()})

    # Retry events left undelivered by a previous run; also purges old delivered ones
    delivered = await task_manager.dispatch_events()
    if delivered > 0:
        logger.info("Delivered pending events", extra={"count": delivered})
    remaining = await run_in_threadpool(outbox.count_pending)
    if remaining > 0:
        logger.warning("Events still pending delivery", extra={"count": remaining})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await task_manager.close()
