"""Domain event delivery: notifier implementations and the outbox dispatcher."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
from starlette.concurrency import run_in_threadpool

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from task_market_service.services.event_outbox import EventOutbox

_PURGE_INTERVAL = timedelta(hours=1)


class Notifier:
    """Receives domain events and fans them out to interested parties."""

    async def send(self, event: dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Notifier used when no webhook is configured: events only go to the log."""

    def __init__(self) -> None:
        self._logger = get_logger(__name__)

    async def send(self, event: dict[str, Any]) -> None:
        self._logger.info(
            "Domain event",
            extra={"event_id": event["event_id"], "event_type": event["event_type"]},
        )


class WebhookNotifier(Notifier):
    """
    POSTs each event as JSON to a webhook.

    Consumers deduplicate on ``eventId``; the same event may arrive more
    than once after a failed delivery is retried.
    """

    def __init__(self, webhook_url: str, timeout_seconds: float) -> None:
        self._webhook_url = webhook_url
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._logger = get_logger(__name__)

    async def send(self, event: dict[str, Any]) -> None:
        """
        Deliver one event.

        Raises:
            ServiceError: UNAVAILABLE on connection errors, timeouts, or a
                non-2xx response.
        """
        body = {
            "eventId": event["event_id"],
            "type": event["event_type"],
            "occurredAt": event["created_at"],
            "data": event["payload"],
        }
        try:
            response = await self._client.post(self._webhook_url, json=body)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ServiceError(
                "UNAVAILABLE",
                "Notifier webhook is unreachable",
                503,
                {"event_id": event["event_id"]},
            ) from exc

        if response.status_code >= 300:
            raise ServiceError(
                "UNAVAILABLE",
                f"Notifier webhook returned {response.status_code}",
                503,
                {"event_id": event["event_id"], "status_code": response.status_code},
            )

    async def close(self) -> None:
        await self._client.aclose()


class EventDispatcher:
    """
    Delivers pending outbox events through the notifier.

    Runs after the engine transaction has committed, one dispatch at a
    time so concurrent callers never send the same event twice. A delivery
    failure is logged and the event stays pending for the next dispatch, so
    engine callers never see notifier errors.
    """

    def __init__(
        self,
        outbox: EventOutbox,
        notifier: Notifier,
        batch_size: int,
        retention: timedelta | None = None,
    ) -> None:
        self._outbox = outbox
        self._notifier = notifier
        self._batch_size = batch_size
        self._retention = retention
        self._last_purge: datetime | None = None
        self._lock = asyncio.Lock()
        self._logger = get_logger(__name__)

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    async def dispatch_pending(self) -> int:
        """
        Attempt delivery of up to one batch of pending events, oldest first.

        Stops at the first failure so events keep their order. Returns the
        number delivered.
        """
        async with self._lock:
            if self._purge_due():
                await self._purge()
            events = await run_in_threadpool(self._outbox.pending, self._batch_size)
            delivered = 0
            for event in events:
                error = await self._deliver(event)
                if error is not None:
                    self._logger.warning(
                        "Event delivery failed, will retry",
                        extra={
                            "event_id": event["event_id"],
                            "event_type": event["event_type"],
                            "attempts": event["attempts"] + 1,
                            "error": error,
                        },
                    )
                    await run_in_threadpool(self._outbox.mark_failed, event["event_id"], error)
                    break
                await run_in_threadpool(self._outbox.mark_delivered, event["event_id"])
                delivered += 1
        return delivered

    async def purge_delivered(self) -> int:
        """Drop delivered events older than the retention period. Returns the count."""
        async with self._lock:
            return await self._purge()

    def _purge_due(self) -> bool:
        if self._retention is None:
            return False
        if self._last_purge is None:
            return True
        return datetime.now(UTC) - self._last_purge >= _PURGE_INTERVAL

    async def _purge(self) -> int:
        if self._retention is None:
            return 0
        purged = await run_in_threadpool(self._outbox.purge_delivered, self._retention)
        self._last_purge = datetime.now(UTC)
        if purged > 0:
            self._logger.info("Purged delivered events", extra={"count": purged})
        return purged

    async def _deliver(self, event: dict[str, Any]) -> str | None:
        """Send one event. Returns the failure reason, or None on success."""
        try:
            await self._notifier.send(event)
        except ServiceError as exc:
            return exc.message
        except Exception as exc:
            self._logger.exception(
                "Notifier raised an unexpected error",
                extra={"event_id": event["event_id"]},
            )
            return str(exc) or type(exc).__name__
        return None
