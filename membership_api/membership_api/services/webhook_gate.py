"""Exactly-once application of inbound provider events.

Processing an event takes up to three short transactions:

1. record the first sighting (insert-if-absent on ``external_event_id``);
2. run the handler and stamp ``processed_at`` in one transaction, so the
   member change and the stamp commit or roll back together;
3. on failure, count the attempt in a fresh transaction.

A redelivery of a processed event finds the stamp in step 1 and returns
the stored outcome without touching members.  Two concurrent deliveries
may both run the handler, but only the one whose conditional stamp matches
commits; the other rolls back its member change.
"""

from __future__ import annotations

import logging
from typing import Any

from membership_core.config import Settings
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.models.webhook import InboundWebhookEvent, WebhookEventStatus
from membership_core.state.database import session_scope
from membership_core.state.repository import WebhookEventRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_api.services.alert_service import AlertService
from membership_api.services.webhook_processors import WebhookHandlers

logger = logging.getLogger(__name__)


class _DuplicateDelivery(Exception):
    """The processed stamp was taken by a concurrent delivery."""


class _HandlerFailed(Exception):
    def __init__(self, result: OperationResult) -> None:
        super().__init__(result.error.message if result.error else "handler failed")
        self.result = result


class WebhookIdempotencyGate:
    """Run provider events through their handlers at most once.

    Parameters
    ----------
    session_factory:
        Factory for the short per-step sessions.
    handlers:
        Event dispatcher.
    alerts:
        Used when an event exhausts its attempts.
    settings:
        Supplies ``webhook_max_attempts``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: WebhookHandlers,
        alerts: AlertService,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._handlers = handlers
        self._alerts = alerts
        self._max_attempts = settings.webhook_max_attempts

    async def process(self, event: InboundWebhookEvent) -> OperationResult:
        """Record *event* and apply it unless it was already applied."""
        async with session_scope(self._session_factory) as session:
            record = await WebhookEventRepository(session).record_sighting(
                event.external_event_id,
                event.event_type,
                event.payload,
            )
            event_id = record.id
            processed = record.processed_at is not None
            stored_outcome = record.outcome

        if processed:
            logger.info("Webhook %s already processed; ignoring redelivery", event.external_event_id)
            return OperationResult.ok({"duplicate": True, "outcome": stored_outcome})
        return await self._apply(event_id, event)

    async def reprocess(self, event_id: str) -> OperationResult:
        """Re-drive a stored, unprocessed event (used by the sweep job)."""
        async with session_scope(self._session_factory) as session:
            record = await WebhookEventRepository(session).get(event_id)
            if record is None:
                return OperationResult.fail(ErrorCode.INVALID_DATA, f"webhook event {event_id} not found")
            event = InboundWebhookEvent(
                external_event_id=record.external_event_id,
                event_type=record.event_type,
                payload=record.payload or {},
            )
            processed = record.processed_at is not None
            stored_outcome = record.outcome

        if processed:
            return OperationResult.ok({"duplicate": True, "outcome": stored_outcome})
        return await self._apply(event_id, event)

    async def _apply(self, event_id: str, event: InboundWebhookEvent) -> OperationResult:
        try:
            async with session_scope(self._session_factory) as session:
                result = await self._handlers.dispatch(session, event.event_type, event.payload)
                if not result.success:
                    raise _HandlerFailed(result)
                outcome = _as_outcome(result.data)
                stored = {key: value for key, value in outcome.items() if key != "notification"}
                if not await WebhookEventRepository(session).mark_processed(event_id, stored):
                    raise _DuplicateDelivery(event.external_event_id)
        except _DuplicateDelivery:
            logger.info("Webhook %s applied by a concurrent delivery; rolled back", event.external_event_id)
            return OperationResult.ok({"duplicate": True})
        except _HandlerFailed as exc:
            code = exc.result.error_code or ErrorCode.HANDLER_ERROR.value
            await self._record_failure(event_id, event, code, str(exc))
            return exc.result
        except Exception as exc:
            logger.error("Webhook %s handler raised: %s", event.external_event_id, exc, exc_info=True)
            await self._record_failure(event_id, event, ErrorCode.HANDLER_ERROR.value, str(exc))
            return OperationResult.fail(ErrorCode.HANDLER_ERROR, str(exc))

        logger.info("Webhook %s (%s) processed", event.external_event_id, event.event_type)
        await self._handlers.deliver_notification(outcome)
        return OperationResult.ok(stored)

    async def _record_failure(self, event_id: str, event: InboundWebhookEvent, code: str, message: str) -> None:
        error = f"{code}: {message}"
        async with session_scope(self._session_factory) as session:
            counted = await WebhookEventRepository(session).record_failure(event_id, error, self._max_attempts)
        if counted is None:
            return
        attempts, status = counted
        logger.warning(
            "Webhook %s failed (attempt %d/%d): %s",
            event.external_event_id,
            attempts,
            self._max_attempts,
            error,
        )
        if status == WebhookEventStatus.FAILED.value:
            await self._alerts.webhook_failure_alert(event.external_event_id, event.event_type, attempts, error)


def _as_outcome(data: Any) -> dict[str, Any]:
    if isinstance(data, dict):
        return data
    return {"result": data}
