"""
Webhook ingestor for rail outcome callbacks.

Delivery is at-least-once and unordered. Each event is stored under its
rail-assigned ``event_id`` first; a redelivery hits the unique constraint
and is acknowledged as a duplicate without side effects, unless the stored
row was never finished, in which case the redelivery completes it. Outcomes are
applied through ``PayoutService.apply_rail_outcome``, shared with
reconciliation.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.logging import bind_payout_context, get_logger
from ..core.security import sanitize_log_data
from ..models.payout_attempt import AttemptStatus
from ..models.webhook_event import RailOutcome, WebhookEvent, WebhookProcessingResult
from ..schemas.webhooks import RailWebhookRequest
from ..utils.clock import utcnow
from .notifications import NotificationService
from .payout_service import PayoutService

logger = get_logger(__name__)

OUTCOME_ATTEMPT_STATUS = {
    RailOutcome.succeeded: AttemptStatus.succeeded,
    RailOutcome.failed: AttemptStatus.failed,
    RailOutcome.reversed: AttemptStatus.reversed,
}


@dataclass
class WebhookProcessingOutcome:
    result: WebhookProcessingResult
    payout_id: Optional[UUID] = None


class WebhookService:
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.payouts = PayoutService(db, notifier)

    async def process_event(
        self,
        event: RailWebhookRequest,
        raw_payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> WebhookProcessingOutcome:
        bind_payout_context(rail_operation_id=event.operation_id)
        logger.info("Processing rail webhook", extra={
            "correlation_id": correlation_id,
            "event_id": event.event_id,
            "rail_operation_id": event.operation_id,
            "outcome": event.outcome.value,
        })

        payload = raw_payload if raw_payload is not None else event.model_dump(mode="json")
        record = WebhookEvent(
            id=uuid.uuid4(),
            event_id=event.event_id,
            rail_operation_id=event.operation_id,
            outcome=event.outcome,
            reason=event.reason,
            payload=sanitize_log_data(payload),
            received_at=utcnow(),
        )
        record_id = record.id
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._get_event(event.event_id)
            if existing is None or existing.processing_result is not None:
                logger.info("Duplicate webhook event ignored", extra={
                    "correlation_id": correlation_id,
                    "event_id": event.event_id,
                })
                return WebhookProcessingOutcome(WebhookProcessingResult.duplicate)
            # Stored by a delivery that never finished (cancelled or killed
            # between commits). apply_rail_outcome is a CAS, so finishing it
            # here cannot apply the outcome twice.
            record_id = existing.id
            logger.warning("Resuming unfinished webhook event", extra={
                "correlation_id": correlation_id,
                "event_id": event.event_id,
                "received_at": existing.received_at.isoformat(),
            })

        try:
            attempt = await self.payouts.ledger.get_by_operation_id(event.operation_id)
            if attempt is None:
                logger.warning("Webhook for unknown rail operation", extra={
                    "correlation_id": correlation_id,
                    "event_id": event.event_id,
                    "rail_operation_id": event.operation_id,
                })
                await self._finish(record_id, WebhookProcessingResult.unmatched, None)
                return WebhookProcessingOutcome(WebhookProcessingResult.unmatched)

            application = await self.payouts.apply_rail_outcome(
                attempt,
                OUTCOME_ATTEMPT_STATUS[event.outcome],
                reason=event.reason,
                rail_status=event.outcome.value,
                source="webhook",
            )
            payout_id = application.payout.id if application.payout is not None else None
            await self._finish(record_id, application.result, payout_id)
        except Exception as e:
            # Forget the event so the rail's redelivery is processed again.
            await self.db.rollback()
            await self.db.execute(delete(WebhookEvent).where(WebhookEvent.id == record_id))
            await self.db.commit()
            logger.error("Webhook processing failed", extra={
                "correlation_id": correlation_id,
                "event_id": event.event_id,
                "error": str(e),
                "error_type": type(e).__name__,
            })
            raise

        logger.info("Rail webhook processed", extra={
            "correlation_id": correlation_id,
            "event_id": event.event_id,
            "payout_id": str(payout_id),
            "result": application.result.value,
        })
        return WebhookProcessingOutcome(application.result, payout_id)

    async def _get_event(self, event_id: str) -> Optional[WebhookEvent]:
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _finish(
        self,
        record_id: UUID,
        result: WebhookProcessingResult,
        payout_id: Optional[UUID],
    ) -> None:
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == record_id)
            .values(processing_result=result, payout_request_id=payout_id, processed_at=utcnow())
        )
        await self.db.commit()
