"""
Reconciliation loop.

Recovers from lost webhooks and lost dispatches without ever guessing:

* in-flight attempts whose next check is due are looked up at the rail; a
  definitive answer is applied through the same path as webhooks, an
  inconclusive one pushes the next check out with backoff;
* attempts ambiguous for longer than ``max_ambiguous_seconds`` are escalated
  for manual review and left alone from then on;
* pending payouts that were never dispatched are dispatched.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import PayoutError
from ..core.logging import bind_payout_context, clear_payout_context, get_logger
from ..models.payout_attempt import AttemptStatus, PayoutAttempt
from ..models.payout_request import PayoutRequest, PayoutStatus
from ..utils.clock import utcnow
from .dispatcher import RailDispatcher
from .notifications import NotificationService
from .rails.base import RailAdapter, RailError, RailStatus
from .rails.registry import RailRegistry

logger = get_logger(__name__)

RAIL_STATUS_ATTEMPT_STATUS = {
    RailStatus.succeeded: AttemptStatus.succeeded,
    RailStatus.failed: AttemptStatus.failed,
    RailStatus.reversed: AttemptStatus.reversed,
    RailStatus.not_found: AttemptStatus.not_found,
}


class ReconciliationService:
    def __init__(
        self,
        db: AsyncSession,
        registry: RailRegistry,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.registry = registry
        self.dispatcher = RailDispatcher(db, registry, notifier)
        self.payouts = self.dispatcher.payouts
        self.ledger = self.dispatcher.ledger

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One pass over due attempts and stranded pending payouts."""
        now = now or utcnow()
        summary = {
            "checked": 0,
            "applied": 0,
            "already_resolved": 0,
            "rescheduled": 0,
            "escalated": 0,
            "dispatched": 0,
            "errors": 0,
        }

        due = await self.ledger.due_for_check(now, settings.reconciliation_batch_size)
        for attempt_id in [attempt.id for attempt in due]:
            attempt = await self.ledger.get_attempt(attempt_id)
            if attempt is None or AttemptStatus(attempt.status) != AttemptStatus.in_flight:
                continue
            summary["checked"] += 1
            try:
                outcome = await self.reconcile_attempt(attempt, now)
            except Exception as e:
                await self.db.rollback()
                summary["errors"] += 1
                logger.error("Reconciliation of attempt failed", extra={
                    "attempt_id": str(attempt_id),
                    "error": str(e),
                    "error_type": type(e).__name__,
                })
                continue
            finally:
                clear_payout_context()
            summary[outcome] += 1

        for payout_id in await self._stranded_pending(now):
            try:
                result = await self.dispatcher.dispatch(payout_id)
            except PayoutError as e:
                await self.db.rollback()
                summary["errors"] += 1
                logger.warning("Pending sweep could not dispatch payout", extra={
                    "payout_id": str(payout_id),
                    "error": e.message,
                })
                continue
            finally:
                clear_payout_context()
            if result.submitted:
                summary["dispatched"] += 1

        logger.info("Reconciliation pass finished", extra=summary)
        return summary

    async def reconcile_attempt(self, attempt: PayoutAttempt, now: datetime) -> str:
        """Returns the summary bucket the attempt landed in."""
        attempt_id = attempt.id
        bind_payout_context(
            payout_id=attempt.payout_request_id,
            attempt_id=attempt_id,
            rail_operation_id=attempt.rail_operation_id,
        )
        # The ceiling only applies while the rail has no definitive answer.
        past_ceiling = now - attempt.submitted_at >= timedelta(seconds=settings.max_ambiguous_seconds)

        adapter = self._adapter_for(attempt)
        try:
            status = await asyncio.wait_for(
                adapter.get_status(
                    operation_id=attempt.rail_operation_id,
                    idempotency_key=None if attempt.rail_operation_id else attempt.idempotency_key,
                ),
                timeout=settings.rail_status_timeout_seconds,
            )
        except (RailError, asyncio.TimeoutError) as e:
            if past_ceiling:
                return await self._escalate(attempt, now)
            next_check_at = await self.ledger.reschedule(attempt, now)
            await self.db.commit()
            logger.warning("Rail status query failed; check rescheduled", extra={
                "attempt_id": str(attempt_id),
                "error": str(e) or type(e).__name__,
                "next_check_at": next_check_at.isoformat(),
            })
            return "rescheduled"

        if status.operation_id and not attempt.rail_operation_id:
            await self.ledger.record_acknowledgement(attempt, status.operation_id)
            await self.db.commit()

        if not status.is_definitive:
            if past_ceiling:
                return await self._escalate(attempt, now)
            next_check_at = await self.ledger.reschedule(attempt, now, last_rail_status=status.status.value)
            await self.db.commit()
            logger.info("Rail status inconclusive; check rescheduled", extra={
                "attempt_id": str(attempt_id),
                "rail_status": status.status.value,
                "next_check_at": next_check_at.isoformat(),
            })
            return "rescheduled"

        application = await self.payouts.apply_rail_outcome(
            attempt,
            RAIL_STATUS_ATTEMPT_STATUS[status.status],
            reason=status.reason,
            rail_status=status.status.value,
            source="reconciliation",
        )
        return application.result.value

    async def _escalate(self, attempt: PayoutAttempt, now: datetime) -> str:
        attempt_id = attempt.id
        payout = await self.payouts.get_by_id(attempt.payout_request_id)
        try:
            escalated = await self.ledger.escalate(attempt, now)
            if escalated:
                await self.payouts.mark_escalated(payout, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        if not escalated:
            # A webhook resolved the attempt while the rail was being queried.
            logger.info("Attempt resolved before escalation", extra={"attempt_id": str(attempt_id)})
            return "already_resolved"
        logger.error("Payout ambiguous past ceiling; escalated for manual review", extra={
            "payout_id": str(payout.id),
            "attempt_id": str(attempt_id),
            "max_ambiguous_seconds": settings.max_ambiguous_seconds,
        })
        return "escalated"

    async def _stranded_pending(self, now: datetime) -> list[UUID]:
        cutoff = now - timedelta(seconds=settings.pending_dispatch_grace_seconds)
        has_attempt = exists().where(PayoutAttempt.payout_request_id == PayoutRequest.id)
        stmt = (
            select(PayoutRequest.id)
            .where(
                PayoutRequest.status == PayoutStatus.pending,
                PayoutRequest.created_at <= cutoff,
                ~has_attempt,
            )
            .order_by(PayoutRequest.created_at)
            .limit(settings.reconciliation_batch_size)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    def _adapter_for(self, attempt: PayoutAttempt) -> RailAdapter:
        adapter = self.registry.by_name(attempt.rail)
        if adapter is None:
            raise LookupError(f"No rail adapter named '{attempt.rail}'")
        return adapter


class ReconciliationLoop:
    """Runs ``ReconciliationService.run_once`` on a fixed interval in the background."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        registry: RailRegistry,
        notifier: Optional[NotificationService] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.notifier = notifier
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="payout-reconciliation")
        logger.info("Reconciliation loop started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation loop stopped")

    async def run_once(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            service = ReconciliationService(session, self.registry, self.notifier)
            return await service.run_once()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Reconciliation pass failed", extra={
                    "error": str(e),
                    "error_type": type(e).__name__,
                })
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
