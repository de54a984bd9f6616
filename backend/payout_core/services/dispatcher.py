"""
Rail dispatcher: the only caller of ``RailAdapter.submit``.

Dispatch writes the ledger record and claims the payout (pending ->
processing) in one transaction before the rail is called. A crash after
that point leaves a record reconciliation can resolve; a second dispatch
call finds the record and returns it without touching the rail.

A submit that times out or errors is ambiguous: the rail may or may not
have executed it. It is left in flight for reconciliation and never
retried here.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import StaleTransitionError
from ..core.logging import bind_payout_context, get_logger
from ..models.payout_attempt import AttemptStatus, PayoutAttempt
from ..models.payout_method import PayoutMethod
from ..models.payout_request import PayoutRequest, PayoutStatus
from ..utils.clock import utcnow
from .notifications import NotificationService
from .payout_service import PayoutService
from .rails.base import RailRejectedError, RailSubmission, RailUnavailableError
from .rails.registry import RailRegistry
from .state_machine import assert_transition

logger = get_logger(__name__)

METHOD_UNAVAILABLE_REASON = "payout method no longer available"


@dataclass
class DispatchOutcome:
    payout: PayoutRequest
    attempt: Optional[PayoutAttempt]
    # False when an existing ledger record was returned and the rail was not called.
    submitted: bool
    # accepted, rejected, ambiguous, existing or method_unavailable
    rail_result: str


class RailDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        registry: RailRegistry,
        notifier: Optional[NotificationService] = None,
        submit_timeout: Optional[float] = None,
    ):
        self.db = db
        self.registry = registry
        self.payouts = PayoutService(db, notifier)
        self.ledger = self.payouts.ledger
        self.submit_timeout = submit_timeout or settings.rail_submit_timeout_seconds

    async def dispatch(self, payout_id: UUID, correlation_id: Optional[str] = None) -> DispatchOutcome:
        """
        Submit a pending payout to its rail at most once.

        Raises:
            PayoutNotFoundError: unknown payout
            InvalidTransitionError: the payout is not pending and has no ledger record
        """
        bind_payout_context(payout_id=payout_id)
        payout = await self.payouts.get_by_id(payout_id)

        existing = await self.ledger.get_latest_attempt(payout.id)
        if existing is not None:
            logger.info("Payout already dispatched; returning ledger record", extra={
                "correlation_id": correlation_id,
                "payout_id": str(payout.id),
                "attempt_id": str(existing.id),
                "rail_operation_id": existing.rail_operation_id,
            })
            return DispatchOutcome(payout, existing, submitted=False, rail_result="existing")

        assert_transition(payout.status, PayoutStatus.processing)

        method = None
        if payout.payout_method_id is not None:
            method = await self.db.get(PayoutMethod, payout.payout_method_id, populate_existing=True)
        if method is None or not method.is_active:
            # Nothing reached the rail, so the payout is withdrawn rather than failed.
            await self.payouts.transition(
                payout, PayoutStatus.cancelled, commit=True, failure_reason=METHOD_UNAVAILABLE_REASON
            )
            logger.warning("Payout method unavailable at dispatch", extra={
                "correlation_id": correlation_id,
                "payout_id": str(payout.id),
            })
            await self.payouts.notifier.payout_cancelled(payout)
            return DispatchOutcome(payout, None, submitted=False, rail_result="method_unavailable")

        adapter = self.registry.for_method(payout.method_type)

        try:
            attempt = self.ledger.open_attempt(payout, rail=adapter.name, now=utcnow())
            await self.db.flush()
            await self.payouts.transition(payout, PayoutStatus.processing)
            await self.db.commit()
        except (IntegrityError, StaleTransitionError) as e:
            await self.db.rollback()
            winner = await self.ledger.get_latest_attempt(payout_id)
            payout = await self.payouts.get_by_id(payout_id)
            logger.info("Concurrent dispatch detected", extra={
                "correlation_id": correlation_id,
                "payout_id": str(payout_id),
                "error_type": type(e).__name__,
                "winner_attempt_id": str(winner.id) if winner else None,
            })
            if winner is None:
                raise
            return DispatchOutcome(payout, winner, submitted=False, rail_result="existing")

        bind_payout_context(attempt_id=attempt.id)
        submission = RailSubmission(
            payout_id=str(payout.id),
            idempotency_key=attempt.idempotency_key,
            amount=payout.net_amount,
            currency=payout.currency,
            method_type=payout.method_type,
            reference=payout.reference,
            destination=build_destination(method),
        )

        logger.info("Submitting payout to rail", extra={
            "correlation_id": correlation_id,
            "payout_id": str(payout.id),
            "attempt_id": str(attempt.id),
            "rail": adapter.name,
            "amount": str(payout.net_amount),
            "currency": payout.currency,
        })

        try:
            result = await asyncio.wait_for(adapter.submit(submission), timeout=self.submit_timeout)
        except RailRejectedError as e:
            logger.warning("Rail rejected payout", extra={
                "correlation_id": correlation_id,
                "payout_id": str(payout.id),
                "attempt_id": str(attempt.id),
                "reason": e.reason,
                "code": e.code,
            })
            application = await self.payouts.apply_rail_outcome(
                attempt,
                AttemptStatus.rejected,
                reason=e.reason,
                rail_status="rejected",
                source="dispatch",
            )
            return DispatchOutcome(
                application.payout, application.attempt, submitted=True, rail_result="rejected"
            )
        except (asyncio.TimeoutError, RailUnavailableError) as e:
            logger.warning("Rail submission outcome unknown; left for reconciliation", extra={
                "correlation_id": correlation_id,
                "payout_id": str(payout.id),
                "attempt_id": str(attempt.id),
                "error": str(e) or type(e).__name__,
                "next_check_at": attempt.next_check_at.isoformat(),
            })
            return DispatchOutcome(payout, attempt, submitted=True, rail_result="ambiguous")

        try:
            await self.ledger.record_acknowledgement(attempt, result.operation_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        attempt = await self.ledger.get_attempt(attempt.id) or attempt
        bind_payout_context(rail_operation_id=result.operation_id)

        logger.info("Rail accepted payout", extra={
            "correlation_id": correlation_id,
            "payout_id": str(payout.id),
            "attempt_id": str(attempt.id),
            "rail_operation_id": result.operation_id,
        })
        return DispatchOutcome(payout, attempt, submitted=True, rail_result="accepted")


def build_destination(method: PayoutMethod) -> Dict[str, Any]:
    """Destination fields the rail needs for this method type."""
    fields = (
        "bank_name", "routing_number", "account_number", "iban", "swift_code", "card_id",
        "crypto_address", "crypto_network", "crypto_currency",
        "recipient_name", "city", "country",
    )
    destination = {"type": method.type.value if hasattr(method.type, "value") else method.type}
    for name in fields:
        value = getattr(method, name)
        if value is not None:
            destination[name] = value
    email = (method.metadata_json or {}).get("email")
    if email:
        destination["email"] = email
    return destination
