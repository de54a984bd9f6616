"""
Payout request store.

Creates payout requests with a frozen fee, serves reads, and owns every
status transition. Transitions are compare-and-swap writes keyed by the
status and version the caller last saw; a writer that lost a race is told
so with ``StaleTransitionError`` rather than overwriting the winner.

``apply_rail_outcome`` is the single place a rail answer becomes a terminal
payout state. The webhook ingestor, the reconciliation loop and the
dispatcher (for synchronous rejections) all go through it, so whichever
answer commits first wins and the others observe ``already_resolved``.
"""

import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ..core.config import settings
from ..core.errors import (
    CancellationRejectedError,
    PayoutNotFoundError,
    PayoutValidationError,
    StaleTransitionError,
    TransitionConflictError,
)
from ..core.logging import get_logger
from ..models.payout_attempt import AttemptStatus, PayoutAttempt
from ..models.payout_method import CARD_TYPES, CASH_PICKUP_TYPES, PayoutMethod, PayoutMethodType
from ..models.payout_request import DeliverySpeed, PayoutRequest, PayoutStatus, TERMINAL_STATUSES
from ..models.webhook_event import WebhookProcessingResult
from ..schemas.payouts import PayoutList, PayoutRead, PayoutStats
from ..utils.clock import utcnow
from .fees import get_fee_schedule, net_amount_for, resolve_fee
from .ledger import IdempotencyLedger
from .notifications import NotificationService
from .state_machine import assert_transition

logger = get_logger(__name__)

PICKUP_REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PICKUP_REFERENCE_LENGTH = 10

# Final attempt status -> payout status it settles the request into.
ATTEMPT_RESOLUTIONS: Dict[AttemptStatus, PayoutStatus] = {
    AttemptStatus.succeeded: PayoutStatus.completed,
    AttemptStatus.failed: PayoutStatus.failed,
    AttemptStatus.rejected: PayoutStatus.failed,
    AttemptStatus.reversed: PayoutStatus.failed,
    AttemptStatus.not_found: PayoutStatus.failed,
}

DEFAULT_FAILURE_REASONS: Dict[AttemptStatus, str] = {
    AttemptStatus.failed: "Payout failed at rail",
    AttemptStatus.rejected: "Payout rejected by rail",
    AttemptStatus.reversed: "Payout reversed by rail",
    AttemptStatus.not_found: "not found at rail",
}


def generate_pickup_reference() -> str:
    return "".join(secrets.choice(PICKUP_REFERENCE_ALPHABET) for _ in range(PICKUP_REFERENCE_LENGTH))


@dataclass
class OutcomeApplication:
    """Result of applying a rail answer to a payout."""

    result: WebhookProcessingResult
    payout: Optional[PayoutRequest]
    attempt: Optional[PayoutAttempt]

    @property
    def applied(self) -> bool:
        return self.result == WebhookProcessingResult.applied


class PayoutService:
    """Payout request operations and transitions."""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or NotificationService()
        self.ledger = IdempotencyLedger(db)

    async def create_payout_request(
        self,
        user_id: UUID,
        payout_method_id: UUID,
        amount: Decimal,
        currency: Optional[str] = None,
        note: Optional[str] = None,
        delivery_speed: Optional[DeliverySpeed] = None,
        correlation_id: Optional[str] = None,
    ) -> PayoutRequest:
        """
        Validate, freeze the fee and store a ``pending`` payout request.

        Nothing is written when validation fails. The method is read and the
        fee resolved inside the same transaction as the insert.

        Raises:
            PayoutValidationError: bad amount, currency or method
        """
        amount = Decimal(str(amount))
        currency = (currency or settings.default_currency).upper()

        logger.info("Creating payout request", extra={
            "correlation_id": correlation_id,
            "user_id": str(user_id),
            "payout_method_id": str(payout_method_id),
            "amount": str(amount),
            "currency": currency,
        })

        if amount <= 0:
            raise PayoutValidationError("Amount must be greater than zero", {"amount": str(amount)})
        if amount < settings.min_payout_amount:
            raise PayoutValidationError(
                f"Minimum withdrawal amount is {settings.min_payout_amount}",
                {"amount": str(amount), "minimum": str(settings.min_payout_amount)},
            )
        if currency not in settings.supported_currencies:
            raise PayoutValidationError(
                f"Currency {currency} is not supported",
                {"currency": currency, "supported": list(settings.supported_currencies)},
            )

        method = await self._get_active_method(user_id, payout_method_id)
        if method is None:
            raise PayoutValidationError(
                "Payout method not found",
                {"payout_method_id": str(payout_method_id)},
            )

        method_type = PayoutMethodType(method.type)
        schedule = get_fee_schedule(method_type)
        if amount > schedule.ceiling:
            raise PayoutValidationError(
                f"Maximum withdrawal amount for this method is {schedule.ceiling}",
                {"amount": str(amount), "maximum": str(schedule.ceiling)},
            )

        fee = resolve_fee(amount, method_type)
        net_amount = net_amount_for(amount, fee)
        if net_amount <= 0:
            raise PayoutValidationError(
                "Amount does not cover the payout fee",
                {"amount": str(amount), "fee": str(fee)},
            )

        reference = None
        pickup_details = None
        if method_type in CASH_PICKUP_TYPES:
            reference = generate_pickup_reference()
            pickup_details = {
                "provider": method_type.value,
                "recipient_name": method.recipient_name,
                "city": method.city,
                "country": method.country,
            }
        elif method_type == PayoutMethodType.crypto:
            pickup_details = {
                "crypto_address": method.crypto_address,
                "crypto_network": method.crypto_network,
                "crypto_currency": method.crypto_currency,
            }

        if method_type in CARD_TYPES and delivery_speed is None:
            delivery_speed = (
                DeliverySpeed.express if method_type == PayoutMethodType.card_express
                else DeliverySpeed.standard
            )

        payout = PayoutRequest(
            user_id=user_id,
            payout_method_id=method.id,
            amount=amount,
            currency=currency,
            fee=fee,
            net_amount=net_amount,
            status=PayoutStatus.pending,
            version=1,
            method_type=method_type.value,
            method_label=method.label,
            reference=reference,
            note=note,
            delivery_speed=delivery_speed,
            pickup_details=pickup_details,
        )
        self.db.add(payout)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(payout)

        logger.info("Payout request created", extra={
            "correlation_id": correlation_id,
            "payout_id": str(payout.id),
            "fee": str(fee),
            "net_amount": str(net_amount),
            "method_type": method_type.value,
        })

        await self.notifier.payout_requested(payout)
        return payout

    async def get_payout_request(self, user_id: UUID, payout_id: UUID) -> PayoutRequest:
        stmt = (
            select(PayoutRequest)
            .where(PayoutRequest.id == payout_id, PayoutRequest.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        payout = result.scalar_one_or_none()
        if payout is None:
            raise PayoutNotFoundError("Payout not found", {"payout_id": str(payout_id)})
        return payout

    async def get_by_id(self, payout_id: UUID) -> PayoutRequest:
        """Unscoped lookup for the dispatcher and background jobs."""
        stmt = (
            select(PayoutRequest)
            .where(PayoutRequest.id == payout_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        payout = result.scalar_one_or_none()
        if payout is None:
            raise PayoutNotFoundError("Payout not found", {"payout_id": str(payout_id)})
        return payout

    async def list_payout_requests(
        self,
        user_id: UUID,
        status: Optional[PayoutStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> PayoutList:
        if page < 1:
            page = 1
        if page_size < 1 or page_size > 100:
            page_size = 20

        filters = [PayoutRequest.user_id == user_id]
        if status is not None:
            filters.append(PayoutRequest.status == PayoutStatus(status))

        total = await self.db.scalar(select(func.count()).select_from(PayoutRequest).where(*filters))

        stmt = (
            select(PayoutRequest)
            .where(*filters)
            .order_by(PayoutRequest.created_at.desc(), PayoutRequest.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(stmt)
        items = [PayoutRead.model_validate(p) for p in result.scalars().all()]

        return PayoutList(items=items, page=page, page_size=page_size, total=total or 0)

    async def cancel_payout_request(
        self,
        user_id: UUID,
        payout_id: UUID,
        correlation_id: Optional[str] = None,
    ) -> PayoutRequest:
        """
        Cancel a payout that has not been dispatched.

        Raises:
            PayoutNotFoundError: no such payout for this user
            InvalidTransitionError: the payout is already resolved
            CancellationRejectedError: a rail submission has been recorded
        """
        payout = await self.get_payout_request(user_id, payout_id)

        if PayoutStatus(payout.status) in TERMINAL_STATUSES:
            assert_transition(payout.status, PayoutStatus.cancelled)

        attempt = await self.ledger.get_latest_attempt(payout.id)
        if attempt is not None or PayoutStatus(payout.status) != PayoutStatus.pending:
            raise CancellationRejectedError(
                "Payout already dispatched and cannot be cancelled",
                current_status=PayoutStatus(payout.status).value,
                details={"payout_id": str(payout.id)},
            )

        try:
            await self.transition(payout, PayoutStatus.cancelled, commit=True)
        except StaleTransitionError:
            # Lost to a concurrent dispatch: report what it became.
            await self.db.rollback()
            current = await self.get_by_id(payout_id)
            if PayoutStatus(current.status) in TERMINAL_STATUSES:
                assert_transition(current.status, PayoutStatus.cancelled)
            raise CancellationRejectedError(
                "Payout already dispatched and cannot be cancelled",
                current_status=PayoutStatus(current.status).value,
                details={"payout_id": str(payout_id)},
            )

        logger.info("Payout cancelled", extra={
            "correlation_id": correlation_id,
            "payout_id": str(payout.id),
        })
        await self.notifier.payout_cancelled(payout)
        return payout

    async def get_payout_stats(self, user_id: UUID, currency: Optional[str] = None) -> PayoutStats:
        currency = (currency or settings.default_currency).upper()
        base = [PayoutRequest.user_id == user_id, PayoutRequest.currency == currency]

        pending = await self.db.scalar(
            select(func.coalesce(func.sum(PayoutRequest.amount), 0)).where(
                *base, PayoutRequest.status.in_([PayoutStatus.pending, PayoutStatus.processing])
            )
        )
        paid, fees = (await self.db.execute(
            select(
                func.coalesce(func.sum(PayoutRequest.net_amount), 0),
                func.coalesce(func.sum(PayoutRequest.fee), 0),
            ).where(*base, PayoutRequest.status == PayoutStatus.completed)
        )).one()

        counts_result = await self.db.execute(
            select(PayoutRequest.status, func.count())
            .where(PayoutRequest.user_id == user_id)
            .group_by(PayoutRequest.status)
        )
        counts = {s.value: 0 for s in PayoutStatus}
        for status, count in counts_result.all():
            counts[PayoutStatus(status).value] = count

        return PayoutStats(
            currency=currency,
            pending_payouts=_money(pending),
            total_paid_out=_money(paid),
            total_fees=_money(fees),
            counts=counts,
        )

    async def transition(
        self,
        payout: PayoutRequest,
        new_status: PayoutStatus,
        commit: bool = False,
        **values: Any,
    ) -> PayoutRequest:
        """
        Compare-and-swap ``payout`` from the status and version it was loaded
        with to ``new_status``.

        Raises:
            InvalidTransitionError: not allowed from the current status
            StaleTransitionError: the row changed since it was read
        """
        old_status = PayoutStatus(payout.status)
        assert_transition(old_status, new_status)
        expected_version = payout.version
        now = utcnow()

        if new_status == PayoutStatus.completed:
            values.setdefault("completed_at", now)

        stmt = (
            update(PayoutRequest)
            .where(
                PayoutRequest.id == payout.id,
                PayoutRequest.status == old_status,
                PayoutRequest.version == expected_version,
            )
            .values(status=new_status, version=expected_version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise StaleTransitionError(
                "Payout transition already superseded",
                current_status=old_status.value,
                details={"payout_id": str(payout.id), "requested_status": new_status.value},
            )

        _sync(payout, status=new_status, version=expected_version + 1, updated_at=now, **values)

        if commit:
            await self.db.commit()

        logger.info("Payout status transition", extra={
            "payout_id": str(payout.id),
            "from_status": old_status.value,
            "to_status": new_status.value,
            "version": payout.version,
        })
        return payout

    async def mark_escalated(self, payout: PayoutRequest, now=None) -> bool:
        """Flag a processing payout for manual review without changing its status."""
        now = now or utcnow()
        stmt = (
            update(PayoutRequest)
            .where(
                PayoutRequest.id == payout.id,
                PayoutRequest.status == PayoutStatus.processing,
                PayoutRequest.version == payout.version,
            )
            .values(escalated_at=now, version=payout.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            return False
        _sync(payout, escalated_at=now, version=payout.version + 1, updated_at=now)
        return True

    async def apply_rail_outcome(
        self,
        attempt: PayoutAttempt,
        attempt_status: AttemptStatus,
        reason: Optional[str] = None,
        rail_status: Optional[str] = None,
        source: str = "rail",
    ) -> OutcomeApplication:
        """
        Settle the attempt and its payout from a definitive rail answer, in
        one transaction. Commits on success.

        Returns ``already_resolved`` when the attempt or payout was settled
        first by someone else; nothing is written in that case.
        """
        target = ATTEMPT_RESOLUTIONS[attempt_status]
        attempt_id = attempt.id
        attempt = await self.ledger.get_attempt(attempt_id) or attempt
        payout_id = attempt.payout_request_id
        payout = await self.get_by_id(payout_id)

        log_extra = {
            "payout_id": str(payout.id),
            "attempt_id": str(attempt.id),
            "rail_operation_id": attempt.rail_operation_id,
            "attempt_status": attempt_status.value,
            "source": source,
        }

        if not attempt.is_unresolved or PayoutStatus(payout.status) in TERMINAL_STATUSES:
            if attempt_status == AttemptStatus.reversed and PayoutStatus(payout.status) == PayoutStatus.completed:
                logger.warning("Reversal received for completed payout; needs manual review", extra=log_extra)
            else:
                logger.info("Rail outcome for already resolved payout ignored", extra={
                    **log_extra, "current_status": PayoutStatus(payout.status).value,
                })
            return OutcomeApplication(WebhookProcessingResult.already_resolved, payout, attempt)

        failure_reason = None
        if target == PayoutStatus.failed:
            failure_reason = reason or DEFAULT_FAILURE_REASONS[attempt_status]

        now = utcnow()
        try:
            await self.ledger.resolve(
                attempt,
                attempt_status,
                failure_reason=failure_reason,
                last_rail_status=rail_status,
                now=now,
            )
            await self.transition(payout, target, failure_reason=failure_reason)
            await self.db.commit()
        except TransitionConflictError:
            await self.db.rollback()
            logger.info("Rail outcome lost race to concurrent resolution", extra=log_extra)
            current = await self.get_by_id(payout_id)
            attempt = await self.ledger.get_attempt(attempt_id)
            return OutcomeApplication(WebhookProcessingResult.already_resolved, current, attempt)

        attempt = await self.ledger.get_attempt(attempt_id) or attempt
        logger.info("Rail outcome applied", extra={**log_extra, "payout_status": target.value})

        if target == PayoutStatus.completed:
            await self.notifier.payout_completed(payout)
        else:
            await self.notifier.payout_failed(payout)

        return OutcomeApplication(WebhookProcessingResult.applied, payout, attempt)

    async def _get_active_method(self, user_id: UUID, method_id: UUID) -> Optional[PayoutMethod]:
        stmt = select(PayoutMethod).where(
            PayoutMethod.id == method_id,
            PayoutMethod.user_id == user_id,
            PayoutMethod.deleted_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()


def _sync(payout: PayoutRequest, **values: Any) -> None:
    # Mirror a written row without marking the instance dirty.
    for key, value in values.items():
        set_committed_value(payout, key, value)


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))
