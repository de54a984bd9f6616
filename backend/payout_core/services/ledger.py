"""
Idempotency ledger.

One ``PayoutAttempt`` row per rail submission. The row is written, in the
same transaction that claims the payout request, before the rail is called;
its idempotency key is what the rail deduplicates on. Uniqueness (one attempt
number per request, one unresolved attempt per request, one row per key and
per rail operation id) is enforced by the database.

Writes here never commit; the caller owns the transaction.
"""

import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import StaleTransitionError
from ..core.logging import get_logger
from ..models.payout_attempt import AttemptStatus, PayoutAttempt, UNRESOLVED_ATTEMPT_STATUSES
from ..models.payout_request import PayoutRequest, PayoutStatus
from ..utils.clock import utcnow

logger = get_logger(__name__)


def new_idempotency_key(payout_id: UUID, attempt: int = 1) -> str:
    return f"po_{payout_id.hex}_{attempt}_{uuid.uuid4().hex[:12]}"


def next_check_delay(check_count: int, base_seconds: Optional[int] = None) -> timedelta:
    """Backoff before the next status check: ``base * 2**min(check_count, 4)``."""
    base = base_seconds if base_seconds is not None else settings.ambiguity_timeout_seconds
    return timedelta(seconds=base * 2 ** min(check_count, 4))


class IdempotencyLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_attempts(self, payout_id: UUID) -> List[PayoutAttempt]:
        stmt = (
            select(PayoutAttempt)
            .where(PayoutAttempt.payout_request_id == payout_id)
            .order_by(PayoutAttempt.attempt)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_latest_attempt(self, payout_id: UUID) -> Optional[PayoutAttempt]:
        stmt = (
            select(PayoutAttempt)
            .where(PayoutAttempt.payout_request_id == payout_id)
            .order_by(PayoutAttempt.attempt.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_attempt(self, attempt_id: UUID) -> Optional[PayoutAttempt]:
        stmt = (
            select(PayoutAttempt)
            .where(PayoutAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_operation_id(self, rail_operation_id: str) -> Optional[PayoutAttempt]:
        stmt = (
            select(PayoutAttempt)
            .where(PayoutAttempt.rail_operation_id == rail_operation_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    def open_attempt(
        self,
        payout: PayoutRequest,
        rail: str,
        now: Optional[datetime] = None,
        attempt_number: int = 1,
    ) -> PayoutAttempt:
        """Stage a new in-flight attempt for ``payout``; flushed with the caller's transaction."""
        now = now or utcnow()
        attempt = PayoutAttempt(
            id=uuid.uuid4(),
            payout_request_id=payout.id,
            attempt=attempt_number,
            idempotency_key=new_idempotency_key(payout.id, attempt_number),
            rail=rail,
            status=AttemptStatus.in_flight,
            submitted_at=now,
            next_check_at=now + timedelta(seconds=settings.ambiguity_timeout_seconds),
            check_count=0,
        )
        self.db.add(attempt)
        return attempt

    async def record_acknowledgement(self, attempt: PayoutAttempt, rail_operation_id: str) -> bool:
        """Store the rail's operation id. False when the attempt already has one."""
        stmt = (
            update(PayoutAttempt)
            .where(
                PayoutAttempt.id == attempt.id,
                PayoutAttempt.rail_operation_id.is_(None),
            )
            .values(rail_operation_id=rail_operation_id, last_rail_status="accepted")
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def resolve(
        self,
        attempt: PayoutAttempt,
        status: AttemptStatus,
        failure_reason: Optional[str] = None,
        last_rail_status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Move an unresolved attempt to a final status (compare-and-swap on status)."""
        stmt = (
            update(PayoutAttempt)
            .where(
                PayoutAttempt.id == attempt.id,
                PayoutAttempt.status.in_(_values(UNRESOLVED_ATTEMPT_STATUSES)),
            )
            .values(
                status=status,
                failure_reason=failure_reason,
                last_rail_status=last_rail_status or status.value,
                resolved_at=now or utcnow(),
            )
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise StaleTransitionError(
                "Payout attempt already resolved",
                current_status=PayoutStatus.processing.value,
                details={"attempt_id": str(attempt.id), "requested_status": status.value},
            )

    async def reschedule(
        self,
        attempt: PayoutAttempt,
        now: datetime,
        last_rail_status: Optional[str] = None,
    ) -> datetime:
        """Push the next status check out with backoff. Returns the new check time."""
        check_count = (attempt.check_count or 0) + 1
        next_check_at = now + next_check_delay(check_count)
        values = {"check_count": check_count, "next_check_at": next_check_at}
        if last_rail_status:
            values["last_rail_status"] = last_rail_status
        await self.db.execute(
            update(PayoutAttempt)
            .where(
                PayoutAttempt.id == attempt.id,
                PayoutAttempt.status == AttemptStatus.in_flight,
            )
            .values(**values)
        )
        return next_check_at

    async def escalate(self, attempt: PayoutAttempt, now: datetime) -> bool:
        stmt = (
            update(PayoutAttempt)
            .where(
                PayoutAttempt.id == attempt.id,
                PayoutAttempt.status == AttemptStatus.in_flight,
            )
            .values(status=AttemptStatus.escalated, last_rail_status="escalated", next_check_at=now)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def due_for_check(self, now: datetime, limit: int) -> List[PayoutAttempt]:
        """In-flight attempts of processing requests whose next check is due, oldest first."""
        stmt = (
            select(PayoutAttempt)
            .join(PayoutRequest, PayoutRequest.id == PayoutAttempt.payout_request_id)
            .where(
                PayoutAttempt.status == AttemptStatus.in_flight,
                PayoutAttempt.next_check_at <= now,
                PayoutRequest.status == PayoutStatus.processing,
            )
            .order_by(PayoutAttempt.next_check_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())


def _values(statuses: Iterable[Union[AttemptStatus, str]]) -> list:
    return [AttemptStatus(s) for s in statuses]
