from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship

from ..db.session import Base
from ..utils.clock import utcnow


class AttemptStatus(str, Enum):
    in_flight = "in_flight"
    escalated = "escalated"
    succeeded = "succeeded"
    failed = "failed"
    rejected = "rejected"
    reversed = "reversed"
    not_found = "not_found"


# No terminal rail answer yet. At most one per payout request.
UNRESOLVED_ATTEMPT_STATUSES = frozenset({AttemptStatus.in_flight, AttemptStatus.escalated})


class PayoutAttempt(Base):
    """Idempotency ledger record: one rail submission of a payout request."""

    __tablename__ = "payout_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payout_request_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("payout_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt = Column(Integer, nullable=False, default=1)

    idempotency_key = Column(String(128), nullable=False)
    rail = Column(String(32), nullable=False)
    rail_operation_id = Column(String(128), nullable=True)

    status = Column(
        SAEnum(AttemptStatus, name="payout_attempt_status", native_enum=False, length=20),
        nullable=False,
        default=AttemptStatus.in_flight,
    )
    last_rail_status = Column(String(64), nullable=True)
    failure_reason = Column(Text, nullable=True)

    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    next_check_at = Column(DateTime, nullable=False)
    check_count = Column(Integer, nullable=False, default=0)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    payout_request = relationship("PayoutRequest", back_populates="attempts", lazy="raise")

    __table_args__ = (
        UniqueConstraint("payout_request_id", "attempt", name="uq_payout_attempts_request_attempt"),
        UniqueConstraint("idempotency_key", name="uq_payout_attempts_idempotency_key"),
        UniqueConstraint("rail_operation_id", name="uq_payout_attempts_rail_operation_id"),
        Index(
            "uq_payout_attempts_one_unresolved",
            "payout_request_id",
            unique=True,
            postgresql_where=text("status IN ('in_flight', 'escalated')"),
            sqlite_where=text("status IN ('in_flight', 'escalated')"),
        ),
        Index("ix_payout_attempts_status_next_check", "status", "next_check_at"),
    )

    @property
    def is_unresolved(self) -> bool:
        return AttemptStatus(self.status) in UNRESOLVED_ATTEMPT_STATUSES
