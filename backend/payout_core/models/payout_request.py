from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from ..db.session import Base
from ..utils.clock import utcnow


class PayoutStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({PayoutStatus.completed, PayoutStatus.failed, PayoutStatus.cancelled})
OPEN_STATUSES = frozenset({PayoutStatus.pending, PayoutStatus.processing})


class DeliverySpeed(str, Enum):
    express = "express"
    standard = "standard"


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    payout_method_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("payout_methods.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    # Frozen at creation from the schedule in effect; never rewritten.
    fee = Column(Numeric(18, 2), nullable=False)
    net_amount = Column(Numeric(18, 2), nullable=False)

    status = Column(
        SAEnum(PayoutStatus, name="payout_status", native_enum=False, length=20),
        nullable=False,
        default=PayoutStatus.pending,
    )
    version = Column(Integer, nullable=False, default=1)

    # Frozen copies of the method so the record survives method deletion.
    method_type = Column(String(40), nullable=False)
    method_label = Column(String(100), nullable=False)

    reference = Column(String(32), nullable=True, index=True)
    note = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    delivery_speed = Column(
        SAEnum(DeliverySpeed, name="delivery_speed", native_enum=False, length=20),
        nullable=True,
    )
    pickup_details = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    escalated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    attempts = relationship(
        "PayoutAttempt",
        back_populates="payout_request",
        order_by="PayoutAttempt.attempt",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_requests_amount_positive"),
        CheckConstraint("fee >= 0", name="ck_payout_requests_fee_non_negative"),
        CheckConstraint(
            "net_amount = amount - fee", name="ck_payout_requests_net_amount"
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "char_length(currency) = 3", name="ck_payout_requests_currency_len_3"
        ).ddl_if(dialect="postgresql"),
        CheckConstraint("currency = upper(currency)", name="ck_payout_requests_currency_upper"),
        Index("ix_payout_requests_user_created_at", "user_id", "created_at"),
        Index("ix_payout_requests_status_created_at", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return PayoutStatus(self.status) in TERMINAL_STATUSES
