from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Index,
    String,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from ..db.session import Base
from ..utils.clock import utcnow


class PayoutMethodType(str, Enum):
    bank_transfer = "bank_transfer"
    bank_transfer_international = "bank_transfer_international"
    paypal = "paypal"
    card_express = "card_express"
    card_standard = "card_standard"
    western_union = "western_union"
    moneygram = "moneygram"
    crypto = "crypto"


CASH_PICKUP_TYPES = frozenset({PayoutMethodType.western_union, PayoutMethodType.moneygram})
CARD_TYPES = frozenset({PayoutMethodType.card_express, PayoutMethodType.card_standard})

CASH_PICKUP_PROVIDER_NAMES = {
    PayoutMethodType.western_union: "Western Union",
    PayoutMethodType.moneygram: "MoneyGram",
}


class PayoutMethod(Base):
    __tablename__ = "payout_methods"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    # Immutable after creation; a changed destination is a new method.
    type = Column(
        SAEnum(PayoutMethodType, name="payout_method_type", native_enum=False, length=40),
        nullable=False,
    )
    label = Column(String(100), nullable=False)
    last4 = Column(String(4), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)

    bank_name = Column(String(120), nullable=True)
    routing_number = Column(String(34), nullable=True)
    account_number = Column(String(34), nullable=True)
    iban = Column(String(34), nullable=True)
    swift_code = Column(String(11), nullable=True)
    card_id = Column(String(64), nullable=True)

    crypto_address = Column(String(128), nullable=True)
    crypto_network = Column(String(32), nullable=True)
    crypto_currency = Column(String(16), nullable=True)

    recipient_name = Column(String(200), nullable=True)
    city = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)

    metadata_json = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            "uq_payout_methods_user_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default AND deleted_at IS NULL"),
            sqlite_where=text("is_default AND deleted_at IS NULL"),
        ),
        Index("ix_payout_methods_user_active", "user_id", "deleted_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None
