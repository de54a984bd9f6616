from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SAEnum,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from ..db.session import Base
from ..utils.clock import utcnow


class RailOutcome(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    reversed = "reversed"


class WebhookProcessingResult(str, Enum):
    applied = "applied"
    duplicate = "duplicate"
    already_resolved = "already_resolved"
    unmatched = "unmatched"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(128), nullable=False)
    rail_operation_id = Column(String(128), nullable=False, index=True)
    outcome = Column(
        SAEnum(RailOutcome, name="rail_outcome", native_enum=False, length=20),
        nullable=False,
    )
    reason = Column(Text, nullable=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    processing_result = Column(
        SAEnum(WebhookProcessingResult, name="webhook_processing_result", native_enum=False, length=20),
        nullable=True,
    )
    payout_request_id = Column(Uuid(as_uuid=True), nullable=True, index=True)

    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        Index("ix_webhook_events_received_at", "received_at"),
    )
