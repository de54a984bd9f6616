from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.payout_attempt import AttemptStatus
from ..models.payout_request import DeliverySpeed, PayoutStatus


class PayoutCreate(BaseModel):
    payout_method_id: UUID
    amount: Decimal = Field(..., gt=Decimal("0"), max_digits=18, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    note: Optional[str] = Field(None, max_length=500)
    delivery_speed: Optional[DeliverySpeed] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be 3 letters (ISO 4217)")
        return v.upper()


class PayoutRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    payout_method_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    fee: Decimal
    net_amount: Decimal
    status: PayoutStatus
    method_type: str
    method_label: str
    reference: Optional[str] = None
    note: Optional[str] = None
    failure_reason: Optional[str] = None
    delivery_speed: Optional[DeliverySpeed] = None
    pickup_details: Optional[dict[str, Any]] = None
    version: int
    escalated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PayoutList(BaseModel):
    items: list[PayoutRead]
    page: int
    page_size: int
    total: int


class PayoutAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payout_request_id: UUID
    attempt: int
    rail: str
    rail_operation_id: Optional[str] = None
    status: AttemptStatus
    last_rail_status: Optional[str] = None
    failure_reason: Optional[str] = None
    submitted_at: datetime
    resolved_at: Optional[datetime] = None


class DispatchRead(BaseModel):
    payout: PayoutRead
    attempt: Optional[PayoutAttemptRead] = None
    submitted: bool = Field(..., description="False when an existing ledger record was returned")
    rail_result: str = Field(..., description="accepted, rejected, ambiguous, existing or method_unavailable")


class PayoutStats(BaseModel):
    currency: str
    pending_payouts: Decimal
    total_paid_out: Decimal
    total_fees: Decimal
    counts: dict[str, int]


class FeeEstimate(BaseModel):
    amount: Decimal
    method_type: str
    fee: Decimal
    net_amount: Decimal
