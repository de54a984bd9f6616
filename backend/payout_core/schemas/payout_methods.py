"""
Payout method schemas.

Creation input is a tagged union on ``type``: each method type declares only
the destination fields it needs, and the required ones are enforced by the
variant rather than by a single record full of nullable fields.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models.payout_method import PayoutMethodType


class PayoutMethodBase(BaseModel):
    label: str = Field(..., min_length=1, max_length=100)
    last4: Optional[str] = Field(None, pattern=r"^\d{4}$")
    is_default: bool = False
    metadata_json: dict[str, Any] = Field(default_factory=dict)

    def to_model_fields(self) -> dict[str, Any]:
        """Column values for the ``PayoutMethod`` row."""
        return self.model_dump(exclude_none=True)


class DomesticBankMethodCreate(PayoutMethodBase):
    type: Literal[PayoutMethodType.bank_transfer]
    bank_name: Optional[str] = Field(None, max_length=120)
    routing_number: Optional[str] = Field(None, max_length=34)
    account_number: Optional[str] = Field(None, max_length=34)
    iban: Optional[str] = Field(None, max_length=34)

    @model_validator(mode="after")
    def require_account(self) -> "DomesticBankMethodCreate":
        if not (self.account_number or self.iban):
            raise ValueError("Account number or IBAN is required for bank transfers")
        if self.last4 is None:
            self.last4 = _last_four(self.account_number or self.iban)
        return self


class InternationalBankMethodCreate(PayoutMethodBase):
    type: Literal[PayoutMethodType.bank_transfer_international]
    bank_name: Optional[str] = Field(None, max_length=120)
    iban: str = Field(..., min_length=15, max_length=34)
    swift_code: str = Field(..., min_length=8, max_length=11)

    @field_validator("iban", "swift_code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.replace(" ", "").upper()

    @field_validator("swift_code")
    @classmethod
    def validate_swift(cls, v: str) -> str:
        if len(v) not in (8, 11):
            raise ValueError("SWIFT/BIC code must be 8 or 11 characters")
        return v

    @model_validator(mode="after")
    def default_last4(self) -> "InternationalBankMethodCreate":
        if self.last4 is None:
            self.last4 = _last_four(self.iban)
        return self


class WalletMethodCreate(PayoutMethodBase):
    type: Literal[PayoutMethodType.paypal]
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)

    def to_model_fields(self) -> dict[str, Any]:
        fields = self.model_dump(exclude_none=True, exclude={"email"})
        fields["metadata_json"] = {**self.metadata_json, "email": self.email}
        return fields


class CardMethodCreate(PayoutMethodBase):
    type: Literal[PayoutMethodType.card_express, PayoutMethodType.card_standard]
    card_id: Optional[str] = Field(None, max_length=64)

    @model_validator(mode="after")
    def require_card(self) -> "CardMethodCreate":
        if not (self.card_id or self.last4):
            raise ValueError("A card reference is required for card payouts")
        return self


class CashPickupMethodCreate(PayoutMethodBase):
    type: Literal[PayoutMethodType.western_union, PayoutMethodType.moneygram]
    recipient_name: str = Field(..., min_length=1, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=2, max_length=100)


class CryptoMethodCreate(PayoutMethodBase):
    type: Literal[PayoutMethodType.crypto]
    crypto_address: str = Field(..., min_length=10, max_length=128)
    crypto_network: str = Field(..., min_length=2, max_length=32)
    crypto_currency: str = Field(..., min_length=2, max_length=16)

    @field_validator("crypto_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


PayoutMethodCreate = Annotated[
    Union[
        DomesticBankMethodCreate,
        InternationalBankMethodCreate,
        WalletMethodCreate,
        CardMethodCreate,
        CashPickupMethodCreate,
        CryptoMethodCreate,
    ],
    Field(discriminator="type"),
]


class PayoutMethodRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    type: PayoutMethodType
    label: str
    last4: Optional[str] = None
    is_default: bool
    bank_name: Optional[str] = None
    swift_code: Optional[str] = None
    crypto_address: Optional[str] = None
    crypto_network: Optional[str] = None
    crypto_currency: Optional[str] = None
    recipient_name: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    metadata_json: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class PayoutMethodList(BaseModel):
    items: list[PayoutMethodRead]


def _last_four(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = "".join(ch for ch in value if ch.isdigit())
    return digits[-4:] if len(digits) >= 4 else None
