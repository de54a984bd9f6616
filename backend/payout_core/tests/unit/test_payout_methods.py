"""
Unit tests for the payout method registry and its input variants.
"""

import pytest
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select

from ...core.config import settings
from ...core.errors import PayoutMethodError, PayoutNotFoundError
from ...models.payout_method import PayoutMethod, PayoutMethodType
from ...schemas.payout_methods import (
    CashPickupMethodCreate,
    DomesticBankMethodCreate,
    InternationalBankMethodCreate,
    PayoutMethodCreate,
    WalletMethodCreate,
)
from ...services.payout_method_service import PayoutMethodService

method_adapter = TypeAdapter(PayoutMethodCreate)


def bank_input(label="Checking", **extra):
    return method_adapter.validate_python({
        "type": "bank_transfer",
        "label": label,
        "account_number": "000123456789",
        **extra,
    })


class TestPayoutMethodVariants:

    def test_discriminates_on_type(self):
        method = method_adapter.validate_python({
            "type": "bank_transfer_international",
            "label": "EU",
            "iban": "de89 3704 0044 0532 0130 00",
            "swift_code": "cobadeffxxx",
        })
        assert isinstance(method, InternationalBankMethodCreate)
        assert method.iban == "DE89370400440532013000"
        assert method.swift_code == "COBADEFFXXX"
        assert method.last4 == "3000"

    def test_international_requires_iban_and_swift(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({"type": "bank_transfer_international", "label": "EU"})

    def test_swift_length(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({
                "type": "bank_transfer_international",
                "label": "EU",
                "iban": "DE89370400440532013000",
                "swift_code": "COBADEFFX",
            })

    def test_domestic_bank_requires_account(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({"type": "bank_transfer", "label": "Checking"})
        method = bank_input()
        assert isinstance(method, DomesticBankMethodCreate)
        assert method.last4 == "6789"

    def test_cash_pickup_requires_recipient_and_location(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({"type": "moneygram", "label": "MG", "city": "Lisbon"})
        method = method_adapter.validate_python({
            "type": "moneygram",
            "label": "MG",
            "recipient_name": "Ana Souza",
            "city": "Lisbon",
            "country": "Portugal",
        })
        assert isinstance(method, CashPickupMethodCreate)

    def test_crypto_requires_destination(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({"type": "crypto", "label": "Wallet", "crypto_network": "bitcoin"})

    def test_card_requires_reference(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({"type": "card_standard", "label": "Visa"})

    def test_paypal_email_goes_to_metadata(self):
        method = method_adapter.validate_python({"type": "paypal", "label": "PayPal", "email": "me@example.com"})
        assert isinstance(method, WalletMethodCreate)
        fields = method.to_model_fields()
        assert "email" not in fields
        assert fields["metadata_json"]["email"] == "me@example.com"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            method_adapter.validate_python({"type": "carrier_pigeon", "label": "Coo"})


class TestPayoutMethodService:

    @pytest.fixture
    def service(self, db_session) -> PayoutMethodService:
        return PayoutMethodService(db_session)

    @pytest.mark.asyncio
    async def test_first_method_becomes_default(self, service, user_id):
        first = await service.add_method(user_id, bank_input("First"))
        second = await service.add_method(user_id, bank_input("Second"))

        assert first.is_default is True
        assert second.is_default is False

    @pytest.mark.asyncio
    async def test_new_default_clears_previous(self, service, user_id):
        first = await service.add_method(user_id, bank_input("First"))
        second = await service.add_method(user_id, bank_input("Second", is_default=True))

        methods = await service.list_methods(user_id)
        assert [m.id for m in methods if m.is_default] == [second.id]
        assert methods[0].id == second.id
        assert first.id in [m.id for m in methods]

    @pytest.mark.asyncio
    async def test_set_default(self, service, user_id):
        first = await service.add_method(user_id, bank_input("First"))
        second = await service.add_method(user_id, bank_input("Second"))

        updated = await service.set_default(user_id, second.id)

        assert updated.is_default is True
        methods = await service.list_methods(user_id)
        defaults = [m for m in methods if m.is_default]
        assert len(defaults) == 1 and defaults[0].id == second.id
        assert first.id != defaults[0].id

    @pytest.mark.asyncio
    async def test_method_limit(self, service, user_id, monkeypatch):
        monkeypatch.setattr(settings, "max_payout_methods_per_user", 2)
        await service.add_method(user_id, bank_input("One"))
        await service.add_method(user_id, bank_input("Two"))

        with pytest.raises(PayoutMethodError) as exc_info:
            await service.add_method(user_id, bank_input("Three"))
        assert "Maximum of 2" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_methods_are_scoped_to_user(self, service, user_id):
        method = await service.add_method(user_id, bank_input())

        assert await service.list_methods(uuid4()) == []
        with pytest.raises(PayoutNotFoundError) as exc_info:
            await service.get_method(uuid4(), method.id)
        assert exc_info.value.details["resource"] == "payout_method"

    @pytest.mark.asyncio
    async def test_remove_is_soft_delete(self, service, user_id, db_session):
        method = await service.add_method(user_id, bank_input())

        await service.remove_method(user_id, method.id)

        assert await service.list_methods(user_id) == []
        row = (await db_session.execute(
            select(PayoutMethod).where(PayoutMethod.id == method.id).execution_options(populate_existing=True)
        )).scalar_one()
        assert row.deleted_at is not None
        assert row.is_default is False

    @pytest.mark.asyncio
    async def test_removing_default_promotes_newest(self, service, user_id):
        default = await service.add_method(user_id, bank_input("Default"))
        await service.add_method(user_id, bank_input("Older"))
        newest = await service.add_method(user_id, bank_input("Newest"))

        await service.remove_method(user_id, default.id)

        methods = await service.list_methods(user_id)
        assert methods[0].id == newest.id
        assert methods[0].is_default is True
        assert sum(1 for m in methods if m.is_default) == 1

    @pytest.mark.asyncio
    async def test_remove_blocked_with_open_payouts(self, service, user_id, make_payout):
        method = await service.add_method(user_id, bank_input())
        await make_payout(user_id, method, amount="50.00")

        with pytest.raises(PayoutMethodError) as exc_info:
            await service.remove_method(user_id, method.id)
        assert exc_info.value.message == "Cannot remove a method with pending payouts"
        assert len(await service.list_methods(user_id)) == 1

    @pytest.mark.asyncio
    async def test_deleted_method_cannot_be_used(self, service, user_id, make_payout):
        from ...core.errors import PayoutValidationError

        method = await service.add_method(user_id, bank_input())
        await service.remove_method(user_id, method.id)

        with pytest.raises(PayoutValidationError):
            await make_payout(user_id, method, amount="25.00")
