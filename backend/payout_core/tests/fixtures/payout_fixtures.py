"""
Payout method and payout request fixtures.
"""

import pytest
from decimal import Decimal

from ...models.payout_method import PayoutMethod, PayoutMethodType
from ...models.payout_request import PayoutRequest
from ...services.payout_service import PayoutService


@pytest.fixture
def make_method(db_session):
    """Insert a payout method directly, bypassing the registry rules."""

    async def _make(user_id, method_type=PayoutMethodType.bank_transfer, **fields) -> PayoutMethod:
        values = {
            "label": f"{PayoutMethodType(method_type).value} account",
            "is_default": False,
            "metadata_json": {},
        }
        values.update(fields)
        method = PayoutMethod(user_id=user_id, type=PayoutMethodType(method_type), **values)
        db_session.add(method)
        await db_session.commit()
        await db_session.refresh(method)
        return method

    return _make


@pytest.fixture
async def bank_method(make_method, user_id) -> PayoutMethod:
    return await make_method(
        user_id,
        PayoutMethodType.bank_transfer,
        label="Main checking",
        account_number="000123456789",
        last4="6789",
        is_default=True,
    )


@pytest.fixture
async def international_method(make_method, user_id) -> PayoutMethod:
    return await make_method(
        user_id,
        PayoutMethodType.bank_transfer_international,
        label="EU account",
        iban="DE89370400440532013000",
        swift_code="COBADEFFXXX",
        last4="3000",
    )


@pytest.fixture
async def cash_pickup_method(make_method, user_id) -> PayoutMethod:
    return await make_method(
        user_id,
        PayoutMethodType.western_union,
        label="Western Union pickup",
        recipient_name="Ana Souza",
        city="Lisbon",
        country="Portugal",
    )


@pytest.fixture
async def card_method(make_method, user_id) -> PayoutMethod:
    return await make_method(
        user_id,
        PayoutMethodType.card_express,
        label="Visa debit",
        card_id="card_abc123",
        last4="4242",
    )


@pytest.fixture
async def crypto_method(make_method, user_id) -> PayoutMethod:
    return await make_method(
        user_id,
        PayoutMethodType.crypto,
        label="Cold wallet",
        crypto_address="bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh",
        crypto_network="bitcoin",
        crypto_currency="BTC",
    )


@pytest.fixture
def make_payout(db_session, notifier):
    """Create a pending payout through the service."""

    async def _make(user_id, method: PayoutMethod, amount="100.00", currency="EUR", **kwargs) -> PayoutRequest:
        service = PayoutService(db_session, notifier)
        return await service.create_payout_request(
            user_id=user_id,
            payout_method_id=method.id,
            amount=Decimal(amount),
            currency=currency,
            **kwargs,
        )

    return _make
