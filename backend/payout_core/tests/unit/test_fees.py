"""
Unit tests for the fee schedule resolver.
"""

import pytest
from decimal import Decimal

from ...models.payout_method import PayoutMethodType
from ...services.fees import (
    CASH_PICKUP_CEILING,
    DEFAULT_FEE_SCHEDULE,
    STANDARD_CEILING,
    estimate_fee,
    get_fee_schedule,
    net_amount_for,
    resolve_fee,
)


class TestResolveFee:

    @pytest.mark.parametrize("method_type,amount,expected", [
        # floor applies
        (PayoutMethodType.bank_transfer, "100.00", "0.50"),
        (PayoutMethodType.bank_transfer_international, "100.00", "2.00"),
        (PayoutMethodType.paypal, "100.00", "1.00"),
        (PayoutMethodType.card_express, "50.00", "1.50"),
        (PayoutMethodType.card_standard, "100.00", "0.75"),
        (PayoutMethodType.western_union, "100.00", "3.00"),
        (PayoutMethodType.moneygram, "100.00", "2.50"),
        # rate applies
        (PayoutMethodType.bank_transfer, "2000.00", "2.00"),
        (PayoutMethodType.bank_transfer_international, "1000.00", "3.00"),
        (PayoutMethodType.paypal, "1000.00", "5.00"),
        (PayoutMethodType.card_express, "1000.00", "15.00"),
        (PayoutMethodType.card_standard, "1000.00", "5.00"),
        (PayoutMethodType.western_union, "1000.00", "18.00"),
        (PayoutMethodType.moneygram, "1000.00", "15.00"),
    ])
    def test_fee_is_max_of_floor_and_rate(self, method_type, amount, expected):
        assert resolve_fee(Decimal(amount), method_type) == Decimal(expected)

    def test_crypto_fee_is_flat(self):
        assert resolve_fee(Decimal("10.00"), PayoutMethodType.crypto) == Decimal("2.00")
        assert resolve_fee(Decimal("40000.00"), PayoutMethodType.crypto) == Decimal("2.00")

    def test_rounds_half_up_to_cents(self):
        # 1005.00 * 0.001 = 1.005
        assert resolve_fee(Decimal("1005.00"), PayoutMethodType.bank_transfer) == Decimal("1.01")
        # 123.45 * 0.015 = 1.85175
        assert resolve_fee(Decimal("123.45"), PayoutMethodType.card_express) == Decimal("1.85")

    @pytest.mark.parametrize("amount", ["0", "-5.00", "0.00"])
    def test_non_positive_amount_is_zero(self, amount):
        assert resolve_fee(Decimal(amount), PayoutMethodType.paypal) == Decimal("0.00")

    def test_unknown_type_uses_fallback(self):
        assert get_fee_schedule("carrier_pigeon") == DEFAULT_FEE_SCHEDULE
        assert resolve_fee(Decimal("100.00"), "carrier_pigeon") == Decimal("0.50")
        assert resolve_fee(Decimal("5000.00"), "carrier_pigeon") == Decimal("5.00")

    def test_accepts_strings_and_ints(self):
        assert resolve_fee("100", "paypal") == Decimal("1.00")
        assert resolve_fee(100, PayoutMethodType.paypal) == Decimal("1.00")

    def test_estimate_matches_resolved_fee(self):
        for method_type in PayoutMethodType:
            for amount in ("10.00", "99.99", "1234.56", "49999.99"):
                assert estimate_fee(Decimal(amount), method_type) == resolve_fee(Decimal(amount), method_type)

    def test_ceilings(self):
        assert get_fee_schedule(PayoutMethodType.western_union).ceiling == CASH_PICKUP_CEILING
        assert get_fee_schedule(PayoutMethodType.moneygram).ceiling == CASH_PICKUP_CEILING
        assert get_fee_schedule(PayoutMethodType.bank_transfer).ceiling == STANDARD_CEILING

    def test_net_amount(self):
        fee = resolve_fee(Decimal("100.00"), PayoutMethodType.bank_transfer_international)
        assert net_amount_for(Decimal("100.00"), fee) == Decimal("98.00")
