"""
Fee schedule resolver.

Pure and deterministic: no I/O, no settings. The same function backs the
authoritative fee frozen at request creation and the live estimate endpoint,
so the two can never disagree.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from ..models.payout_method import PayoutMethodType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class FeeSchedule:
    floor: Decimal
    rate: Decimal
    ceiling: Decimal

    def fee_for(self, amount: Decimal) -> Decimal:
        fee = max(self.floor, amount * self.rate)
        return fee.quantize(CENT, rounding=ROUND_HALF_UP)


STANDARD_CEILING = Decimal("50000.00")
CASH_PICKUP_CEILING = Decimal("10000.00")

FEE_SCHEDULES: dict[PayoutMethodType, FeeSchedule] = {
    PayoutMethodType.bank_transfer: FeeSchedule(Decimal("0.50"), Decimal("0.001"), STANDARD_CEILING),
    PayoutMethodType.bank_transfer_international: FeeSchedule(Decimal("2.00"), Decimal("0.003"), STANDARD_CEILING),
    PayoutMethodType.paypal: FeeSchedule(Decimal("1.00"), Decimal("0.005"), STANDARD_CEILING),
    PayoutMethodType.card_express: FeeSchedule(Decimal("1.50"), Decimal("0.015"), STANDARD_CEILING),
    PayoutMethodType.card_standard: FeeSchedule(Decimal("0.75"), Decimal("0.005"), STANDARD_CEILING),
    PayoutMethodType.western_union: FeeSchedule(Decimal("3.00"), Decimal("0.018"), CASH_PICKUP_CEILING),
    PayoutMethodType.moneygram: FeeSchedule(Decimal("2.50"), Decimal("0.015"), CASH_PICKUP_CEILING),
    PayoutMethodType.crypto: FeeSchedule(Decimal("2.00"), Decimal("0"), STANDARD_CEILING),
}

# Applied to types without a schedule; a schedule gap must never block a payout.
DEFAULT_FEE_SCHEDULE = FeeSchedule(Decimal("0.50"), Decimal("0.001"), STANDARD_CEILING)


def get_fee_schedule(method_type: Union[PayoutMethodType, str]) -> FeeSchedule:
    try:
        return FEE_SCHEDULES[PayoutMethodType(method_type)]
    except (ValueError, KeyError):
        return DEFAULT_FEE_SCHEDULE


def resolve_fee(amount: Union[Decimal, int, str], method_type: Union[PayoutMethodType, str]) -> Decimal:
    """
    Fee for paying out ``amount`` through ``method_type``:
    ``max(floor, rate * amount)`` rounded half-up to cents.

    Non-positive amounts resolve to zero; callers reject them separately.
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        return ZERO
    return get_fee_schedule(method_type).fee_for(amount)


# Name used by the estimate endpoint; identical formula by construction.
estimate_fee = resolve_fee


def net_amount_for(amount: Decimal, fee: Decimal) -> Decimal:
    return (Decimal(str(amount)) - Decimal(str(fee))).quantize(CENT, rounding=ROUND_HALF_UP)
