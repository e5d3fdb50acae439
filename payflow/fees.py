"""Platform fee split, membership pricing and installment tiers.

All amounts are integers in minor currency units.
"""
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List

from payflow.errors import FeeCalculationError

DEFAULT_FEE_PERCENTAGE = 0.15
MIN_PAYMENT_AMOUNT = 100
MAX_PAYMENT_AMOUNT = 999_999_999

MEMBERSHIP_PRICES = {
    "basic": {"monthly": 2999, "yearly": 29990},
    "premium": {"monthly": 8999, "yearly": 89990},
    "vip": {"monthly": 19999, "yearly": 199990},
}

MEMBERSHIP_DAYS = {"monthly": 30, "yearly": 365}

# (minimum amount, options), checked top-down
INSTALLMENT_TIERS = (
    (50000, [1, 3, 6, 9, 12]),
    (20000, [1, 3, 6, 9]),
    (10000, [1, 3, 6]),
    (5000, [1, 3]),
)


@dataclass(frozen=True)
class FeeSplit:
    creator_amount: int
    platform_fee: int


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float, Decimal))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def calculate_split(amount, fee_percentage=DEFAULT_FEE_PERCENTAGE) -> FeeSplit:
    """Split ``amount`` between creator and platform.

    The platform fee is rounded half-up and the creator gets the remainder, so
    both parts always sum to ``amount``. Invalid input raises
    ``FeeCalculationError``.
    """
    if not _is_number(amount) or amount < 0 or amount != int(amount):
        raise FeeCalculationError("Amount must be a non-negative whole number of minor units")
    if not _is_number(fee_percentage) or not 0 <= fee_percentage <= 1:
        raise FeeCalculationError("Fee percentage must be between 0 and 1")

    total = int(amount)
    fee = Decimal(total) * Decimal(str(fee_percentage))
    platform_fee = int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return FeeSplit(creator_amount=total - platform_fee, platform_fee=platform_fee)


def validate_payment_amount(amount, min_amount: int = MIN_PAYMENT_AMOUNT) -> bool:
    return _is_number(amount) and min_amount <= amount <= MAX_PAYMENT_AMOUNT


def installment_options(amount) -> List[int]:
    if not validate_payment_amount(amount):
        return [1]
    for minimum, options in INSTALLMENT_TIERS:
        if amount >= minimum:
            return list(options)
    return [1]


def max_installments(amount: int) -> int:
    """Installment cap offered on the hosted checkout."""
    return 12 if amount > 10000 else 6


def membership_price(tier: str, period: str) -> int:
    return MEMBERSHIP_PRICES[tier][period]


def membership_tiers() -> List[str]:
    return list(MEMBERSHIP_PRICES)


def yearly_discount(tier: str) -> int:
    """Percentage saved by paying yearly instead of twelve monthly payments."""
    monthly_total = MEMBERSHIP_PRICES[tier]["monthly"] * 12
    yearly = MEMBERSHIP_PRICES[tier]["yearly"]
    saved = Decimal(monthly_total - yearly) / Decimal(monthly_total) * 100
    return int(saved.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
