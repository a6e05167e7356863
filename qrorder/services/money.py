from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP

from qrorder.core.settings import settings

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value) -> int:
    return int(to_money(value) * 100)


def token_discount(amount: int) -> Decimal:
    """amount 个代币折合的金额。"""
    return to_money(Decimal(amount) * settings.TOKEN_UNIT_VALUE)


def max_redeemable(amount_due) -> int:
    """在不把应付金额抵扣成负数的前提下，最多能用多少代币。"""
    due = to_money(amount_due)
    if due <= 0:
        return 0
    return math.floor(due / settings.TOKEN_UNIT_VALUE)


def final_amount(total_amount, discount_amount) -> Decimal:
    return max(Decimal("0.00"), to_money(total_amount) - to_money(discount_amount))
