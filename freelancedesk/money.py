"""
Line-item and document total arithmetic.

All amounts are ``Decimal``. Percentage divisions are rounded half-up to four
decimal places before they are applied, and item totals are rounded half-up
to currency precision (two decimal places).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

ZERO = Decimal("0.00")
ONE = Decimal("1")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.0001")


def to_decimal(value, default: Decimal = ZERO) -> Decimal:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _percent_fraction(percent: Decimal) -> Decimal:
    return (percent / HUNDRED).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def compute_item_total(quantity=None, unit_price=None, tax_rate=None, discount=None) -> Decimal:
    """
    Total for one line item: gross, less discount, plus tax on the discounted net.

    Missing inputs fall back to neutral values (quantity 1, everything else 0).
    Negative inputs are not rejected here; callers validate business rules.
    """
    quantity = to_decimal(quantity, ONE)
    unit_price = to_decimal(unit_price)
    tax_rate = to_decimal(tax_rate)
    discount = to_decimal(discount)

    gross = quantity * unit_price
    net = gross - gross * _percent_fraction(discount)
    total = net + net * _percent_fraction(tax_rate)
    return quantize_money(total)


@dataclass(frozen=True)
class Aggregate:
    subtotal: Decimal
    total_amount: Decimal


def compute_aggregate(item_totals: Iterable, tax_amount=None, discount_amount=None) -> Aggregate:
    # No floor at zero: a document-level discount larger than the subtotal yields a negative total.
    subtotal = sum((to_decimal(total) for total in item_totals), ZERO)
    total_amount = subtotal + to_decimal(tax_amount) - to_decimal(discount_amount)
    return Aggregate(subtotal=quantize_money(subtotal), total_amount=quantize_money(total_amount))
