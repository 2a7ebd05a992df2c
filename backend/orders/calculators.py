"""
Order financial calculator.

Pure functions only: given the order lines and the discount inputs stored on
the order, produce the derived totals. No database access, so the same logic
backs both the recompute service and property tests.

Discount vectors are applied in a fixed order:
    1. voucher discount (re-derived from the voucher terms on every recompute)
    2. manual discount (percent of subtotal, or fixed amount)
and the total is floored at zero:
    total = max(0, subtotal - voucher_discount - discount_amount)

A voucher whose minimum order amount is no longer met yields
``voucher_valid=False`` and no voucher discount; the caller decides what to
do with the stale code.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from payments.money import ZERO, clamp, money, percent_of

PERCENTAGE = "PERCENTAGE"
FIXED = "FIXED"


@dataclass(frozen=True)
class VoucherTerms:
    """The rule a voucher was accepted under, kept on the order so it can be re-applied."""

    discount_type: str
    discount_value: Decimal
    min_order_amount: Decimal = ZERO
    max_discount_amount: Optional[Decimal] = None

    def discount_for(self, subtotal: Decimal, currency: Optional[str] = None) -> Optional[Decimal]:
        """Discount at ``subtotal``, or None when the order no longer qualifies."""
        if subtotal < money(self.min_order_amount or ZERO, currency):
            return None
        if self.discount_type == PERCENTAGE:
            discount = percent_of(subtotal, self.discount_value, currency)
            if self.max_discount_amount is not None:
                discount = min(discount, money(self.max_discount_amount, currency))
        else:
            discount = money(self.discount_value or ZERO, currency)
        return clamp(discount, subtotal)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    voucher_discount: Decimal
    discount_amount: Decimal
    total: Decimal
    voucher_valid: bool = True


def calculate_subtotal(lines: Iterable[Tuple[int, Decimal]], currency: Optional[str] = None) -> Decimal:
    """``lines`` is an iterable of ``(quantity, unit_price)`` pairs."""
    subtotal = Decimal("0.00")
    for quantity, unit_price in lines:
        subtotal += Decimal(quantity) * Decimal(unit_price)
    return money(subtotal, currency)


def calculate_manual_discount(
    subtotal: Decimal,
    discount_type: str,
    discount_value: Decimal,
    currency: Optional[str] = None,
) -> Decimal:
    """Raw manual discount before clamping. Percent discounts follow the current subtotal."""
    if not discount_type or not discount_value:
        return ZERO
    if discount_type == PERCENTAGE:
        return percent_of(subtotal, discount_value, currency)
    if discount_type == FIXED:
        return money(discount_value, currency)
    raise ValueError(f"Unknown discount type: {discount_type}")


def compute_totals(
    lines: Iterable[Tuple[int, Decimal]],
    discount_type: str = "",
    discount_value: Decimal = ZERO,
    voucher_discount: Decimal = ZERO,
    currency: Optional[str] = None,
    voucher: Optional[VoucherTerms] = None,
) -> OrderTotals:
    """
    ``voucher`` takes precedence over a flat ``voucher_discount`` amount: the
    discount is recomputed from the terms against the current subtotal.
    """
    subtotal = calculate_subtotal(lines, currency)

    voucher_valid = True
    if voucher is not None:
        recomputed = voucher.discount_for(subtotal, currency)
        voucher_valid = recomputed is not None
        voucher_amount = recomputed if voucher_valid else ZERO
    else:
        voucher_amount = clamp(money(voucher_discount or ZERO, currency), subtotal)
    remaining = subtotal - voucher_amount

    manual = calculate_manual_discount(subtotal, discount_type, discount_value, currency)
    manual = clamp(manual, remaining)

    total = max(ZERO, subtotal - voucher_amount - manual)
    return OrderTotals(
        subtotal=subtotal,
        voucher_discount=voucher_amount,
        discount_amount=manual,
        total=money(total, currency),
        voucher_valid=voucher_valid,
    )
