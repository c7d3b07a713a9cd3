"""
Pricing Calculator

Pure functions deriving line-item and purchase amounts. Monetary values are
stored with two decimal digits; products are computed at full precision and
rounded half-up once, at the stored value, so repeated recomputation never
compounds rounding error.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Union

from crm_backend.ledger.errors import NegativeAmountFailure, ValidationFailure

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

MIN_QUANTITY = 1
MAX_QUANTITY = 999999
MAX_UNIT_PRICE = Decimal("99999999.99")  # Numeric(10, 2)

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class ItemPricing:
    """Derived amounts of one purchase item."""
    unit_price: Decimal
    discount_amount: Decimal
    subtotal: Decimal


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str) -> Decimal:
    """Coerce a numeric input to a finite Decimal or raise ValidationFailure."""
    if isinstance(value, bool) or value is None:
        raise ValidationFailure(field, "must be a number", value)
    try:
        # str() keeps floats at their shortest repr instead of binary noise
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailure(field, "must be a number", value)
    if not result.is_finite():
        raise ValidationFailure(field, "must be finite", value)
    return result


def to_money(value: Any, field: str) -> Decimal:
    """Validate a non-negative monetary input and round it to cents."""
    amount = to_decimal(value, field)
    if amount < 0:
        raise ValidationFailure(field, "must be >= 0", value)
    return quantize_money(amount)


def validate_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationFailure("quantity", "must be an integer", quantity)
    if not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
        raise ValidationFailure(
            "quantity", f"must be between {MIN_QUANTITY} and {MAX_QUANTITY}", quantity
        )
    return quantity


def validate_discount_percentage(discount_percentage: Any) -> Decimal:
    percentage = to_decimal(discount_percentage, "discount_percentage")
    if not ZERO <= percentage <= HUNDRED:
        raise ValidationFailure(
            "discount_percentage", "must be between 0 and 100", discount_percentage
        )
    return percentage


def compute_item_pricing(unit_price: Number, quantity: int, discount_percentage: Number = ZERO) -> ItemPricing:
    """
    Price one purchase item.

    discount_amount = unit_price * quantity * discount_percentage / 100
    subtotal        = unit_price * quantity - discount_amount

    Raises:
        ValidationFailure: negative unit price, quantity outside
            [1, 999999] or discount percentage outside [0, 100]
    """
    price = to_money(unit_price, "unit_price")
    if price > MAX_UNIT_PRICE:
        raise ValidationFailure("unit_price", f"must be <= {MAX_UNIT_PRICE}", unit_price)
    qty = validate_quantity(quantity)
    percentage = validate_discount_percentage(discount_percentage)

    gross = price * qty
    if percentage == 0:
        discount_amount = ZERO
    else:
        discount_amount = quantize_money(gross * percentage / HUNDRED)

    return ItemPricing(
        unit_price=price,
        discount_amount=discount_amount,
        subtotal=quantize_money(gross - discount_amount),
    )


def compute_purchase_final(total_amount: Number, tax_amount: Number, discount_amount: Number) -> Decimal:
    """
    Compute a purchase's final amount: total + tax - discount.

    Raises:
        NegativeAmountFailure: the result is below zero. Never clamps;
            the caller decides how to handle the triggering mutation.
    """
    total = quantize_money(to_decimal(total_amount, "total_amount"))
    tax = quantize_money(to_decimal(tax_amount, "tax_amount"))
    discount = quantize_money(to_decimal(discount_amount, "discount_amount"))

    final = total + tax - discount
    if final < 0:
        raise NegativeAmountFailure(total, tax, discount, final)
    return final
