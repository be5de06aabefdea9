"""
Order totals: subtotal, tax, shipping and grand total from line items.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, NamedTuple, Union

from orders.errors import ValidationError

TAX_RATE = Decimal("0.08")
FREE_SHIPPING_THRESHOLD = Decimal("2000")
FLAT_SHIPPING = Decimal("199")
CENT = Decimal("0.01")

Number = Union[Decimal, int, str]


class OrderTotals(NamedTuple):
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal


def _as_decimal(value: Number) -> Decimal:
    # floats go through str() so 0.1 stays 0.1
    return value if isinstance(value, Decimal) else Decimal(str(value))


def calculate_totals(lines: Iterable[tuple[Number, int]]) -> OrderTotals:
    """
    Compute totals for ``(unit_price, quantity)`` pairs.

    Tax is 8% of the subtotal rounded half-up to cents; shipping is free from
    2000 upwards and a flat 199 below that. Nothing is computed unless every
    line is valid.
    """
    lines = [(_as_decimal(price), quantity) for price, quantity in lines]

    errors = []
    for index, (price, quantity) in enumerate(lines):
        if quantity < 1:
            errors.append({"index": index, "field": "quantity", "message": "Quantity must be at least 1"})
        if price < 0:
            errors.append({"index": index, "field": "price", "message": "Price cannot be negative"})
    if errors:
        raise ValidationError("Invalid order items", errors=errors)

    subtotal = sum((price * quantity for price, quantity in lines), Decimal("0"))
    tax = (subtotal * TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping_cost = Decimal("0") if subtotal >= FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        shipping_cost=shipping_cost,
        total=subtotal + tax + shipping_cost,
    )
