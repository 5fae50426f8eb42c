from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    """Parse a major-unit amount and round half-up to cents.

    Floats go through ``str`` so 0.1 stays 0.1.
    """
    if isinstance(value, bool):
        raise ValueError("amount must be numeric")
    try:
        parsed = Decimal(str(value if value is not None else "0").strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"invalid amount: {value!r}") from e
    if not parsed.is_finite():
        raise ValueError(f"invalid amount: {value!r}")
    return parsed.quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(quantity: int, unit_price) -> Decimal:
    return (Decimal(int(quantity)) * to_money(unit_price)).quantize(CENT, rounding=ROUND_HALF_UP)


def commission_on(subtotal, rate_percent) -> Decimal:
    raw = to_money(subtotal) * Decimal(str(rate_percent)) / HUNDRED
    return raw.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class OrderAmounts:
    subtotal: Decimal
    shipping_fee: Decimal
    total: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    payout_amount: Decimal
    line_totals: tuple


def compute_order_amounts(items, shipping_fee, commission_rate) -> OrderAmounts:
    """Money math for one order. Shipping never carries commission."""
    totals = tuple(line_total(int(i["quantity"]), i["unit_price"]) for i in items)
    subtotal = sum(totals, Decimal("0.00"))
    shipping = to_money(shipping_fee)
    rate = Decimal(str(commission_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    commission = commission_on(subtotal, rate)
    total = subtotal + shipping
    return OrderAmounts(
        subtotal=subtotal,
        shipping_fee=shipping,
        total=total,
        commission_rate=rate,
        commission_amount=commission,
        payout_amount=total - commission,
        line_totals=totals,
    )
