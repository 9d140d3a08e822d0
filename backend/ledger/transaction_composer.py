"""
TRANSACTION COMPOSER

Aggregates line items into an unsaved, priced Transaction.

LOCKED FORMULAS:
- fuel (tax-inclusive pump price), per item then summed:
    item_subtotal = round2(item.total / (1 + tax_rate))
    item_tax      = item.total - item_subtotal
- product / service (tax-exclusive shelf price):
    subtotal = round2(SUM(item.total))
    tax      = round2(subtotal * tax_rate)
- total = subtotal + tax (both paths)
- loyalty_points_earned = floor(total * rate[kind])

The fuel/non-fuel asymmetry mirrors how pump and shelf prices are posted
and is kept as a business rule.

compose() is pure: it never touches inventory or loyalty balances, and
identical inputs always produce an identical Transaction.
"""

from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Sequence, Tuple, Union

from ledger.errors import ValidationError
from ledger.financial_precision import (
    Numeric,
    round2,
    safe_add,
    safe_multiply,
    to_decimal,
    validate_non_negative,
)
from ledger.line_items import parse_kind, validate_line_item
from ledger.loyalty_policy import LoyaltyPolicy, as_policy
from ledger.models import LineItem, PaymentStatus, Transaction, TransactionKind

DEFAULT_PAYMENT_METHOD = "Cash"


def parse_payment_status(payment_status: Union[None, str, PaymentStatus]) -> PaymentStatus:
    if payment_status is None:
        return PaymentStatus.PENDING
    if isinstance(payment_status, PaymentStatus):
        return payment_status
    try:
        return PaymentStatus(str(payment_status).lower())
    except ValueError:
        allowed = [s.value for s in PaymentStatus]
        raise ValidationError(
            f"Unknown payment status '{payment_status}'. Allowed: {allowed}",
            details={"field": "payment_status"}
        )


def fuel_item_breakdown(item: LineItem, tax_rate: Decimal) -> Tuple[Decimal, Decimal]:
    """Back out (subtotal, tax) from a tax-inclusive fuel item total."""
    item_subtotal = round2(to_decimal(item.total) / (Decimal('1') + tax_rate))
    return item_subtotal, to_decimal(item.total) - item_subtotal


def compute_totals(
    kind: TransactionKind,
    items: Sequence[LineItem],
    tax_rate: Decimal
) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (subtotal, tax, total) for already validated items."""
    if kind == TransactionKind.FUEL:
        subtotal = Decimal('0')
        tax = Decimal('0')
        for item in items:
            item_subtotal, item_tax = fuel_item_breakdown(item, tax_rate)
            subtotal += item_subtotal
            tax += item_tax
        total = safe_add(*(item.total for item in items))
        return subtotal, tax, total

    subtotal = round2(safe_add(*(item.total for item in items)))
    tax = round2(safe_multiply(subtotal, tax_rate))
    return subtotal, tax, subtotal + tax


def compose(
    kind: Union[str, TransactionKind],
    items: Sequence[LineItem],
    tax_rate: Numeric,
    loyalty_rates: Union[None, LoyaltyPolicy, Mapping] = None,
    *,
    payment_method: str = DEFAULT_PAYMENT_METHOD,
    payment_status: Union[None, str, PaymentStatus] = None,
    customer_ref: Optional[str] = None,
    employee_ref: Optional[str] = None,
    station_ref: Optional[str] = None,
    loyalty_points_redeemed: int = 0,
    notes: Optional[str] = None,
    date: Optional[datetime] = None
) -> Transaction:
    """
    Price a list of line items as one Transaction.

    Raises:
        ValidationError: empty items, an item whose kind differs from the
            transaction kind, a broken item invariant, a negative tax rate,
            or a malformed status / payment method / redemption
    """
    tx_kind = parse_kind(kind)
    items = list(items or [])
    if not items:
        raise ValidationError("A transaction needs at least one line item", details={"field": "items"})

    for index, item in enumerate(items):
        if item.kind != tx_kind:
            raise ValidationError(
                f"Item {index} is a {item.kind.value} item; "
                f"{tx_kind.value} transactions only accept {tx_kind.value} items",
                details={"field": "items", "index": index}
            )
        validate_line_item(item)

    rate = validate_non_negative(tax_rate, "tax_rate")
    status = parse_payment_status(payment_status)

    if not payment_method or not payment_method.strip():
        raise ValidationError("payment_method is required", details={"field": "payment_method"})
    if isinstance(loyalty_points_redeemed, bool) or not isinstance(loyalty_points_redeemed, int) \
            or loyalty_points_redeemed < 0:
        raise ValidationError(
            f"loyalty_points_redeemed must be a non-negative integer: {loyalty_points_redeemed!r}",
            details={"field": "loyalty_points_redeemed"}
        )

    subtotal, tax, total = compute_totals(tx_kind, items, rate)
    points = as_policy(loyalty_rates).points_for(tx_kind, total)

    return Transaction(
        kind=tx_kind,
        items=items,
        date=date,
        subtotal=subtotal,
        tax=tax,
        total=total,
        payment_method=payment_method.strip(),
        payment_status=status,
        loyalty_points_earned=points,
        loyalty_points_redeemed=loyalty_points_redeemed,
        customer_ref=customer_ref,
        employee_ref=employee_ref,
        station_ref=station_ref,
        notes=notes,
    )
