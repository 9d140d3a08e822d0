"""
LINE-ITEM BUILDER

Constructs one sale item of kind fuel, product or service.

LOCKED FORMULA (all kinds):
- total = round2(quantity * unit_price)

Kind rules:
- fuel: fuel_type required; quantity rounded to the configured volume precision
- product: name or product_ref required
- service: quantity is always 1, unit_price is the flat service charge

Pure functions; no side effects.
"""

from decimal import Decimal
from typing import Optional, Union

from ledger.errors import ValidationError
from ledger.financial_precision import (
    DEFAULT_QUANTITY_PLACES,
    Numeric,
    quantize_quantity,
    round2,
    safe_multiply,
    to_decimal,
    validate_non_negative,
    validate_positive,
)
from ledger.models import LineItem, TransactionKind


def parse_kind(kind: Union[str, TransactionKind]) -> TransactionKind:
    """Coerce a kind name to TransactionKind, raising ValidationError if unknown."""
    if isinstance(kind, TransactionKind):
        return kind
    try:
        return TransactionKind(str(kind).lower())
    except ValueError:
        allowed = [k.value for k in TransactionKind]
        raise ValidationError(
            f"Unknown transaction kind '{kind}'. Allowed: {allowed}",
            details={"field": "kind"}
        )


def _require_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def build_item(
    kind: Union[str, TransactionKind],
    *,
    quantity: Numeric,
    unit_price: Numeric,
    fuel_type: Optional[str] = None,
    name: Optional[str] = None,
    product_ref: Optional[str] = None,
    tank_ref: Optional[str] = None,
    quantity_places: int = DEFAULT_QUANTITY_PLACES
) -> LineItem:
    """
    Build a validated LineItem.

    Raises:
        ValidationError: quantity <= 0, unit_price < 0, unknown kind, a missing
            kind-required field, or a service quantity other than 1
    """
    item_kind = parse_kind(kind)
    fuel_type = _require_text(fuel_type)
    name = _require_text(name)
    product_ref = _require_text(product_ref)

    qty = validate_positive(quantity, "quantity")
    price = validate_non_negative(unit_price, "unit_price")

    if item_kind == TransactionKind.FUEL:
        if not fuel_type:
            raise ValidationError("Fuel items require a fuel_type", details={"field": "fuel_type"})
        qty = validate_positive(quantize_quantity(qty, quantity_places), "quantity")
    elif item_kind == TransactionKind.PRODUCT:
        if not (name or product_ref):
            raise ValidationError(
                "Product items require a name or product_ref",
                details={"field": "name"}
            )
    elif item_kind == TransactionKind.SERVICE:
        if qty != Decimal('1'):
            raise ValidationError(
                f"Service items always have quantity 1, got {quantity}",
                details={"field": "quantity"}
            )

    return LineItem(
        kind=item_kind,
        quantity=qty,
        unit_price=price,
        total=round2(safe_multiply(qty, price)),
        fuel_type=fuel_type,
        name=name,
        product_ref=product_ref,
        tank_ref=tank_ref,
    )


def validate_line_item(item: LineItem) -> LineItem:
    """
    Re-check the invariants of an existing item.
    A wrong total is rejected, never corrected.
    """
    validate_positive(item.quantity, "quantity")
    validate_non_negative(item.unit_price, "unit_price")

    if item.kind == TransactionKind.FUEL and not _require_text(item.fuel_type):
        raise ValidationError("Fuel items require a fuel_type", details={"field": "fuel_type"})
    if item.kind == TransactionKind.PRODUCT and not (
        _require_text(item.name) or _require_text(item.product_ref)
    ):
        raise ValidationError("Product items require a name or product_ref", details={"field": "name"})
    if item.kind == TransactionKind.SERVICE and to_decimal(item.quantity) != Decimal('1'):
        raise ValidationError("Service items always have quantity 1", details={"field": "quantity"})

    expected = round2(safe_multiply(item.quantity, item.unit_price))
    if to_decimal(item.total) != expected:
        raise ValidationError(
            f"Item total {item.total} does not equal round2({item.quantity} * {item.unit_price}) = {expected}",
            details={"field": "total", "expected": str(expected)}
        )
    return item
