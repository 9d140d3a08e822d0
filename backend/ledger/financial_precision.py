"""
MONEY & QUANTITY ARITHMETIC

This module provides:
1. Decimal precision lock (2-decimal places) for currency
2. Configurable precision for dispensed quantities (fuel volume)
3. Value validation (no negative amounts, strictly positive quantities)
4. Rounding at calculation boundary only

Binary floating point never takes part in a total or an equality check:
floats are converted through their string form before any arithmetic.
"""

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP, InvalidOperation
from typing import Union

from bson import Decimal128

from ledger.errors import ValidationError

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
DEFAULT_QUANTITY_PLACES = 2

Numeric = Union[float, int, str, Decimal, Decimal128]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert boolean {value!r} to Decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, Decimal128):
        result = value.to_decimal()
    elif isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Not a decimal number: {value!r}")
    else:
        raise ValidationError(f"Cannot convert {type(value).__name__} to Decimal")

    if not result.is_finite():
        raise ValidationError(f"Not a finite decimal number: {value!r}")
    return result


def round2(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places using round-half-up.
    This should be called ONLY when a monetary field is finalized.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def quantize_quantity(value: Numeric, places: int = DEFAULT_QUANTITY_PLACES) -> Decimal:
    """Round a dispensed quantity to `places` fraction digits (half-up)."""
    if places < 0:
        raise ValidationError(f"Quantity precision must be >= 0, got {places}")
    pattern = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(pattern, rounding=ROUND_HALF_UP)


def floor_points(value: Numeric) -> int:
    """Floor a point amount to a whole number of points."""
    return int(to_decimal(value).to_integral_value(rounding=ROUND_FLOOR))


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a value is not negative.
    Raises ValidationError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < Decimal('0'):
        raise ValidationError(
            f"'{field_name}' cannot be negative: {value}",
            details={"field": field_name}
        )
    return decimal_value


def validate_positive(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a value is strictly positive (> 0).
    Raises ValidationError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= Decimal('0'):
        raise ValidationError(
            f"'{field_name}' must be positive: {value}",
            details={"field": field_name}
        )
    return decimal_value


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def to_decimal128(value: Numeric) -> Decimal128:
    """Convert to Decimal128 for MongoDB storage (no rounding)."""
    return Decimal128(to_decimal(value))


def from_decimal128(value) -> Decimal:
    """Convert from Decimal128/float/int back to Decimal for calculations"""
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return to_decimal(value)
