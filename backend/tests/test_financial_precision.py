"""
Money & quantity arithmetic tests
Testing: round-half-up, exact conversion, point flooring, quantity precision
"""
from decimal import Decimal

import pytest
from bson import Decimal128

from ledger.errors import ValidationError
from ledger.financial_precision import (
    floor_points,
    from_decimal128,
    quantize_quantity,
    round2,
    safe_add,
    to_decimal,
    to_decimal128,
    validate_non_negative,
    validate_positive,
)


class TestRounding:
    """round2 is half-up, not banker's rounding"""

    @pytest.mark.parametrize("value,expected", [
        ("2.675", "2.68"),
        ("2.665", "2.67"),
        ("0.005", "0.01"),
        ("0.5982", "0.60"),
        ("33.8679", "33.87"),
        ("10", "10.00"),
    ])
    def test_round2_half_up(self, value, expected):
        assert round2(Decimal(value)) == Decimal(expected)

    def test_round2_keeps_two_places(self):
        assert str(round2(Decimal("35.9"))) == "35.90"

    def test_floats_go_through_their_string_form(self):
        assert to_decimal(3.59) == Decimal("3.59")
        assert safe_add(0.1, 0.2) == Decimal("0.3")

    def test_to_decimal_does_not_round(self):
        assert to_decimal("1.23456") == Decimal("1.23456")


class TestConversionErrors:

    @pytest.mark.parametrize("value", [True, "abc", "NaN", "Infinity", None, [1]])
    def test_rejected_values(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value)

    def test_validate_positive(self):
        assert validate_positive("0.01", "quantity") == Decimal("0.01")
        with pytest.raises(ValidationError) as exc:
            validate_positive(0, "quantity")
        assert exc.value.details["field"] == "quantity"

    def test_validate_non_negative(self):
        assert validate_non_negative(0, "unit_price") == Decimal("0")
        with pytest.raises(ValidationError):
            validate_non_negative("-0.01", "unit_price")


class TestPointsAndQuantities:

    def test_floor_points(self):
        assert floor_points(Decimal("359.0")) == 359
        assert floor_points(Decimal("52.85")) == 52
        assert floor_points(Decimal("0.99")) == 0

    def test_quantize_quantity_default_two_places(self):
        assert quantize_quantity("10.005") == Decimal("10.01")
        assert quantize_quantity("12.3") == Decimal("12.30")

    def test_quantize_quantity_configurable(self):
        assert quantize_quantity("10.0049", places=3) == Decimal("10.005")
        assert quantize_quantity("10.6", places=0) == Decimal("11")

    def test_quantize_quantity_rejects_negative_places(self):
        with pytest.raises(ValidationError):
            quantize_quantity("1", places=-1)


class TestDecimal128:

    def test_storage_conversion_is_exact(self):
        stored = to_decimal128(Decimal("35.90"))
        assert isinstance(stored, Decimal128)
        assert from_decimal128(stored) == Decimal("35.90")
        assert to_decimal(stored) == Decimal("35.90")
