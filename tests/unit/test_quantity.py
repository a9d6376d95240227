"""
Unit tests for quantity coercion and rounding.

Verifies:
- Exact Decimal handling
- Float, bool, NaN and infinity rejection
- Rounding determinism
"""

from decimal import Decimal

import pytest

from stock_kernel.db.types import (
    QUANTITY_DECIMAL_PLACES,
    round_quantity,
    to_quantity,
)
from stock_kernel.exceptions import InvalidQuantityError


class TestToQuantity:
    """Tests for to_quantity."""

    def test_decimal_passes_through(self):
        assert to_quantity(Decimal("3.5")) == Decimal("3.5")

    def test_int(self):
        assert to_quantity(42) == Decimal("42")

    def test_numeric_string(self):
        assert to_quantity(" 0.125 ") == Decimal("0.125")

    def test_negative_allowed(self):
        """Signed deltas are quantities too; sign checks belong to callers."""
        assert to_quantity("-20") == Decimal("-20")

    def test_float_rejected(self):
        with pytest.raises(InvalidQuantityError) as exc_info:
            to_quantity(0.1)
        assert exc_info.value.code == "INVALID_QUANTITY"

    def test_bool_rejected(self):
        with pytest.raises(InvalidQuantityError):
            to_quantity(True)

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity", Decimal("NaN")])
    def test_non_finite_rejected(self, value):
        with pytest.raises(InvalidQuantityError):
            to_quantity(value)

    def test_garbage_string_rejected(self):
        with pytest.raises(InvalidQuantityError) as exc_info:
            to_quantity("seven", field="units")
        assert "units" in exc_info.value.reason

    def test_unsupported_type_rejected(self):
        with pytest.raises(InvalidQuantityError):
            to_quantity([1])


class TestRoundQuantity:
    """Tests for round_quantity."""

    def test_default_precision(self):
        assert QUANTITY_DECIMAL_PLACES == 9
        assert round_quantity(Decimal("1.0000000004")) == Decimal("1.000000000")

    def test_half_up(self):
        assert round_quantity(Decimal("2.5"), 0) == Decimal("3")
        assert round_quantity(Decimal("0.0000000005")) == Decimal("0.000000001")

    def test_deterministic(self):
        value = Decimal("333.3333333333333")
        assert len({round_quantity(value) for _ in range(50)}) == 1
