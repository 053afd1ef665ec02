"""
Tests for money helpers
"""

import pytest
from decimal import Decimal

from installment_engine.errors import ValidationError
from installment_engine.money import (
    to_decimal, round_money, sum_money, format_money, percent_change, ZERO
)


class TestMoneyHelpers:
    """Test decimal conversion and rounding"""

    def test_floats_convert_through_their_string_form(self):
        assert to_decimal(0.1) == Decimal('0.1')

    @pytest.mark.parametrize("value", ["abc", None, True, "NaN", "Infinity"])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value)

    def test_round_half_up(self):
        assert round_money(Decimal('2.675')) == Decimal('2.68')
        assert round_money(Decimal('2.665')) == Decimal('2.67')
        assert round_money(Decimal('-2.675')) == Decimal('-2.68')

    def test_sum_money(self):
        assert sum_money([]) == ZERO
        assert sum_money([Decimal('0.105'), Decimal('0.1')]) == Decimal('0.21')

    def test_format_money(self):
        assert format_money(Decimal('5')) == "5.00"
        assert format_money(Decimal('7720.255')) == "7720.26"

    def test_percent_change(self):
        assert percent_change(Decimal('150'), Decimal('100')) == Decimal('50.0')
        assert percent_change(Decimal('2'), Decimal('3')) == Decimal('-33.3')
        assert percent_change(Decimal('10'), Decimal('0')) == Decimal('0.0')
