"""
Test suite for the amortization calculator

Tests the fixed installment formula, the period-by-period breakdown and
calendar month arithmetic. All money math must be exact to the cent.
"""

import pytest
from decimal import Decimal
from datetime import date

from installment_engine.amortization import (
    compute_installment_amount, raw_installment_amount, amortization_table,
    monthly_rate, validate_term, add_months
)
from installment_engine.errors import ValidationError


class TestInstallmentAmount:
    """Test the fixed monthly installment (EMI)"""

    def test_reducing_balance_reference_case(self):
        """100,000 at 12% over 12 months is 8,884.88 per month"""
        emi = compute_installment_amount(Decimal('100000'), Decimal('12'), 12)
        assert emi == Decimal('8884.88')

    def test_zero_rate_is_simple_division(self):
        """Interest-free plans divide the principal evenly"""
        assert compute_installment_amount(Decimal('12000'), Decimal('0'), 12) == Decimal('1000.00')
        assert raw_installment_amount(Decimal('100'), 0, 3) == Decimal('100') / Decimal('3')

    def test_zero_rate_rounds_half_up(self):
        """1000 / 3 = 333.333... rounds to 333.33, 1000.01 / 2 = 500.005 rounds up"""
        assert compute_installment_amount(Decimal('1000'), 0, 3) == Decimal('333.33')
        assert compute_installment_amount(Decimal('1000.01'), 0, 2) == Decimal('500.01')

    def test_single_month_term(self):
        """A one-month plan repays principal plus one month of interest"""
        emi = compute_installment_amount(Decimal('1200'), Decimal('12'), 1)
        assert emi == Decimal('1212.00')

    def test_result_has_two_decimal_places(self):
        emi = compute_installment_amount(Decimal('45000'), Decimal('10'), 6)
        assert emi == emi.quantize(Decimal('0.01'))
        assert Decimal('7720.20') < emi < Decimal('7720.35')

    def test_accepts_int_and_string_inputs(self):
        assert compute_installment_amount(100000, "12", 12) == Decimal('8884.88')

    @pytest.mark.parametrize("months", [0, -1, -12])
    def test_rejects_non_positive_term(self, months):
        with pytest.raises(ValidationError):
            compute_installment_amount(Decimal('1000'), Decimal('10'), months)

    @pytest.mark.parametrize("months", [1.5, "6", True, None])
    def test_rejects_non_integer_term(self, months):
        with pytest.raises(ValidationError):
            validate_term(months)

    def test_rejects_non_numeric_principal(self):
        with pytest.raises(ValidationError):
            compute_installment_amount("lots", Decimal('10'), 6)

    def test_monthly_rate(self):
        assert monthly_rate(Decimal('12')) == Decimal('0.01')
        assert monthly_rate(0) == Decimal('0')


class TestAmortizationTable:
    """Test the period-by-period breakdown"""

    def test_row_count_and_periods(self):
        rows = amortization_table(Decimal('100000'), Decimal('12'), 12)
        assert len(rows) == 12
        assert [r.period for r in rows] == list(range(1, 13))

    def test_first_period_split(self):
        """First month: interest on the full principal, the rest reduces the balance"""
        rows = amortization_table(Decimal('100000'), Decimal('12'), 12)
        first = rows[0]
        assert first.installment == Decimal('8884.88')
        assert first.interest == Decimal('1000.00')
        assert first.principal == Decimal('7884.88')
        assert first.balance == Decimal('92115.12')

    def test_balance_reaches_zero_and_never_increases(self):
        rows = amortization_table(Decimal('45000'), Decimal('10'), 6)
        balances = [r.balance for r in rows]
        assert all(later <= earlier for earlier, later in zip(balances, balances[1:]))
        assert abs(rows[-1].balance) <= Decimal('0.01')
        assert rows[-1].balance >= 0

    def test_principal_portions_sum_to_principal(self):
        for principal, rate, months in [
            (Decimal('100000'), Decimal('12'), 12),
            (Decimal('45000'), Decimal('10'), 6),
            (Decimal('999.99'), Decimal('29.9'), 7),
            (Decimal('250000'), Decimal('18'), 36),
        ]:
            rows = amortization_table(principal, rate, months)
            total = sum(r.principal for r in rows)
            assert abs(total - principal) <= Decimal('0.01') * months

    def test_interest_declines_over_time(self):
        rows = amortization_table(Decimal('100000'), Decimal('12'), 12)
        interest = [r.interest for r in rows]
        assert interest == sorted(interest, reverse=True)

    def test_zero_rate_table(self):
        rows = amortization_table(Decimal('600'), 0, 3)
        assert [r.principal for r in rows] == [Decimal('200.00')] * 3
        assert [r.interest for r in rows] == [Decimal('0.00')] * 3
        assert [r.balance for r in rows] == [Decimal('400.00'), Decimal('200.00'), Decimal('0.00')]

    def test_negative_principal_is_not_rejected(self):
        # Down payment above the price: the installments are negative and
        # the clamped balance rebounds after the first period
        rows = amortization_table(Decimal('-300'), 0, 3)
        assert [r.installment for r in rows] == [Decimal('-100.00')] * 3
        assert [r.balance for r in rows] == [Decimal('0.00'), Decimal('100.00'), Decimal('200.00')]


class TestAddMonths:
    """Test calendar month addition"""

    def test_simple_addition(self):
        assert add_months(date(2024, 1, 1), 1) == date(2024, 2, 1)
        assert add_months(date(2024, 1, 15), 6) == date(2024, 7, 15)

    def test_year_rollover(self):
        assert add_months(date(2024, 11, 1), 3) == date(2025, 2, 1)
        assert add_months(date(2024, 1, 1), 12) == date(2025, 1, 1)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 3, 31), 1) == date(2024, 4, 30)

    def test_negative_months(self):
        assert add_months(date(2024, 1, 15), -1) == date(2023, 12, 15)
