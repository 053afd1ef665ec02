"""
Amortization Calculator Module

Pure functions for the reducing-balance (annuity) method: the fixed monthly
installment (EMI) and the period-by-period principal/interest/balance split.
Every stored figure is rounded ROUND_HALF_UP to 2 decimal places; intermediate
values keep full Decimal precision.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List
import calendar

from .errors import ValidationError
from .money import Number, to_decimal, round_money

HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')


@dataclass(frozen=True)
class AmortizationRow:
    """One period of an amortization table"""
    period: int
    installment: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal


def validate_term(months: int) -> int:
    """Reject non-integer or non-positive terms"""
    if isinstance(months, bool) or not isinstance(months, int):
        raise ValidationError(f"tenure must be a whole number of months, got {months!r}")
    if months <= 0:
        raise ValidationError(f"tenure must be at least 1 month, got {months}")
    return months


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Convert an annual percentage rate (e.g. 12 for 12%) to a monthly fraction"""
    rate = to_decimal(annual_rate_percent, "interest_rate")
    if rate == 0:
        return Decimal('0')
    return rate / MONTHS_PER_YEAR / HUNDRED


def raw_installment_amount(principal: Number, annual_rate_percent: Number, months: int) -> Decimal:
    """
    Unrounded installment amount.

    Used as the running figure while building a schedule so that the final
    balance lands on zero; callers that store or display the amount use
    ``compute_installment_amount``.
    """
    validate_term(months)
    principal = to_decimal(principal, "principal")
    rate = monthly_rate(annual_rate_percent)

    if rate == 0:
        # No interest - simple division
        return principal / Decimal(months)

    # P * r * (1+r)^n / ((1+r)^n - 1)
    factor = (Decimal('1') + rate) ** months
    return principal * rate * factor / (factor - Decimal('1'))


def compute_installment_amount(principal: Number, annual_rate_percent: Number, months: int) -> Decimal:
    """
    Compute the fixed monthly installment (EMI).

    Args:
        principal: Amount being financed
        annual_rate_percent: Annual interest rate in percent (0 for interest-free)
        months: Number of monthly installments (>= 1)

    Returns:
        Installment amount rounded half-up to 2 decimal places

    Raises:
        ValidationError: If months <= 0 or an input is not numeric
    """
    return round_money(raw_installment_amount(principal, annual_rate_percent, months))


def amortization_table(principal: Number, annual_rate_percent: Number, months: int) -> List[AmortizationRow]:
    """
    Full period-by-period breakdown for a reducing-balance loan.

    Interest for a period is charged on the balance left after the previous
    period; the rest of the installment reduces the balance, which is clamped
    at zero so rounding drift never produces a negative final balance.

    A negative principal (down payment above the price) is not rejected:
    the installments come out negative and, because of the clamp, the
    balance reads 0 after the first period and then grows.
    """
    validate_term(months)
    balance = to_decimal(principal, "principal")
    rate = monthly_rate(annual_rate_percent)
    installment = raw_installment_amount(balance, annual_rate_percent, months)

    rows = []
    for period in range(1, months + 1):
        interest = balance * rate
        principal_part = installment - interest
        balance = max(Decimal('0'), balance - principal_part)
        rows.append(AmortizationRow(
            period=period,
            installment=round_money(installment),
            principal=round_money(principal_part),
            interest=round_money(interest),
            balance=round_money(balance)
        ))
    return rows


def add_months(start_date: date, months: int) -> date:
    """Add calendar months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)
