"""
Money Helpers Module

Fixed-point decimal handling for every monetary value in the engine.
NEVER uses float for monetary values: floats are converted through their
string form, and every stored amount is rounded to 2 decimal places.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Iterable, Union

from .errors import ValidationError

# High precision for intermediate amortization math
getcontext().prec = 28

TWO_PLACES = Decimal('0.01')
ZERO = Decimal('0.00')

# Rounding mode applied wherever an amount is stored (half away from zero)
MONEY_ROUNDING = ROUND_HALF_UP

Number = Union[Decimal, int, str, float]


def to_decimal(value: Number, field_name: str = "amount") -> Decimal:
    """
    Convert user input to Decimal.

    Args:
        value: Decimal, int, numeric string or float
        field_name: Name used in the validation message

    Returns:
        Decimal value (not rounded)

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def round_money(value: Number) -> Decimal:
    """Round an amount to 2 decimal places using ROUND_HALF_UP"""
    return to_decimal(value).quantize(TWO_PLACES, rounding=MONEY_ROUNDING)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Sum amounts, returning a 2-place Decimal (ZERO for an empty iterable)"""
    total = ZERO
    for value in values:
        total += value
    return round_money(total)


def format_money(value: Decimal) -> str:
    """Serialize an amount as a decimal string with exactly 2 fraction digits"""
    return str(round_money(value))


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    """Percentage change from previous to current, one decimal place (0 when previous is 0)"""
    if previous <= 0:
        return Decimal('0.0')
    change = (Decimal(current) - Decimal(previous)) / Decimal(previous) * Decimal('100')
    return change.quantize(Decimal('0.1'), rounding=MONEY_ROUNDING)
