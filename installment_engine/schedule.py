"""
Repayment Schedule Module

Generates the ordered repayment entries of a new installment plan and defines
the per-installment status values. Entry status is derived once, at
generation time, from the due date and an explicit ``as_of`` date; after that
the only change an entry ever sees is being frozen to PAID.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .amortization import amortization_table, add_months
from .errors import ValidationError
from .money import Number


class EntryStatus(Enum):
    """Repayment entry states"""
    UPCOMING = "upcoming"   # Due in a later month
    DUE = "due"             # Due in the current calendar month
    OVERDUE = "overdue"     # Due in an earlier month and unpaid
    PAID = "paid"           # Payment posted (terminal)

    @classmethod
    def parse(cls, value: Any) -> 'EntryStatus':
        """Convert a stored or user-supplied value, rejecting anything unknown"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown installment status: {value!r}")


@dataclass
class RepaymentEntry:
    """Single installment of a plan's repayment schedule"""
    installment_no: int
    due_date: date
    emi_amount: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal
    status: EntryStatus
    paid_date: Optional[date] = None
    plan_id: str = ""

    @property
    def is_paid(self) -> bool:
        return self.status == EntryStatus.PAID

    @property
    def key(self) -> str:
        """Storage key, unique across all plans"""
        return entry_key(self.plan_id, self.installment_no)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to dictionary for storage"""
        return {
            'id': self.key,
            'plan_id': self.plan_id,
            'installment_no': self.installment_no,
            'due_date': self.due_date.isoformat(),
            'emi_amount': str(self.emi_amount),
            'principal': str(self.principal),
            'interest': str(self.interest),
            'balance': str(self.balance),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentEntry':
        """Convert dictionary to entry"""
        paid_date = data.get('paid_date')
        return cls(
            plan_id=data.get('plan_id', ""),
            installment_no=int(data['installment_no']),
            due_date=date.fromisoformat(data['due_date']),
            emi_amount=Decimal(data['emi_amount']),
            principal=Decimal(data['principal']),
            interest=Decimal(data['interest']),
            balance=Decimal(data['balance']),
            status=EntryStatus.parse(data['status']),
            paid_date=date.fromisoformat(paid_date) if paid_date else None
        )


def entry_key(plan_id: str, installment_no: int) -> str:
    return f"{plan_id}:{installment_no}"


def classify_due_status(due_date: date, as_of: date) -> EntryStatus:
    """
    Status of an unpaid installment as seen on ``as_of``.

    An installment falling in the same calendar month as ``as_of`` is DUE,
    one in an earlier month is OVERDUE, anything later is UPCOMING.
    """
    if (due_date.year, due_date.month) == (as_of.year, as_of.month):
        return EntryStatus.DUE
    if due_date < as_of:
        return EntryStatus.OVERDUE
    return EntryStatus.UPCOMING


def generate_schedule(
    financed_amount: Number,
    annual_rate_percent: Number,
    tenure_months: int,
    start_date: date,
    as_of: date
) -> List[RepaymentEntry]:
    """
    Build the repayment schedule for a new plan.

    Args:
        financed_amount: Principal being amortized
        annual_rate_percent: Annual interest rate in percent
        tenure_months: Number of monthly installments
        start_date: Plan start; installment i falls due ``i`` calendar months later
        as_of: The "today" used to derive each entry's initial status

    Returns:
        Entries ordered by installment number 1..tenure_months. A back-dated
        start produces OVERDUE entries straight away.
    """
    rows = amortization_table(financed_amount, annual_rate_percent, tenure_months)

    schedule = []
    for row in rows:
        due_date = add_months(start_date, row.period)
        schedule.append(RepaymentEntry(
            installment_no=row.period,
            due_date=due_date,
            emi_amount=row.installment,
            principal=row.principal,
            interest=row.interest,
            balance=row.balance,
            status=classify_due_status(due_date, as_of)
        ))
    return schedule
