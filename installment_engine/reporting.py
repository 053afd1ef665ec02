"""
Reporting Engine Module

Read-only views over the persisted plans and repayment entries: the dashboard
snapshot and the named installment reports. Every figure is derived on demand
from a storage snapshot, relative to an explicit ``as_of`` date; nothing here
writes back.

Entry statuses are read as stored except that an unpaid entry is re-derived
against ``as_of`` with the same rule used at schedule generation, so a stale
"upcoming" entry whose month has passed counts as overdue. Paid entries are
never reclassified.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Any, Tuple
from enum import Enum

from .amortization import add_months
from .directory import CustomerDirectory, CustomerRef, ProductCatalog, ProductRef
from .errors import ValidationError
from .money import ZERO, round_money, sum_money, percent_change
from .plans import InstallmentPlan, InstallmentPlanManager, PlanStatus
from .schedule import EntryStatus, RepaymentEntry, classify_due_status


class ReportKind(Enum):
    """Named installment reports"""
    INSTALLMENT_COLLECTION = "installment_collection"
    OUTSTANDING_BALANCE = "outstanding_balance"
    DEFAULTERS = "defaulters"
    INSTALLMENT_SALES_SUMMARY = "installment_sales_summary"
    PROFIT_LOSS = "profit_loss"
    DUE_TODAY = "due_today"
    UPCOMING_DUES = "upcoming_dues"

    @classmethod
    def parse(cls, value: Any) -> 'ReportKind':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown report: {value!r}")


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range; an open end matches everything on that side"""
    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self):
        if self.start and self.end and self.start > self.end:
            raise ValidationError(
                f"Date range start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, value: Optional[date]) -> bool:
        if value is None:
            return False
        if self.start and value < self.start:
            return False
        if self.end and value > self.end:
            return False
        return True


AGING_BUCKETS = (
    ("0_30", 0, 30),
    ("31_60", 31, 60),
    ("61_90", 61, 90),
    ("90_plus", 91, None),
)


# Formula functions

def effective_status(entry: RepaymentEntry, as_of: date) -> EntryStatus:
    """Entry status as seen on ``as_of`` (paid entries stay paid)"""
    if entry.is_paid:
        return EntryStatus.PAID
    return classify_due_status(entry.due_date, as_of)


def outstanding_balance(plan: InstallmentPlan) -> Decimal:
    """totalPayable - downPayment - EMI of every paid entry"""
    paid = sum_money(e.emi_amount for e in plan.schedule if e.is_paid)
    return plan.total_payable - plan.down_payment - paid


def overdue_entries(plan: InstallmentPlan, as_of: date) -> List[RepaymentEntry]:
    return [e for e in plan.schedule if effective_status(e, as_of) == EntryStatus.OVERDUE]


def overdue_amount(plan: InstallmentPlan, as_of: date) -> Decimal:
    """Full EMI of each unpaid overdue entry"""
    return sum_money(e.emi_amount for e in overdue_entries(plan, as_of))


def collections_in_period(entries: Iterable[RepaymentEntry], period: DateRange) -> Decimal:
    """EMI of entries paid within the period"""
    return sum_money(e.emi_amount for e in entries if e.is_paid and period.contains(e.paid_date))


def days_overdue(entry: RepaymentEntry, as_of: date) -> int:
    return max(0, (as_of - entry.due_date).days)


def month_start(value: date) -> date:
    return value.replace(day=1)


def month_range(value: date) -> DateRange:
    start = month_start(value)
    return DateRange(start, add_months(start, 1) - timedelta(days=1))


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    as_of: date
    period: DateRange
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    breakdowns: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return jsonable({
            'report_id': self.report_id,
            'generated_at': self.generated_at,
            'as_of': self.as_of,
            'period_start': self.period.start,
            'period_end': self.period.end,
            'row_count': len(self.data),
            'data': self.data,
            'totals': self.totals,
            'breakdowns': self.breakdowns
        })


def jsonable(value: Any) -> Any:
    """Decimals to strings, dates to ISO strings, enums to their values"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


class _Names:
    """Per-report cache of customer and product lookups"""

    def __init__(self, customers: CustomerDirectory, products: ProductCatalog):
        self._customers = customers
        self._products = products
        self._customer_cache: Dict[str, Optional[CustomerRef]] = {}
        self._product_cache: Dict[str, Optional[ProductRef]] = {}

    def customer(self, customer_id: str) -> Optional[CustomerRef]:
        if customer_id not in self._customer_cache:
            self._customer_cache[customer_id] = self._customers.get_customer(customer_id)
        return self._customer_cache[customer_id]

    def product(self, product_id: str) -> Optional[ProductRef]:
        if product_id not in self._product_cache:
            self._product_cache[product_id] = self._products.get_product(product_id)
        return self._product_cache[product_id]

    def plan_fields(self, plan: InstallmentPlan) -> Dict[str, Any]:
        customer = self.customer(plan.customer_id)
        product = self.product(plan.product_id)
        return {
            'plan_id': plan.id,
            'customer_id': plan.customer_id,
            'customer_name': customer.name if customer else "Unknown",
            'customer_phone': customer.phone if customer else "",
            'customer_address': customer.address if customer else "",
            'product_name': product.name if product else "Unknown",
        }


class ReportingEngine:
    """
    Dashboard and report generation for installment plans
    """

    def __init__(
        self,
        plan_manager: InstallmentPlanManager,
        customer_directory: CustomerDirectory,
        product_catalog: ProductCatalog,
        upcoming_window_days: int = 7,
        list_limit: int = 10,
        recent_plans_limit: int = 5,
        trend_months: int = 12
    ):
        self.plan_manager = plan_manager
        self.customer_directory = customer_directory
        self.product_catalog = product_catalog
        self.upcoming_window_days = upcoming_window_days
        self.list_limit = list_limit
        self.recent_plans_limit = recent_plans_limit
        self.trend_months = trend_months

        self._reports: Dict[ReportKind, Callable[[date, DateRange], ReportResult]] = {
            ReportKind.INSTALLMENT_COLLECTION: self.installment_collection_report,
            ReportKind.OUTSTANDING_BALANCE: self.outstanding_balance_report,
            ReportKind.DEFAULTERS: self.defaulters_report,
            ReportKind.INSTALLMENT_SALES_SUMMARY: self.installment_sales_summary,
            ReportKind.PROFIT_LOSS: self.profit_loss_report,
            ReportKind.DUE_TODAY: self.due_today_report,
            ReportKind.UPCOMING_DUES: self.upcoming_dues_report,
        }

    def _names(self) -> _Names:
        return _Names(self.customer_directory, self.product_catalog)

    def get_report(self, kind: Any, as_of: date, date_range: Optional[DateRange] = None) -> ReportResult:
        """
        Run a report by kind

        Raises:
            ValidationError: Unknown report kind
        """
        report = self._reports[ReportKind.parse(kind)]
        return report(as_of, date_range or DateRange())

    def _result(self, kind: ReportKind, as_of: date, period: DateRange, data: List[Dict[str, Any]],
                totals: Dict[str, Any], breakdowns: Optional[Dict[str, Any]] = None) -> ReportResult:
        return ReportResult(
            report_id=kind.value,
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            period=period,
            data=data,
            totals=totals,
            breakdowns=breakdowns or {}
        )

    def installment_collection_report(self, as_of: date, period: DateRange) -> ReportResult:
        """
        Collections in the period (by paid date) against the installments
        currently due or overdue on non-cancelled plans.
        """
        names = self._names()
        paid_rows = []
        due_amount = ZERO
        overdue_amt = ZERO
        due_count = 0
        overdue_count = 0

        for plan in self.plan_manager.snapshot():
            if plan.status == PlanStatus.CANCELLED:
                continue
            for entry in plan.schedule:
                status = effective_status(entry, as_of)
                if status == EntryStatus.PAID:
                    if period.contains(entry.paid_date):
                        paid_rows.append({
                            **names.plan_fields(plan),
                            'installment_no': entry.installment_no,
                            'due_date': entry.due_date,
                            'paid_date': entry.paid_date,
                            'amount': entry.emi_amount
                        })
                elif status == EntryStatus.DUE:
                    due_count += 1
                    due_amount += entry.emi_amount
                elif status == EntryStatus.OVERDUE:
                    overdue_count += 1
                    overdue_amt += entry.emi_amount

        paid_rows.sort(key=lambda r: (r['paid_date'], r['plan_id'], r['installment_no']), reverse=True)

        by_date: Dict[date, List[Decimal]] = {}
        for row in paid_rows:
            by_date.setdefault(row['paid_date'], []).append(row['amount'])
        collection_by_date = [
            {'date': day, 'count': len(amounts), 'amount': sum_money(amounts)}
            for day, amounts in sorted(by_date.items(), reverse=True)
        ]

        collected = sum_money(r['amount'] for r in paid_rows)
        totals = {
            'total_installments': len(paid_rows) + due_count + overdue_count,
            'collected_count': len(paid_rows),
            'pending_count': due_count,
            'late_count': overdue_count,
            'amount_collected': collected,
            'pending_amount': round_money(due_amount),
            'late_amount': round_money(overdue_amt),
            'total_amount_due': sum_money([due_amount, overdue_amt])
        }
        return self._result(ReportKind.INSTALLMENT_COLLECTION, as_of, period, paid_rows, totals,
                            {'collection_by_date': collection_by_date})

    def outstanding_balance_report(self, as_of: date, period: DateRange) -> ReportResult:
        """Remaining balance of every active plan with overdue aging as of ``as_of``"""
        names = self._names()
        aging = {name: {'amount': ZERO, 'count': 0} for name, _, _ in AGING_BUCKETS}
        rows = []

        for plan in self.plan_manager.snapshot():
            if plan.status != PlanStatus.ACTIVE:
                continue
            remaining = outstanding_balance(plan)
            late = overdue_entries(plan, as_of)
            for entry in late:
                bucket = _aging_bucket(days_overdue(entry, as_of))
                aging[bucket]['amount'] += entry.emi_amount
                aging[bucket]['count'] += 1
            if remaining > 0:
                rows.append({
                    **names.plan_fields(plan),
                    'remaining_balance': remaining,
                    'overdue_amount': sum_money(e.emi_amount for e in late),
                    'max_days_overdue': max((days_overdue(e, as_of) for e in late), default=0)
                })

        rows.sort(key=lambda r: (r['overdue_amount'], r['max_days_overdue']), reverse=True)
        for bucket in aging.values():
            bucket["amount"] = round_money(bucket["amount"])

        totals = {
            'total_outstanding': sum_money(r['remaining_balance'] for r in rows),
            'total_overdue': sum_money(r['overdue_amount'] for r in rows),
            'total_customers': len({r['customer_id'] for r in rows})
        }
        return self._result(ReportKind.OUTSTANDING_BALANCE, as_of, period, rows, totals, {'aging': aging})

    def defaulters_report(self, as_of: date, period: DateRange) -> ReportResult:
        """Active or defaulted plans with at least one overdue installment"""
        names = self._names()
        rows = []

        for plan in self.plan_manager.snapshot():
            if plan.status not in (PlanStatus.ACTIVE, PlanStatus.DEFAULTED):
                continue
            late = overdue_entries(plan, as_of)
            if not late:
                continue
            paid_dates = [e.paid_date for e in plan.schedule if e.is_paid and e.paid_date]
            rows.append({
                **names.plan_fields(plan),
                'plan_status': plan.status.value,
                'missed_installments': len(late),
                'overdue_amount': sum_money(e.emi_amount for e in late),
                'max_days_overdue': max(days_overdue(e, as_of) for e in late),
                'last_paid_date': max(paid_dates) if paid_dates else None
            })

        rows.sort(key=lambda r: r['max_days_overdue'], reverse=True)
        totals = {
            'total_defaulters': len(rows),
            'total_overdue_amount': sum_money(r['overdue_amount'] for r in rows)
        }
        return self._result(ReportKind.DEFAULTERS, as_of, period, rows, totals)

    def installment_sales_summary(self, as_of: date, period: DateRange) -> ReportResult:
        """Plans created in the period, broken down by tenure and by month"""
        plans = [p for p in self.plan_manager.snapshot()
                 if period.contains(p.created_at.date())]

        by_tenure: Dict[int, List[InstallmentPlan]] = {}
        by_month: Dict[str, List[InstallmentPlan]] = {}
        for plan in plans:
            by_tenure.setdefault(plan.tenure, []).append(plan)
            by_month.setdefault(plan.created_at.strftime("%Y-%m"), []).append(plan)

        tenure_breakdown = [
            {
                'tenure': tenure,
                'label': f"{tenure} months",
                'count': len(group),
                'total_amount': sum_money(p.total_payable for p in group)
            }
            for tenure, group in sorted(by_tenure.items())
        ]
        monthly_sales = [
            {
                'month': month,
                'contracts': len(group),
                'down_payments': sum_money(p.down_payment for p in group),
                'financed_amount': sum_money(p.financed_amount for p in group)
            }
            for month, group in sorted(by_month.items())
        ]

        counts = _status_counts(plans)
        totals = {
            'total_contracts': len(plans),
            'active_contracts': counts[PlanStatus.ACTIVE.value],
            'completed_contracts': counts[PlanStatus.COMPLETED.value],
            'defaulted_contracts': counts[PlanStatus.DEFAULTED.value],
            'cancelled_contracts': counts[PlanStatus.CANCELLED.value],
            'total_down_payments': sum_money(p.down_payment for p in plans),
            'total_financed_amount': sum_money(p.financed_amount for p in plans),
            'total_revenue': sum_money(p.total_payable for p in plans)
        }
        return self._result(ReportKind.INSTALLMENT_SALES_SUMMARY, as_of, period, monthly_sales, totals,
                            {'tenure_breakdown': tenure_breakdown, 'monthly_sales': monthly_sales})

    def profit_loss_report(self, as_of: date, period: DateRange) -> ReportResult:
        """
        Income from installment sales: interest earned on entries paid in the
        period, collections, and the unpaid balance of defaulted plans as bad debt.
        """
        snapshot = self.plan_manager.snapshot()
        plans = [p for p in snapshot if period.contains(p.created_at.date())]
        paid = [e for p in snapshot for e in p.schedule if e.is_paid and period.contains(e.paid_date)]

        by_month: Dict[str, List[RepaymentEntry]] = {}
        for entry in paid:
            if entry.paid_date:
                by_month.setdefault(entry.paid_date.strftime("%Y-%m"), []).append(entry)
        monthly = [
            {
                'month': month,
                'collections': sum_money(e.emi_amount for e in group),
                'interest': sum_money(e.interest for e in group)
            }
            for month, group in sorted(by_month.items())
        ]

        collected = sum_money(e.emi_amount for e in paid)
        down_payments = sum_money(p.down_payment for p in plans)
        bad_debts = sum_money(outstanding_balance(p) for p in snapshot if p.status == PlanStatus.DEFAULTED)
        gross = sum_money([collected, down_payments])

        totals = {
            'total_sales': sum_money(p.product_price for p in plans),
            'total_down_payments': down_payments,
            'interest_earned': sum_money(e.interest for e in paid),
            'total_collected': gross,
            'bad_debts': bad_debts,
            'gross_revenue': gross,
            'net_profit': sum_money([gross, -bad_debts])
        }
        return self._result(ReportKind.PROFIT_LOSS, as_of, period, monthly, totals,
                            {'monthly_breakdown': monthly})

    def due_today_report(self, as_of: date, period: DateRange) -> ReportResult:
        """Unpaid installments of active plans due on ``as_of`` or already overdue"""
        rows = self._due_rows(
            as_of, lambda e: e.due_date == as_of or effective_status(e, as_of) == EntryStatus.OVERDUE
        )
        totals = {
            'total_due': len(rows),
            'total_amount_due': sum_money(r['amount_due'] for r in rows)
        }
        return self._result(ReportKind.DUE_TODAY, as_of, period, rows, totals)

    def upcoming_dues_report(self, as_of: date, period: DateRange) -> ReportResult:
        """
        Unpaid installments of active plans falling due in the period, or in
        the configured window starting at ``as_of`` when no period is given.
        """
        if period.is_open:
            period = DateRange(as_of, as_of + timedelta(days=self.upcoming_window_days))
        rows = self._due_rows(as_of, lambda e: period.contains(e.due_date))
        totals = {
            'total_upcoming': len(rows),
            'total_amount_due': sum_money(r['amount_due'] for r in rows)
        }
        return self._result(ReportKind.UPCOMING_DUES, as_of, period, rows, totals)

    def _due_rows(self, as_of: date, wanted: Callable[[RepaymentEntry], bool]) -> List[Dict[str, Any]]:
        names = self._names()
        rows = []
        for plan in self.plan_manager.snapshot():
            if plan.status != PlanStatus.ACTIVE:
                continue
            for entry in plan.schedule:
                if entry.is_paid or not wanted(entry):
                    continue
                rows.append({
                    **names.plan_fields(plan),
                    'installment_no': entry.installment_no,
                    'due_date': entry.due_date,
                    'amount_due': entry.emi_amount,
                    'status': effective_status(entry, as_of).value
                })
        rows.sort(key=lambda r: (r['due_date'], r['plan_id'], r['installment_no']))
        return rows

    def dashboard_snapshot(self, as_of: date) -> Dict[str, Any]:
        """
        Dashboard KPIs, trends and short lists as of a date

        Returns:
            Dictionary of Decimal/int/date values (see ``jsonable`` for the wire form)
        """
        names = self._names()
        plans = self.plan_manager.snapshot()
        live = [p for p in plans if p.status != PlanStatus.CANCELLED]
        entries: List[Tuple[InstallmentPlan, RepaymentEntry]] = [(p, e) for p in live for e in p.schedule]
        paid = [(p, e) for p, e in entries if e.is_paid]
        overdue = [(p, e) for p, e in entries if effective_status(e, as_of) == EntryStatus.OVERDUE]
        due = [(p, e) for p, e in entries if effective_status(e, as_of) == EntryStatus.DUE]

        this_month = month_range(as_of)
        last_month = month_range(add_months(month_start(as_of), -1))
        plans_this_month = sum(1 for p in plans if this_month.contains(p.created_at.date()))
        plans_last_month = sum(1 for p in plans if last_month.contains(p.created_at.date()))
        paid_entries = [e for _, e in paid]
        collections_this_month = collections_in_period(paid_entries, this_month)
        collections_last_month = collections_in_period(paid_entries, last_month)

        trend = []
        for offset in range(self.trend_months - 1, -1, -1):
            month = month_range(add_months(month_start(as_of), -offset))
            trend.append({
                'month': month.start.strftime("%Y-%m"),
                'collected': collections_in_period(paid_entries, month),
                'expected': sum_money(e.emi_amount for _, e in entries if month.contains(e.due_date))
            })

        window = DateRange(as_of, as_of + timedelta(days=self.upcoming_window_days))
        upcoming = sorted(
            ((p, e) for p, e in entries
             if p.status == PlanStatus.ACTIVE and not e.is_paid and window.contains(e.due_date)),
            key=lambda pe: (pe[1].due_date, pe[0].id, pe[1].installment_no)
        )[:self.list_limit]
        overdue_list = sorted(overdue, key=lambda pe: (pe[1].due_date, pe[0].id, pe[1].installment_no))
        recent_payments = sorted(paid, key=lambda pe: (pe[1].paid_date or date.min, pe[1].installment_no),
                                 reverse=True)[:self.list_limit]

        counts = _status_counts(plans)
        return {
            'as_of': as_of,
            'total_plans': len(plans),
            'active_plans': counts[PlanStatus.ACTIVE.value],
            'completed_plans': counts[PlanStatus.COMPLETED.value],
            'defaulted_plans': counts[PlanStatus.DEFAULTED.value],
            'cancelled_plans': counts[PlanStatus.CANCELLED.value],
            'status_distribution': counts,
            'total_financed_amount': sum_money(p.financed_amount for p in plans),
            'total_down_payments': sum_money(p.down_payment for p in plans),
            'total_expected_revenue': sum_money(p.total_payable for p in plans),
            'total_interest_expected': sum_money(p.total_interest for p in plans),
            'total_collected': sum_money(e.emi_amount for e in paid_entries),
            'total_outstanding': sum_money(outstanding_balance(p) for p in plans if p.status == PlanStatus.ACTIVE),
            'overdue_amount': sum_money(e.emi_amount for _, e in overdue),
            'overdue_count': len(overdue),
            'due_count': len(due),
            'plans_this_month': plans_this_month,
            'plans_last_month': plans_last_month,
            'plans_pct_change': percent_change(Decimal(plans_this_month), Decimal(plans_last_month)),
            'collections_this_month': collections_this_month,
            'collections_last_month': collections_last_month,
            'collections_pct_change': percent_change(collections_this_month, collections_last_month),
            'monthly_collections': trend,
            'upcoming_dues': [
                {**names.plan_fields(p), 'installment_no': e.installment_no, 'due_date': e.due_date,
                 'emi_amount': e.emi_amount, 'status': effective_status(e, as_of).value}
                for p, e in upcoming
            ],
            'overdue_list': [
                {**names.plan_fields(p), 'installment_no': e.installment_no, 'due_date': e.due_date,
                 'emi_amount': e.emi_amount, 'days_overdue': days_overdue(e, as_of)}
                for p, e in overdue_list[:self.list_limit]
            ],
            'recent_payments': [
                {**names.plan_fields(p), 'installment_no': e.installment_no, 'paid_date': e.paid_date,
                 'amount': e.emi_amount}
                for p, e in recent_payments
            ],
            'recent_plans': [
                {**names.plan_fields(p), 'financed_amount': p.financed_amount, 'emi_amount': p.emi_amount,
                 'tenure': p.tenure, 'status': p.status.value, 'created_at': p.created_at.date()}
                for p in plans[:self.recent_plans_limit]
            ]
        }


def _aging_bucket(days: int) -> str:
    for name, low, high in AGING_BUCKETS:
        if days >= low and (high is None or days <= high):
            return name
    return AGING_BUCKETS[-1][0]


def _status_counts(plans: Iterable[InstallmentPlan]) -> Dict[str, int]:
    counts = {status.value: 0 for status in PlanStatus}
    for plan in plans:
        counts[plan.status.value] += 1
    return counts
