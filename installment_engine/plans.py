"""
Installment Plan Module

Handles plan creation (quote, validation, atomic persistence of the plan and
its full schedule), plan aggregate recomputation and the plan status machine.

Plan aggregates (paid/remaining counts, next due date, completion) are a cache
of entry state: they are rebuilt from the entries after every entry change and
re-checked whenever a plan is loaded.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Any, Union
from enum import Enum
from contextlib import contextmanager
import threading
import uuid

from .amortization import validate_term, raw_installment_amount
from .audit import AuditTrail, AuditEventType
from .directory import CustomerDirectory, ProductCatalog
from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .money import Number, to_decimal, round_money
from .schedule import RepaymentEntry, generate_schedule
from .storage import StorageInterface, StorageRecord


class PlanStatus(Enum):
    """Installment plan lifecycle states"""
    ACTIVE = "active"           # Repayments in progress
    COMPLETED = "completed"     # Every installment paid (terminal)
    DEFAULTED = "defaulted"     # Set by an external collections trigger
    CANCELLED = "cancelled"     # Explicitly cancelled (terminal)

    @classmethod
    def parse(cls, value: Any) -> 'PlanStatus':
        """Convert a stored or user-supplied value, rejecting anything unknown"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown plan status: {value!r}")

    @property
    def is_terminal(self) -> bool:
        return not PLAN_TRANSITIONS[self]


PLAN_TRANSITIONS = {
    PlanStatus.ACTIVE: {PlanStatus.COMPLETED, PlanStatus.CANCELLED, PlanStatus.DEFAULTED},
    PlanStatus.DEFAULTED: {PlanStatus.COMPLETED, PlanStatus.CANCELLED},
    PlanStatus.COMPLETED: set(),
    PlanStatus.CANCELLED: set(),
}


def can_transition(current: PlanStatus, target: PlanStatus) -> bool:
    return target in PLAN_TRANSITIONS[current]


def transition(current: PlanStatus, target: PlanStatus) -> PlanStatus:
    """Return ``target`` if the move is allowed, else raise ValidationError"""
    if not can_transition(current, target):
        raise ValidationError(
            f"Cannot move plan from {current.value} to {target.value}"
        )
    return target


def parse_date(value: Union[date, str], field_name: str) -> date:
    """Accept a date or an ISO ``YYYY-MM-DD`` string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"{field_name} must be a YYYY-MM-DD date, got {value!r}")


@dataclass
class PlanQuote:
    """Money figures and schedule for a prospective plan (nothing persisted)"""
    product_price: Decimal
    finance_amount: Optional[Decimal]
    down_payment: Decimal
    financed_amount: Decimal
    interest_rate: Decimal
    tenure: int
    emi_amount: Decimal
    total_payable: Decimal
    total_interest: Decimal
    start_date: date
    schedule: List[RepaymentEntry]


def quote_plan(
    product_price: Number,
    down_payment: Number,
    interest_rate: Number,
    tenure: int,
    start_date: Union[date, str],
    as_of: date,
    finance_amount: Optional[Number] = None
) -> PlanQuote:
    """
    Compute plan figures.

    The base amount is ``finance_amount`` when given and positive, otherwise
    the product price. financed = base - down payment; total payable is the
    down payment plus every (rounded) installment; total interest is total
    payable minus the base amount. A down payment above the base amount is
    accepted as-is.
    """
    validate_term(tenure)
    price = round_money(to_decimal(product_price, "product_price"))
    down = round_money(to_decimal(down_payment, "down_payment"))
    rate = to_decimal(interest_rate, "interest_rate")
    start = parse_date(start_date, "start_date")

    custom = None
    if finance_amount is not None:
        custom = round_money(to_decimal(finance_amount, "finance_amount"))
    base = custom if custom is not None and custom > 0 else price

    financed = base - down
    emi = round_money(raw_installment_amount(financed, rate, tenure))
    total_payable = round_money(down + emi * tenure)
    total_interest = round_money(total_payable - base)

    return PlanQuote(
        product_price=price,
        finance_amount=custom,
        down_payment=down,
        financed_amount=financed,
        interest_rate=rate,
        tenure=tenure,
        emi_amount=emi,
        total_payable=total_payable,
        total_interest=total_interest,
        start_date=start,
        schedule=generate_schedule(financed, rate, tenure, start, as_of)
    )


@dataclass(frozen=True)
class PlanAggregates:
    """Plan fields derived purely from entry state"""
    paid_installments: int
    remaining_installments: int
    next_due_date: Optional[date]
    status: PlanStatus


def derive_aggregates(schedule: List[RepaymentEntry], tenure: int, status: PlanStatus) -> PlanAggregates:
    """
    Rebuild plan aggregates from its entries.

    A plan whose every installment is paid moves to COMPLETED when its
    current status allows it; otherwise the status is left as it is.
    """
    ordered = sorted(schedule, key=lambda e: e.installment_no)
    paid = sum(1 for e in ordered if e.is_paid)
    next_due = next((e.due_date for e in ordered if not e.is_paid), None)

    if paid >= tenure and can_transition(status, PlanStatus.COMPLETED):
        status = PlanStatus.COMPLETED

    return PlanAggregates(
        paid_installments=paid,
        remaining_installments=tenure - paid,
        next_due_date=next_due,
        status=status
    )


@dataclass
class InstallmentPlan(StorageRecord):
    """Financed sale with its amortized repayment schedule"""
    customer_id: str
    product_id: str
    product_price: Decimal
    down_payment: Decimal
    financed_amount: Decimal
    interest_rate: Decimal          # Annual percent, e.g. 12 for 12%
    tenure: int                     # Months
    emi_amount: Decimal
    total_payable: Decimal
    total_interest: Decimal
    start_date: date
    status: PlanStatus = PlanStatus.ACTIVE
    paid_installments: int = 0
    remaining_installments: int = 0
    next_due_date: Optional[date] = None
    finance_amount: Optional[Decimal] = None
    version: int = 0
    schedule: List[RepaymentEntry] = field(default_factory=list, repr=False)

    def entry(self, installment_no: int) -> Optional[RepaymentEntry]:
        for entry in self.schedule:
            if entry.installment_no == installment_no:
                return entry
        return None

    def aggregates(self) -> PlanAggregates:
        return PlanAggregates(
            paid_installments=self.paid_installments,
            remaining_installments=self.remaining_installments,
            next_due_date=self.next_due_date,
            status=self.status
        )

    def apply_aggregates(self, aggregates: PlanAggregates) -> Dict[str, Any]:
        """Copy derived values onto the plan, returning {field: (old, new)} for changes"""
        changes = {}
        for name in ('paid_installments', 'remaining_installments', 'next_due_date', 'status'):
            old = getattr(self, name)
            new = getattr(aggregates, name)
            if old != new:
                changes[name] = (old, new)
                setattr(self, name, new)
        return changes

    def to_dict(self) -> Dict[str, Any]:
        """Convert plan to dictionary for storage (schedule is stored separately)"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'product_id': self.product_id,
            'product_price': str(self.product_price),
            'finance_amount': str(self.finance_amount) if self.finance_amount is not None else None,
            'down_payment': str(self.down_payment),
            'financed_amount': str(self.financed_amount),
            'interest_rate': str(self.interest_rate),
            'tenure': self.tenure,
            'emi_amount': str(self.emi_amount),
            'total_payable': str(self.total_payable),
            'total_interest': str(self.total_interest),
            'start_date': self.start_date.isoformat(),
            'status': self.status.value,
            'paid_installments': self.paid_installments,
            'remaining_installments': self.remaining_installments,
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else "",
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentPlan':
        """Convert dictionary to plan"""
        finance_amount = data.get('finance_amount')
        next_due = data.get('next_due_date')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            product_id=data['product_id'],
            product_price=Decimal(data['product_price']),
            finance_amount=Decimal(finance_amount) if finance_amount is not None else None,
            down_payment=Decimal(data['down_payment']),
            financed_amount=Decimal(data['financed_amount']),
            interest_rate=Decimal(data['interest_rate']),
            tenure=int(data['tenure']),
            emi_amount=Decimal(data['emi_amount']),
            total_payable=Decimal(data['total_payable']),
            total_interest=Decimal(data['total_interest']),
            start_date=date.fromisoformat(data['start_date']),
            status=PlanStatus.parse(data['status']),
            paid_installments=int(data.get('paid_installments', 0)),
            remaining_installments=int(data.get('remaining_installments', 0)),
            next_due_date=date.fromisoformat(next_due) if next_due else None,
            version=int(data.get('version', 0))
        )


class InstallmentPlanManager:
    """
    Manages installment plans from creation through completion or cancellation
    """

    def __init__(
        self,
        storage: StorageInterface,
        customer_directory: CustomerDirectory,
        product_catalog: ProductCatalog,
        audit_trail: Optional[AuditTrail] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.customer_directory = customer_directory
        self.product_catalog = product_catalog
        self.audit_trail = audit_trail
        self.clock = clock
        self.logger = get_logger("installments.plans")

        self.plans_table = "installment_plans"
        self.entries_table = "repayment_entries"

        # plan_id -> [lock, number of threads holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def plan_lock(self, plan_id: str) -> Iterator[None]:
        """
        Serialize every read-modify-write of one plan.

        A plan's lock lives only while some thread holds or waits on it, so
        lookups of unknown ids leave nothing behind.
        """
        with self._locks_guard:
            slot = self._locks.setdefault(plan_id, [threading.RLock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[plan_id]

    def preview_plan(
        self,
        product_price: Number,
        down_payment: Number,
        interest_rate: Number,
        tenure: int,
        start_date: Union[date, str],
        as_of: Optional[date] = None,
        finance_amount: Optional[Number] = None
    ) -> PlanQuote:
        """Quote a plan without looking anything up or persisting anything"""
        return quote_plan(product_price, down_payment, interest_rate, tenure,
                          start_date, as_of or self.clock(), finance_amount)

    def create_plan(
        self,
        customer_id: str,
        product_id: str,
        down_payment: Number,
        interest_rate: Number,
        tenure: int,
        start_date: Union[date, str],
        as_of: Optional[date] = None,
        finance_amount: Optional[Number] = None
    ) -> InstallmentPlan:
        """
        Create a plan and its full repayment schedule in one atomic write

        Args:
            customer_id: Buyer (must exist in the customer directory)
            product_id: Financed product (must exist in the product catalog)
            down_payment: Amount paid up front
            interest_rate: Annual interest rate in percent
            tenure: Number of monthly installments (>= 1)
            start_date: Plan start; the first installment is due a month later
            as_of: "Today" for initial entry statuses (defaults to the clock)
            finance_amount: Optional base amount replacing the product price

        Returns:
            The persisted plan with its schedule attached

        Raises:
            ValidationError: Bad tenure, amount or date
            NotFoundError: Customer or product does not exist
        """
        if not customer_id:
            raise ValidationError("customer_id is required")
        if not product_id:
            raise ValidationError("product_id is required")
        validate_term(tenure)
        start = parse_date(start_date, "start_date")
        as_of = as_of or self.clock()

        customer = self.customer_directory.get_customer(str(customer_id))
        if customer is None:
            raise NotFoundError("customer", customer_id)
        product = self.product_catalog.get_product(str(product_id))
        if product is None:
            raise NotFoundError("product", product_id)

        quote = quote_plan(product.price, down_payment, interest_rate, tenure,
                           start, as_of, finance_amount)

        now = datetime.now(timezone.utc)
        plan = InstallmentPlan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer.id,
            product_id=product.id,
            product_price=quote.product_price,
            finance_amount=quote.finance_amount,
            down_payment=quote.down_payment,
            financed_amount=quote.financed_amount,
            interest_rate=quote.interest_rate,
            tenure=quote.tenure,
            emi_amount=quote.emi_amount,
            total_payable=quote.total_payable,
            total_interest=quote.total_interest,
            start_date=quote.start_date,
            status=PlanStatus.ACTIVE,
            schedule=quote.schedule
        )
        for entry in plan.schedule:
            entry.plan_id = plan.id
        plan.apply_aggregates(derive_aggregates(plan.schedule, plan.tenure, plan.status))

        with self.storage.atomic():
            plan.version = self.storage.save_versioned(
                self.plans_table, plan.id, plan.to_dict(), expected_version=None
            )
            for entry in plan.schedule:
                self.storage.save(self.entries_table, entry.key, entry.to_dict())

        log_action(
            self.logger, "info", "Installment plan created",
            action="create_plan", resource=f"plan:{plan.id}",
            extra={
                "plan_id": plan.id,
                "customer_id": plan.customer_id,
                "product_id": plan.product_id,
                "financed_amount": str(plan.financed_amount),
                "emi_amount": str(plan.emi_amount),
                "tenure": plan.tenure
            }
        )
        self._audit(AuditEventType.PLAN_CREATED, plan, {
            "customer_id": plan.customer_id,
            "product_id": plan.product_id,
            "financed_amount": plan.financed_amount,
            "interest_rate": plan.interest_rate,
            "tenure": plan.tenure,
            "emi_amount": plan.emi_amount,
            "start_date": plan.start_date
        })
        return plan

    def exists(self, plan_id: str) -> bool:
        return self.storage.exists(self.plans_table, plan_id)

    def load_plan(self, plan_id: str) -> InstallmentPlan:
        """Load a plan and its schedule exactly as stored"""
        data = self.storage.load(self.plans_table, plan_id)
        if not data:
            raise NotFoundError("plan", plan_id)
        plan = InstallmentPlan.from_dict(data)
        plan.schedule = self._load_entries(plan_id)
        return plan

    def get_plan(self, plan_id: str) -> InstallmentPlan:
        """
        Get a plan with its schedule, repairing stale aggregates.

        Raises:
            NotFoundError: Plan does not exist
        """
        plan = self.load_plan(plan_id)
        if plan.aggregates() != derive_aggregates(plan.schedule, plan.tenure, plan.status):
            plan = self._repair(plan_id)
        return plan

    def list_plans(
        self,
        status: Optional[Union[PlanStatus, str]] = None,
        customer_id: Optional[str] = None,
        product_id: Optional[str] = None
    ) -> List[InstallmentPlan]:
        """List plans, newest first, optionally filtered"""
        wanted_status = PlanStatus.parse(status) if status else None

        plans = []
        for plan in self.snapshot():
            if plan.aggregates() != derive_aggregates(plan.schedule, plan.tenure, plan.status):
                plan = self._repair(plan.id)
            if wanted_status and plan.status != wanted_status:
                continue
            if customer_id and plan.customer_id != str(customer_id):
                continue
            if product_id and plan.product_id != str(product_id):
                continue
            plans.append(plan)
        return plans

    def snapshot(self) -> List[InstallmentPlan]:
        """Every plan with its schedule as stored, newest first; never writes"""
        entries_by_plan: Dict[str, List[RepaymentEntry]] = {}
        for data in self.storage.load_all(self.entries_table):
            entry = RepaymentEntry.from_dict(data)
            entries_by_plan.setdefault(entry.plan_id, []).append(entry)

        plans = []
        for data in self.storage.load_all(self.plans_table):
            plan = InstallmentPlan.from_dict(data)
            plan.schedule = sorted(entries_by_plan.get(plan.id, []), key=lambda e: e.installment_no)
            plans.append(plan)
        plans.sort(key=lambda p: p.created_at, reverse=True)
        return plans

    def recompute(self, plan: InstallmentPlan) -> Dict[str, Any]:
        """
        Rebuild the plan's aggregates from its (already updated) schedule and
        save them. Callers hold the plan lock; the write joins any open
        transaction.

        Returns:
            {field: (old, new)} for every aggregate that changed

        Raises:
            ConflictError: Another writer saved the plan since it was loaded
        """
        changes = plan.apply_aggregates(derive_aggregates(plan.schedule, plan.tenure, plan.status))
        self._save_plan(plan)

        if 'status' in changes and plan.status == PlanStatus.COMPLETED:
            log_action(
                self.logger, "info", "Installment plan completed",
                action="complete_plan", resource=f"plan:{plan.id}",
                extra={"plan_id": plan.id, "tenure": plan.tenure}
            )
        return changes

    def recompute_plan(self, plan_id: str) -> InstallmentPlan:
        """Reload a plan and rebuild its aggregates from its entries"""
        with self.plan_lock(plan_id):
            plan = self.load_plan(plan_id)
            with self.storage.atomic():
                self.recompute(plan)
            return plan

    def cancel_plan(self, plan_id: str) -> InstallmentPlan:
        """
        Cancel a plan. Entries are left untouched; cancelling an already
        cancelled plan is a no-op.

        Raises:
            NotFoundError: Plan does not exist
            ValidationError: Plan is already completed
        """
        with self.plan_lock(plan_id):
            plan = self.load_plan(plan_id)
            if plan.status == PlanStatus.CANCELLED:
                return plan

            previous = plan.status
            plan.status = transition(plan.status, PlanStatus.CANCELLED)
            self._save_plan(plan)

        log_action(
            self.logger, "info", "Installment plan cancelled",
            action="cancel_plan", resource=f"plan:{plan.id}",
            extra={"plan_id": plan.id, "previous_status": previous.value}
        )
        self._audit(AuditEventType.PLAN_CANCELLED, plan, {
            "previous_status": previous,
            "paid_installments": plan.paid_installments
        })
        return plan

    def mark_defaulted(self, plan_id: str, reason: Optional[str] = None) -> InstallmentPlan:
        """
        Flag an active plan as defaulted. Invoked by collections tooling;
        the engine itself never decides a plan has defaulted.
        """
        with self.plan_lock(plan_id):
            plan = self.load_plan(plan_id)
            plan.status = transition(plan.status, PlanStatus.DEFAULTED)
            self._save_plan(plan)

        log_action(
            self.logger, "warning", "Installment plan defaulted",
            action="default_plan", resource=f"plan:{plan.id}",
            extra={"plan_id": plan.id, "reason": reason}
        )
        self._audit(AuditEventType.PLAN_DEFAULTED, plan, {"reason": reason})
        return plan

    def _repair(self, plan_id: str) -> InstallmentPlan:
        """Rewrite stale aggregates from entry state"""
        with self.plan_lock(plan_id):
            plan = self.load_plan(plan_id)
            stale = plan.aggregates()
            with self.storage.atomic():
                changes = self.recompute(plan)

        if changes:
            log_action(
                self.logger, "warning", "Repaired stale plan aggregates",
                action="repair_plan", resource=f"plan:{plan.id}",
                extra={"plan_id": plan.id, "changes": {k: [str(o), str(n)] for k, (o, n) in changes.items()}}
            )
            self._audit(AuditEventType.PLAN_AGGREGATES_REPAIRED, plan, {
                "before": {
                    "paid_installments": stale.paid_installments,
                    "remaining_installments": stale.remaining_installments,
                    "next_due_date": stale.next_due_date,
                    "status": stale.status
                }
            })
        return plan

    def _save_plan(self, plan: InstallmentPlan) -> None:
        plan.updated_at = datetime.now(timezone.utc)
        plan.version = self.storage.save_versioned(
            self.plans_table, plan.id, plan.to_dict(), expected_version=plan.version
        )

    def save_entry(self, entry: RepaymentEntry) -> None:
        self.storage.save(self.entries_table, entry.key, entry.to_dict())

    def _load_entries(self, plan_id: str) -> List[RepaymentEntry]:
        entries = [RepaymentEntry.from_dict(data)
                   for data in self.storage.find(self.entries_table, {'plan_id': plan_id})]
        entries.sort(key=lambda e: e.installment_no)
        return entries

    def _audit(self, event_type: AuditEventType, plan: InstallmentPlan, metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="plan",
                entity_id=plan.id,
                metadata=metadata
            )
