"""
Payment Posting Module

Records the payment of a single installment. An installment is paid at most
once: posting against an already paid entry is rejected rather than treated
as a silent no-op, so a retried request can never credit a plan twice.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .audit import AuditEventType
from .errors import AlreadyPaidError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .plans import InstallmentPlan, InstallmentPlanManager, PlanStatus, parse_date
from .schedule import EntryStatus, RepaymentEntry


@dataclass
class PaymentReceipt:
    """Outcome of a posted installment payment"""
    plan_id: str
    installment_no: int
    amount: Decimal
    paid_date: date
    plan: InstallmentPlan
    entry: RepaymentEntry

    @property
    def plan_completed(self) -> bool:
        return self.plan.status == PlanStatus.COMPLETED


class PaymentPoster:
    """
    Posts installment payments and keeps plan aggregates in step
    """

    def __init__(
        self,
        plan_manager: InstallmentPlanManager,
        clock: Optional[Callable[[], date]] = None
    ):
        self.plan_manager = plan_manager
        self.storage = plan_manager.storage
        self.clock = clock or plan_manager.clock
        self.logger = get_logger("installments.payments")

    def mark_paid(
        self,
        plan_id: str,
        installment_no: int,
        paid_date: Optional[Union[date, str]] = None
    ) -> PaymentReceipt:
        """
        Mark one installment of a plan as paid

        Args:
            plan_id: Plan ID
            installment_no: Installment number (1..tenure)
            paid_date: Date of payment (defaults to today)

        Returns:
            PaymentReceipt with the updated plan and entry

        Raises:
            NotFoundError: Plan or installment does not exist
            AlreadyPaidError: Installment was paid before
            ValidationError: Plan is cancelled or paid_date is malformed
            ConflictError: Another process updated the plan concurrently
        """
        paid_on = parse_date(paid_date, "paid_date") if paid_date else self.clock()

        with self.plan_manager.plan_lock(plan_id):
            plan = self.plan_manager.load_plan(plan_id)

            if plan.status == PlanStatus.CANCELLED:
                raise ValidationError(f"Plan {plan_id} is cancelled and accepts no payments")

            entry = plan.entry(installment_no)
            if entry is None:
                raise NotFoundError("installment", installment_no,
                                    f"Installment {installment_no} not found in plan {plan_id}")
            if entry.is_paid:
                raise AlreadyPaidError(plan_id, installment_no)

            entry.status = EntryStatus.PAID
            entry.paid_date = paid_on

            with self.storage.atomic():
                self.plan_manager.save_entry(entry)
                changes = self.plan_manager.recompute(plan)

        log_action(
            self.logger, "info", "Installment paid",
            action="mark_paid", resource=f"plan:{plan.id}",
            extra={
                "plan_id": plan.id,
                "installment_no": entry.installment_no,
                "amount": str(entry.emi_amount),
                "paid_date": paid_on.isoformat(),
                "paid_installments": plan.paid_installments,
                "remaining_installments": plan.remaining_installments
            }
        )
        audit = self.plan_manager.audit_trail
        if audit:
            audit.log_event(
                event_type=AuditEventType.INSTALLMENT_PAID,
                entity_type="plan",
                entity_id=plan.id,
                metadata={
                    "installment_no": entry.installment_no,
                    "amount": entry.emi_amount,
                    "paid_date": paid_on,
                    "paid_installments": plan.paid_installments
                }
            )
            if 'status' in changes and plan.status == PlanStatus.COMPLETED:
                audit.log_event(
                    event_type=AuditEventType.PLAN_COMPLETED,
                    entity_type="plan",
                    entity_id=plan.id,
                    metadata={"completed_on": paid_on, "tenure": plan.tenure}
                )

        return PaymentReceipt(
            plan_id=plan.id,
            installment_no=entry.installment_no,
            amount=entry.emi_amount,
            paid_date=paid_on,
            plan=plan,
            entry=entry
        )
