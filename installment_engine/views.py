"""
Plan View Serialization

Flat, JSON-ready dictionaries of plans, schedules and quotes. Dates are
``YYYY-MM-DD`` strings and money is a decimal string with 2 fraction digits.
"""

from typing import Dict, Optional, Any, Iterable, Tuple

from .directory import CustomerRef, ProductRef
from .guarantors import PlanGuarantor
from .money import format_money
from .plans import InstallmentPlan, PlanQuote
from .schedule import RepaymentEntry


def entry_view(entry: RepaymentEntry) -> Dict[str, Any]:
    return {
        'installment_no': entry.installment_no,
        'due_date': entry.due_date.isoformat(),
        'emi_amount': format_money(entry.emi_amount),
        'principal': format_money(entry.principal),
        'interest': format_money(entry.interest),
        'balance': format_money(entry.balance),
        'status': entry.status.value,
        'paid_date': entry.paid_date.isoformat() if entry.paid_date else None
    }


def guarantor_view(guarantor: PlanGuarantor, party: CustomerRef) -> Dict[str, Any]:
    return {
        'id': guarantor.id,
        'party_id': party.id,
        'name': party.name,
        'phone': party.phone,
        'address': party.address,
        'picture': party.picture,
        'relationship': guarantor.relationship
    }


def plan_view(
    plan: InstallmentPlan,
    customer: Optional[CustomerRef],
    product: Optional[ProductRef],
    guarantors: Iterable[Tuple[PlanGuarantor, CustomerRef]] = (),
    default_image: str = ""
) -> Dict[str, Any]:
    """
    Serialize a plan with its schedule.

    Customer and product details are looked up by the caller; a party or
    product that has since been removed from master data renders as empty
    strings (and the default image) rather than failing the read.
    """
    product_image = product.primary_image if product else None
    return {
        'id': plan.id,
        'customer_id': plan.customer_id,
        'customer_name': customer.name if customer else "",
        'customer_phone': customer.phone if customer else "",
        'customer_address': customer.address if customer else "",
        'product_id': plan.product_id,
        'product_name': product.name if product else "",
        'product_image': product_image or default_image,
        'product_price': format_money(plan.product_price),
        'finance_amount': format_money(plan.finance_amount) if plan.finance_amount is not None else None,
        'down_payment': format_money(plan.down_payment),
        'financed_amount': format_money(plan.financed_amount),
        'interest_rate': str(plan.interest_rate),
        'tenure': plan.tenure,
        'emi_amount': format_money(plan.emi_amount),
        'total_payable': format_money(plan.total_payable),
        'total_interest': format_money(plan.total_interest),
        'start_date': plan.start_date.isoformat(),
        'status': plan.status.value,
        'paid_installments': plan.paid_installments,
        'remaining_installments': plan.remaining_installments,
        'next_due_date': plan.next_due_date.isoformat() if plan.next_due_date else "",
        'created_at': plan.created_at.date().isoformat(),
        'schedule': [entry_view(e) for e in sorted(plan.schedule, key=lambda e: e.installment_no)],
        'guarantors': [guarantor_view(g, party) for g, party in guarantors]
    }


def quote_view(quote: PlanQuote) -> Dict[str, Any]:
    """Serialize a plan preview"""
    return {
        'product_price': format_money(quote.product_price),
        'finance_amount': format_money(quote.finance_amount) if quote.finance_amount is not None else None,
        'down_payment': format_money(quote.down_payment),
        'financed_amount': format_money(quote.financed_amount),
        'interest_rate': str(quote.interest_rate),
        'tenure': quote.tenure,
        'emi_amount': format_money(quote.emi_amount),
        'total_payable': format_money(quote.total_payable),
        'total_interest': format_money(quote.total_interest),
        'start_date': quote.start_date.isoformat(),
        'schedule': [entry_view(e) for e in quote.schedule]
    }
