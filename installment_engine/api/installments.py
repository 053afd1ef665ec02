"""
Installment plan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import InstallmentSystem, get_system
from .schemas import (
    CreatePlanRequest, PreviewPlanRequest, PayInstallmentRequest,
    DefaultPlanRequest, AddGuarantorRequest, UpdateGuarantorRequest
)
from ..errors import NotFoundError
from ..plans import parse_date
from ..views import entry_view, guarantor_view, quote_view


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_plan(
    request: CreatePlanRequest,
    system: InstallmentSystem = Depends(get_system)
):
    """Create an installment plan with its repayment schedule"""
    plan = system.plan_manager.create_plan(
        customer_id=request.customer_id,
        product_id=request.product_id,
        down_payment=request.down_payment,
        interest_rate=request.interest_rate,
        tenure=request.tenure,
        start_date=request.start_date,
        as_of=parse_date(request.as_of, "as_of") if request.as_of else None,
        finance_amount=request.finance_amount
    )
    return system.plan_view(plan)


@router.post("/preview")
def preview_plan(
    request: PreviewPlanRequest,
    system: InstallmentSystem = Depends(get_system)
):
    """Quote a plan without saving it"""
    quote = system.plan_manager.preview_plan(
        product_price=request.product_price,
        down_payment=request.down_payment,
        interest_rate=request.interest_rate,
        tenure=request.tenure,
        start_date=request.start_date,
        as_of=parse_date(request.as_of, "as_of") if request.as_of else None,
        finance_amount=request.finance_amount
    )
    return quote_view(quote)


@router.get("")
def list_plans(
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    product_id: Optional[str] = None,
    system: InstallmentSystem = Depends(get_system)
):
    """List plans, newest first"""
    plans = system.plan_manager.list_plans(
        status=status, customer_id=customer_id, product_id=product_id
    )
    return {"plans": [system.plan_view(plan) for plan in plans], "count": len(plans)}


@router.get("/{plan_id}")
def get_plan(
    plan_id: str,
    system: InstallmentSystem = Depends(get_system)
):
    """Get a plan with its schedule"""
    return system.plan_view(system.plan_manager.get_plan(plan_id))


@router.put("/{plan_id}/pay/{installment_no}")
def pay_installment(
    plan_id: str,
    installment_no: int,
    request: Optional[PayInstallmentRequest] = None,
    system: InstallmentSystem = Depends(get_system)
):
    """Mark one installment as paid"""
    receipt = system.payment_poster.mark_paid(
        plan_id, installment_no, paid_date=request.paid_date if request else None
    )
    return {
        "message": "Installment marked as paid",
        "entry": entry_view(receipt.entry),
        "plan": system.plan_view(receipt.plan)
    }


@router.delete("/{plan_id}")
def cancel_plan(
    plan_id: str,
    system: InstallmentSystem = Depends(get_system)
):
    """Cancel a plan (the plan and its schedule are kept)"""
    plan = system.plan_manager.cancel_plan(plan_id)
    return {"message": "Plan cancelled", "plan": system.plan_view(plan)}


@router.post("/{plan_id}/default")
def mark_defaulted(
    plan_id: str,
    request: Optional[DefaultPlanRequest] = None,
    system: InstallmentSystem = Depends(get_system)
):
    """Flag a plan as defaulted"""
    plan = system.plan_manager.mark_defaulted(plan_id, reason=request.reason if request else None)
    return {"message": "Plan marked as defaulted", "plan": system.plan_view(plan)}


@router.get("/{plan_id}/guarantors")
def list_guarantors(
    plan_id: str,
    system: InstallmentSystem = Depends(get_system)
):
    """List the guarantors of a plan"""
    if not system.plan_manager.exists(plan_id):
        raise NotFoundError("plan", plan_id)
    links = system.guarantor_manager.list_guarantors(plan_id)
    return {"guarantors": [guarantor_view(g, party) for g, party in links]}


@router.post("/{plan_id}/guarantors", status_code=status.HTTP_201_CREATED)
def add_guarantor(
    plan_id: str,
    request: AddGuarantorRequest,
    system: InstallmentSystem = Depends(get_system)
):
    """Link an existing party to a plan as guarantor"""
    guarantor, party = system.guarantor_manager.add_guarantor(
        plan_id, request.party_id, relationship=request.relationship
    )
    return guarantor_view(guarantor, party)


@router.put("/{plan_id}/guarantors/{guarantor_id}")
def update_guarantor(
    plan_id: str,
    guarantor_id: str,
    request: UpdateGuarantorRequest,
    system: InstallmentSystem = Depends(get_system)
):
    """Change a guarantor's relationship"""
    guarantor, party = system.guarantor_manager.update_guarantor(
        guarantor_id, request.relationship, plan_id=plan_id
    )
    return guarantor_view(guarantor, party)


@router.delete("/{plan_id}/guarantors/{guarantor_id}")
def remove_guarantor(
    plan_id: str,
    guarantor_id: str,
    system: InstallmentSystem = Depends(get_system)
):
    """Unlink a guarantor from a plan"""
    system.guarantor_manager.remove_guarantor(guarantor_id, plan_id=plan_id)
    return {"message": "Guarantor removed"}
