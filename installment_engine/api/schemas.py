"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class CreatePlanRequest(BaseModel):
    customer_id: str
    product_id: str
    down_payment: Decimal = Field(..., description="Decimal amount, e.g. \"5000.00\"")
    interest_rate: Decimal = Field(..., description="Annual interest rate in percent")
    tenure: int = Field(..., description="Number of monthly installments")
    start_date: str = Field(..., description="Plan start date (YYYY-MM-DD)")
    finance_amount: Optional[Decimal] = Field(None, description="Overrides the product price as the base amount")
    as_of: Optional[str] = Field(None, description="Date used to classify initial entry statuses")


class PreviewPlanRequest(BaseModel):
    product_price: Decimal
    down_payment: Decimal
    interest_rate: Decimal
    tenure: int
    start_date: str
    finance_amount: Optional[Decimal] = None
    as_of: Optional[str] = None


class PayInstallmentRequest(BaseModel):
    paid_date: Optional[str] = Field(None, description="Payment date (YYYY-MM-DD), defaults to today")


class DefaultPlanRequest(BaseModel):
    reason: Optional[str] = None


class AddGuarantorRequest(BaseModel):
    party_id: str
    relationship: Optional[str] = None


class UpdateGuarantorRequest(BaseModel):
    relationship: Optional[str] = None
