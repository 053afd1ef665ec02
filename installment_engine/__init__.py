"""
Installment Financing Engine

Turns a product sale into a multi-period amortized repayment plan, tracks
payment state per installment and keeps plan aggregates consistent as
payments are posted. All financial math uses Decimal.
"""

__version__ = "1.0.0"
