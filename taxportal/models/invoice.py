"""
taxportal/models/invoice.py

Invoice lifecycle: OPEN -> REVIEW -> PAID | CANCELLED, with a direct
OPEN|REVIEW -> PAID path when an admin records a payment.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class InvoiceStatus(str, Enum):
    OPEN = "OPEN"
    REVIEW = "REVIEW"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    CANCEL = "cancel"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    CASH = "cash"
    OTHER = "other"


class InvoiceDocumentType(str, Enum):
    INVOICE = "invoice"
    PROOF = "proof"


class Invoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    invoice_no: str
    title: str
    description: Optional[str] = None
    currency: str = "EUR"
    amount_total: Decimal
    status: InvoiceStatus
    due_date: date
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    billable_minutes_snapshot: Optional[int] = None
    hourly_rate_snapshot: Optional[Decimal] = None
    invoice_document_id: Optional[str] = None
    proof_document_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    payment_note: Optional[str] = None
    created_by: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
