from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


InvoiceType = Literal["opening_book", "deposit", "balance", "refund"]
InvoiceStatus = Literal["pending", "paid", "overdue"]
PaymentInvoiceType = Literal["deposit", "balance"]
CommissionStatus = Literal["pending", "clawback"]


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    student_id: UUID
    type: InvoiceType
    amount: Decimal
    currency: str
    status: InvoiceStatus
    due_date: date | None
    paid_at: datetime | None
    description: str | None
    receipt_ref: str | None
    reverses_invoice_id: UUID | None
    is_reversal: bool
    created_by: str
    created_at: datetime


class CommissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    staff_id: str
    student_id: UUID
    contract_id: UUID
    amount: Decimal
    currency: str
    status: CommissionStatus
    reverses_commission_id: UUID | None
    reason: str | None
    created_at: datetime


class StaffCommissionRateSet(BaseModel):
    amount: Decimal = Field(ge=Decimal("0"))
    currency: str = Field(min_length=3, max_length=16)


class StaffCommissionRateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    staff_id: str
    amount: Decimal
    currency: str
    updated_by: str
    updated_at: datetime


class NetRevenueLine(BaseModel):
    currency: str
    paid: Decimal
    refunded: Decimal
    net: Decimal


class NetRevenueRead(BaseModel):
    student_id: UUID | None
    lines: list[NetRevenueLine]
