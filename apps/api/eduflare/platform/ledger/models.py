from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Numeric, String, Text, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column

from eduflare.cases.errors import InvalidState
from eduflare.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Invoice(Base):
    __tablename__ = "ledger_invoice"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("case_student.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    due_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    reverses_invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ledger_invoice.id", ondelete="RESTRICT"),
        nullable=True,
    )
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_invoice_amount_positive"),
        CheckConstraint(
            "(type = 'refund' AND reverses_invoice_id IS NOT NULL) OR (type <> 'refund' AND reverses_invoice_id IS NULL)",
            name="ck_ledger_invoice_refund_reference",
        ),
        Index("ix_ledger_invoice_student", "student_id", "created_at"),
    )

    @property
    def is_reversal(self) -> bool:
        return self.type == "refund"


class Commission(Base):
    __tablename__ = "ledger_commission"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    staff_id: Mapped[str] = mapped_column(String(128), nullable=False)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("case_student.id"), nullable=False)
    contract_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("case_contract.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    reverses_commission_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ledger_commission.id", ondelete="RESTRICT"),
        nullable=True,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_ledger_commission_amount_nonzero"),
        Index("ix_ledger_commission_staff", "staff_id", "created_at"),
        Index("ix_ledger_commission_contract", "contract_id"),
    )


class StaffCommissionRate(Base):
    __tablename__ = "ledger_staff_commission_rate"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    staff_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    updated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (CheckConstraint("amount >= 0", name="ck_ledger_staff_rate_nonnegative"),)


# settlement may move status/paid_at/receipt_ref, nothing else on an invoice changes
_FROZEN_INVOICE_FIELDS = (
    "invoice_number",
    "student_id",
    "type",
    "amount",
    "currency",
    "reverses_invoice_id",
    "created_by",
    "created_at",
)


@event.listens_for(Invoice, "before_update")
def _reject_invoice_amendment(mapper, connection, target: Invoice) -> None:  # type: ignore[no-untyped-def]
    state = inspect(target)
    changed = [name for name in _FROZEN_INVOICE_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise InvalidState(
            "invoice financial fields cannot be amended",
            details={"invoice_id": str(target.id), "fields": changed},
        )


@event.listens_for(Invoice, "before_delete")
def _reject_invoice_delete(mapper, connection, target: Invoice) -> None:  # type: ignore[no-untyped-def]
    raise InvalidState("invoices cannot be deleted", details={"invoice_id": str(target.id)})


@event.listens_for(Commission, "before_update")
@event.listens_for(Commission, "before_delete")
def _reject_commission_change(mapper, connection, target: Commission) -> None:  # type: ignore[no-untyped-def]
    raise InvalidState("commission rows are append-only", details={"commission_id": str(target.id)})
