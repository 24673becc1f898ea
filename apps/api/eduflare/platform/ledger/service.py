from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from eduflare.cases.errors import InvalidState, ValidationError
from eduflare.cases.models import Contract, Student
from eduflare.core.config import Settings, get_settings
from eduflare.metrics import observe_ledger_row
from eduflare.platform.ledger.models import Commission, Invoice, StaffCommissionRate
from eduflare.platform.ledger.schemas import NetRevenueLine, NetRevenueRead
from eduflare.platform.security.context import Actor


logger = logging.getLogger("eduflare.ledger")

_NUMBER_PREFIXES = {
    "opening_book": "OB",
    "deposit": "DEP",
    "balance": "BAL",
    "refund": "RFD",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class LedgerService:
    """Creates invoice and commission rows for lifecycle events.

    Rows are only ever added. Refunds and clawbacks are new rows pointing at
    the row they offset. Nothing here commits; the calling unit of work owns
    the transaction and the audit entry.
    """

    settings: Settings | None = None

    def _settings(self) -> Settings:
        return self.settings or get_settings()

    def on_convert(
        self,
        session: Session,
        actor: Actor,
        *,
        student: Student,
        amount: Decimal,
        currency: str,
        receipt_ref: str,
    ) -> Invoice:
        return self._paid_invoice(
            session,
            actor,
            student=student,
            invoice_type="opening_book",
            amount=amount,
            currency=currency,
            receipt_ref=receipt_ref,
            description="Opening book fee",
        )

    def on_payment(
        self,
        session: Session,
        actor: Actor,
        *,
        student: Student,
        invoice_type: str,
        amount: Decimal,
        currency: str,
        receipt_ref: str,
        description: str | None = None,
    ) -> Invoice:
        if invoice_type not in {"deposit", "balance"}:
            raise ValidationError("payments are recorded as deposit or balance invoices", details={"type": invoice_type})
        return self._paid_invoice(
            session,
            actor,
            student=student,
            invoice_type=invoice_type,
            amount=amount,
            currency=currency,
            receipt_ref=receipt_ref,
            description=description,
        )

    def issue_invoice(
        self,
        session: Session,
        actor: Actor,
        *,
        student: Student,
        invoice_type: str,
        amount: Decimal,
        currency: str,
        due_date: date | None,
        description: str | None = None,
    ) -> Invoice:
        if invoice_type == "refund":
            raise ValidationError("refunds are created from an approved refund, not issued")
        self._require_positive(amount)
        invoice = Invoice(
            invoice_number=self._next_number(session, invoice_type),
            student_id=student.id,
            type=invoice_type,
            amount=self._q(amount),
            currency=currency.upper(),
            status="pending",
            due_date=due_date,
            description=description,
            created_by=actor.user_id,
        )
        session.add(invoice)
        session.flush()
        observe_ledger_row("invoice")
        return invoice

    def settle_invoice(self, session: Session, invoice: Invoice, *, receipt_ref: str) -> Invoice:
        if invoice.type == "refund":
            raise InvalidState("refund rows are settled on creation", details={"invoice_id": str(invoice.id)})
        if invoice.status == "paid":
            raise InvalidState("invoice already paid", details={"invoice_id": str(invoice.id)})
        if not receipt_ref.strip():
            raise ValidationError("receipt reference is required to settle an invoice")
        invoice.status = "paid"
        invoice.paid_at = utcnow()
        invoice.receipt_ref = receipt_ref
        session.add(invoice)
        session.flush()
        return invoice

    def mark_overdue(self, session: Session, *, today: date) -> list[Invoice]:
        rows = session.scalars(
            select(Invoice).where(
                Invoice.status == "pending",
                Invoice.due_date.is_not(None),
                Invoice.due_date < today,
            )
        ).all()
        for invoice in rows:
            invoice.status = "overdue"
            session.add(invoice)
        session.flush()
        return list(rows)

    def on_refund_approved(
        self,
        session: Session,
        actor: Actor,
        *,
        invoice: Invoice,
        amount: Decimal,
        reason: str,
    ) -> Invoice:
        if invoice.type == "refund":
            raise ValidationError("a refund cannot itself be refunded", details={"invoice_id": str(invoice.id)})
        if invoice.status != "paid":
            raise ValidationError("only paid invoices can be refunded", details={"invoice_id": str(invoice.id)})
        if not reason.strip():
            raise ValidationError("refund reason is required")
        self._require_positive(amount)

        refunded = self.refunded_total(session, invoice.id)
        remaining = self._q(invoice.amount) - refunded
        if self._q(amount) > remaining:
            raise ValidationError(
                "refund exceeds refundable amount",
                details={"refundable": str(remaining), "requested": str(self._q(amount))},
            )

        reversal = Invoice(
            invoice_number=self._next_number(session, "refund"),
            student_id=invoice.student_id,
            type="refund",
            amount=self._q(amount),
            currency=invoice.currency,
            status="paid",
            paid_at=utcnow(),
            description=reason,
            reverses_invoice_id=invoice.id,
            created_by=actor.user_id,
        )
        session.add(reversal)
        session.flush()
        observe_ledger_row("refund")
        logger.info("ledger.refund_created", extra={"entity_type": "invoice", "entity_id": str(reversal.id)})
        return reversal

    def refunded_total(self, session: Session, invoice_id: uuid.UUID) -> Decimal:
        total = session.scalar(
            select(func.coalesce(func.sum(Invoice.amount), 0)).where(
                Invoice.type == "refund",
                Invoice.reverses_invoice_id == invoice_id,
            )
        )
        return self._q(Decimal(total or 0))

    def commission_rate_for(self, session: Session, staff_id: str) -> tuple[Decimal, str]:
        override = session.scalar(select(StaffCommissionRate).where(StaffCommissionRate.staff_id == staff_id))
        if override is not None:
            return self._q(override.amount), override.currency
        settings = self._settings()
        return self._q(settings.commission_amount), settings.commission_currency

    def set_staff_rate(
        self,
        session: Session,
        actor: Actor,
        *,
        staff_id: str,
        amount: Decimal,
        currency: str,
    ) -> tuple[StaffCommissionRate, dict[str, str] | None]:
        """Upsert a staff-specific rate, returning the row and its previous values."""
        if amount < 0:
            raise ValidationError("commission rate cannot be negative")
        row = session.scalar(select(StaffCommissionRate).where(StaffCommissionRate.staff_id == staff_id))
        previous: dict[str, str] | None = None
        if row is None:
            row = StaffCommissionRate(staff_id=staff_id, amount=self._q(amount), currency=currency.upper(), updated_by=actor.user_id)
        else:
            previous = {"amount": str(row.amount), "currency": row.currency}
            row.amount = self._q(amount)
            row.currency = currency.upper()
            row.updated_by = actor.user_id
        session.add(row)
        session.flush()
        return row, previous

    def on_contract_signed(self, session: Session, contract: Contract) -> Commission | None:
        existing = session.scalar(
            select(Commission).where(Commission.contract_id == contract.id, Commission.status == "pending")
        )
        if existing is not None:
            raise InvalidState("commission already accrued for contract", details={"contract_id": str(contract.id)})

        amount, currency = self.commission_rate_for(session, contract.staff_id)
        if amount == 0:
            return None

        commission = Commission(
            staff_id=contract.staff_id,
            student_id=contract.student_id,
            contract_id=contract.id,
            amount=amount,
            currency=currency,
            status="pending",
            reason="contract signed",
        )
        session.add(commission)
        session.flush()
        observe_ledger_row("commission")
        return commission

    def on_contract_cancelled(self, session: Session, contract: Contract, *, reason: str) -> list[Commission]:
        accrued = session.scalars(
            select(Commission).where(Commission.contract_id == contract.id, Commission.status == "pending")
        ).all()
        reversed_ids = set(
            session.scalars(
                select(Commission.reverses_commission_id).where(
                    Commission.contract_id == contract.id,
                    Commission.status == "clawback",
                )
            ).all()
        )

        clawbacks: list[Commission] = []
        for row in accrued:
            if row.id in reversed_ids:
                continue
            clawback = Commission(
                staff_id=row.staff_id,
                student_id=row.student_id,
                contract_id=row.contract_id,
                amount=-row.amount,
                currency=row.currency,
                status="clawback",
                reverses_commission_id=row.id,
                reason=reason,
            )
            session.add(clawback)
            clawbacks.append(clawback)
        session.flush()
        observe_ledger_row("clawback", len(clawbacks))
        return clawbacks

    def net_revenue(self, session: Session, student_id: uuid.UUID | None = None) -> NetRevenueRead:
        stmt = select(Invoice.currency, Invoice.type, func.sum(Invoice.amount)).where(Invoice.status == "paid")
        if student_id is not None:
            stmt = stmt.where(Invoice.student_id == student_id)
        stmt = stmt.group_by(Invoice.currency, Invoice.type)

        totals: dict[str, dict[str, Decimal]] = {}
        for currency, invoice_type, total in session.execute(stmt).all():
            bucket = totals.setdefault(currency, {"paid": Decimal("0"), "refunded": Decimal("0")})
            key = "refunded" if invoice_type == "refund" else "paid"
            bucket[key] += self._q(Decimal(total or 0))

        lines = [
            NetRevenueLine(
                currency=currency,
                paid=bucket["paid"],
                refunded=bucket["refunded"],
                net=bucket["paid"] - bucket["refunded"],
            )
            for currency, bucket in sorted(totals.items())
        ]
        return NetRevenueRead(student_id=student_id, lines=lines)

    def list_invoices(self, session: Session, student_id: uuid.UUID) -> list[Invoice]:
        return list(
            session.scalars(
                select(Invoice).where(Invoice.student_id == student_id).order_by(Invoice.created_at.asc(), Invoice.invoice_number.asc())
            ).all()
        )

    def list_commissions(
        self,
        session: Session,
        *,
        staff_id: str | None = None,
        student_id: uuid.UUID | None = None,
    ) -> list[Commission]:
        stmt = select(Commission)
        if staff_id is not None:
            stmt = stmt.where(Commission.staff_id == staff_id)
        if student_id is not None:
            stmt = stmt.where(Commission.student_id == student_id)
        return list(session.scalars(stmt.order_by(Commission.created_at.asc())).all())

    def _paid_invoice(
        self,
        session: Session,
        actor: Actor,
        *,
        student: Student,
        invoice_type: str,
        amount: Decimal,
        currency: str,
        receipt_ref: str,
        description: str | None,
    ) -> Invoice:
        self._require_positive(amount)
        if not receipt_ref or not receipt_ref.strip():
            raise ValidationError("receipt reference is required")
        invoice = Invoice(
            invoice_number=self._next_number(session, invoice_type),
            student_id=student.id,
            type=invoice_type,
            amount=self._q(amount),
            currency=currency.upper(),
            status="paid",
            paid_at=utcnow(),
            description=description,
            receipt_ref=receipt_ref,
            created_by=actor.user_id,
        )
        session.add(invoice)
        session.flush()
        observe_ledger_row("invoice")
        return invoice

    def _next_number(self, session: Session, invoice_type: str) -> str:
        counter = session.scalar(select(func.count()).select_from(Invoice).where(Invoice.type == invoice_type)) or 0
        return f"INV-{_NUMBER_PREFIXES[invoice_type]}-{counter + 1:05d}"

    @staticmethod
    def _require_positive(amount: Decimal) -> None:
        if amount is None or Decimal(amount) <= 0:
            raise ValidationError("amount must be greater than zero", details={"amount": str(amount)})

    @staticmethod
    def _q(value: Decimal) -> Decimal:
        return Decimal(value).quantize(Decimal("0.000001"))


ledger_service = LedgerService()
