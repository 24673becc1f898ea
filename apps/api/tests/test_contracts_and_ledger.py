from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eduflare import events
from eduflare.cases.errors import Forbidden, InvalidState, InvalidTransition, PreconditionFailed, ValidationError
from eduflare.cases.models import Contract, Student
from eduflare.cases.schemas import ContractCreate, InvoiceIssue, LeadCreate
from eduflare.cases.service import CaseLifecycleService
from eduflare.core.config import get_settings
from eduflare.core.database import Base
from eduflare.platform.audit.models import AuditEntry
from eduflare.platform.ledger.models import Commission
from eduflare.platform.ledger.schemas import StaffCommissionRateSet
from eduflare.platform.security.context import Actor


STAFF = Actor(user_id="staff-1", role="staff")
ADMIN = Actor(user_id="admin-1", role="admin")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


def _student(session: Session, service: CaseLifecycleService, name: str = "Saidi Mrisho") -> uuid.UUID:
    lead = service.create_lead(session, STAFF, LeadCreate(name=name))
    student = service.convert_lead(
        session,
        STAFF,
        lead.id,
        assigned_staff_id="staff-1",
        payment_amount=Decimal("50000"),
        payment_currency="TZS",
        receipt_ref=f"rcpt-{name}",
    )
    return student.id


def _contract(session: Session, service: CaseLifecycleService, student_id: uuid.UUID) -> uuid.UUID:
    created = service.create_contract(
        session,
        STAFF,
        ContractCreate(
            student_id=student_id,
            amount=Decimal("4500000"),
            deposit_amount=Decimal("1000000"),
            non_refundable_amount=Decimal("500000"),
            currency="tzs",
        ),
    )
    return created.id


def _signed_contract(session: Session, service: CaseLifecycleService, student_id: uuid.UUID) -> uuid.UUID:
    contract_id = _contract(session, service, student_id)
    service.send_contract(session, STAFF, contract_id)
    service.request_signature(session, STAFF, contract_id)
    service.sign_contract(session, STAFF, contract_id, signature_ref="sig-001")
    return contract_id


def test_contract_is_drafted_with_current_pricing(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)

    contract_id = _contract(db_session, service, student_id)
    contract = db_session.get(Contract, contract_id)
    assert contract.status == "draft"
    assert contract.currency == "TZS"
    assert contract.staff_id == "staff-1"
    assert contract.pricing_version == "2025-v1"

    with pytest.raises(ValidationError):
        service.create_contract(
            db_session,
            STAFF,
            ContractCreate(
                student_id=student_id,
                amount=Decimal("100"),
                deposit_amount=Decimal("80"),
                non_refundable_amount=Decimal("40"),
                currency="TZS",
            ),
        )


def test_signing_accrues_commission_and_advances_student(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)
    contract_id = _contract(db_session, service, student_id)
    service.send_contract(db_session, STAFF, contract_id)
    pending = service.request_signature(db_session, STAFF, contract_id)
    assert pending.status == "pending_signature"
    assert pending.expires_at is not None

    with pytest.raises(ValidationError):
        service.sign_contract(db_session, STAFF, contract_id, signature_ref=None)
    assert service.list_commissions(db_session, ADMIN) == []

    signed = service.sign_contract(db_session, STAFF, contract_id, signature_ref="sig-001")

    assert signed.status == "signed"
    assert signed.signed_at is not None
    commissions = service.list_commissions(db_session, ADMIN)
    assert len(commissions) == 1
    assert commissions[0].amount == Decimal("20000")
    assert commissions[0].currency == "TZS"
    assert commissions[0].staff_id == "staff-1"
    assert commissions[0].status == "pending"

    student = db_session.get(Student, student_id)
    assert student.status == "contract_signed"
    assert student.current_step == 2

    entry = db_session.scalars(select(AuditEntry).where(AuditEntry.action == "contract.signed")).one()
    assert entry.new_value["commission_id"] == str(commissions[0].id)
    assert Decimal(entry.new_value["commission_amount"]) == Decimal("20000")
    assert entry.new_value["student_status"] == "contract_signed"


def test_contract_can_be_signed_without_signature_window(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)
    contract_id = _contract(db_session, service, student_id)
    service.send_contract(db_session, STAFF, contract_id)

    signed = service.sign_contract(db_session, STAFF, contract_id, signature_ref="sig-002")
    assert signed.status == "signed"

    with pytest.raises(InvalidTransition):
        service.sign_contract(db_session, STAFF, contract_id, signature_ref="sig-003")
    assert len(service.list_commissions(db_session, ADMIN)) == 1


def test_only_admin_cancels_signed_contract_with_clawback(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)
    contract_id = _signed_contract(db_session, service, student_id)

    with pytest.raises(Forbidden):
        service.cancel_contract(db_session, STAFF, contract_id, reason="client withdrew")
    with pytest.raises(ValidationError):
        service.cancel_contract(db_session, ADMIN, contract_id, reason="")
    assert db_session.get(Contract, contract_id).status == "signed"

    cancelled = service.cancel_contract(db_session, ADMIN, contract_id, reason="client withdrew")

    assert cancelled.status == "cancelled"
    assert cancelled.cancel_reason == "client withdrew"
    rows = db_session.scalars(select(Commission).order_by(Commission.created_at.asc())).all()
    assert len(rows) == 2
    accrued, clawback = rows
    assert clawback.status == "clawback"
    assert clawback.amount == Decimal("-20000")
    assert clawback.reverses_commission_id == accrued.id
    assert accrued.amount == Decimal("20000")
    assert sum(row.amount for row in rows) == Decimal("0")

    entry = db_session.scalars(select(AuditEntry).where(AuditEntry.action == "contract.cancelled")).one()
    assert entry.is_override is True
    assert entry.override_reason == "client withdrew"
    assert entry.new_value["clawback_ids"] == [str(clawback.id)]

    with pytest.raises(InvalidTransition):
        service.cancel_contract(db_session, ADMIN, contract_id, reason="again")


def test_staff_rate_override_applies_to_new_contracts(db_session: Session) -> None:
    service = CaseLifecycleService()

    with pytest.raises(Forbidden):
        service.set_commission_rate(db_session, STAFF, "staff-1", StaffCommissionRateSet(amount=Decimal("35000"), currency="TZS"))
    rate = service.set_commission_rate(db_session, ADMIN, "staff-1", StaffCommissionRateSet(amount=Decimal("35000"), currency="TZS"))
    assert rate.amount == Decimal("35000")

    student_id = _student(db_session, service)
    _signed_contract(db_session, service, student_id)

    commissions = service.list_commissions(db_session, STAFF)
    assert [row.amount for row in commissions] == [Decimal("35000")]

    entry = db_session.scalars(select(AuditEntry).where(AuditEntry.action == "commission.rate_set")).one()
    assert entry.previous_value is None
    assert Decimal(entry.new_value["amount"]) == Decimal("35000")


def test_zero_rate_accrues_nothing(db_session: Session) -> None:
    service = CaseLifecycleService()
    service.set_commission_rate(db_session, ADMIN, "staff-1", StaffCommissionRateSet(amount=Decimal("0"), currency="TZS"))
    student_id = _student(db_session, service)

    _signed_contract(db_session, service, student_id)
    assert service.list_commissions(db_session, ADMIN) == []


def test_contract_expiry(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)
    contract_id = _contract(db_session, service, student_id)
    service.send_contract(db_session, STAFF, contract_id)
    service.request_signature(db_session, STAFF, contract_id)

    with pytest.raises(PreconditionFailed):
        service.expire_contract(db_session, ADMIN, contract_id)
    assert service.expire_overdue_contracts(db_session, ADMIN) == []

    contract = db_session.get(Contract, contract_id)
    contract.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
    db_session.commit()

    with pytest.raises(PreconditionFailed) as exc_info:
        service.sign_contract(db_session, STAFF, contract_id, signature_ref="sig-late")
    assert exc_info.value.missing == ["valid_signature_window"]

    expired = service.expire_overdue_contracts(db_session, ADMIN)
    assert [row.id for row in expired] == [contract_id]
    assert expired[0].status == "expired"
    assert service.list_commissions(db_session, ADMIN) == []
    assert db_session.get(Student, student_id).status == "pending_contract"


def test_invoice_issue_overdue_and_settlement(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)

    issued = service.issue_invoice(
        db_session,
        STAFF,
        student_id,
        InvoiceIssue(type="deposit", amount=Decimal("1000000"), currency="TZS", due_date=date.today() - timedelta(days=1)),
    )
    assert issued.status == "pending"
    assert issued.invoice_number == "INV-DEP-00001"

    with pytest.raises(Forbidden):
        service.mark_overdue_invoices(db_session, STAFF)
    overdue = service.mark_overdue_invoices(db_session, ADMIN, today=date.today())
    assert [row.id for row in overdue] == [issued.id]
    assert overdue[0].status == "overdue"

    settled = service.settle_invoice(db_session, STAFF, issued.id, receipt_ref="dep-001")
    assert settled.status == "paid"
    assert settled.receipt_ref == "dep-001"
    assert settled.amount == Decimal("1000000")

    with pytest.raises(InvalidState):
        service.settle_invoice(db_session, STAFF, issued.id, receipt_ref="dep-002")

    invoices = service.list_invoices(db_session, STAFF, student_id)
    assert sorted(row.type for row in invoices) == ["deposit", "opening_book"]


def test_refund_invoices_cannot_be_issued(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _student(db_session, service)

    with pytest.raises(ValueError):
        InvoiceIssue(type="refund", amount=Decimal("10"), currency="TZS")
    assert len(service.list_invoices(db_session, ADMIN, student_id)) == 1
