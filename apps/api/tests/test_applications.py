from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eduflare import events
from eduflare.cases.errors import Forbidden, InvalidState, InvalidTransition, PreconditionFailed, ValidationError
from eduflare.cases.models import Document, Student, UniversityApplication
from eduflare.cases.schemas import (
    ApplicationCreate,
    DocumentCreate,
    DocumentReview,
    LeadCreate,
    PaymentCreate,
    StudentProfileUpdate,
    UniversityCreate,
)
from eduflare.cases.service import CaseLifecycleService
from eduflare.core.config import get_settings
from eduflare.core.database import Base
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


def _convert(session: Session, service: CaseLifecycleService) -> uuid.UUID:
    lead = service.create_lead(session, STAFF, LeadCreate(name="Rehema Kweka"))
    student = service.convert_lead(
        session,
        STAFF,
        lead.id,
        assigned_staff_id="staff-1",
        payment_amount=Decimal("50000"),
        payment_currency="TZS",
        receipt_ref="rcpt-001",
    )
    return student.id


def _active_student(session: Session, service: CaseLifecycleService) -> uuid.UUID:
    student_id = _convert(session, service)
    service.activate_student(session, STAFF, student_id, signed_contract_ref="contract-001", deposit_receipt_ref="deposit-001")
    service.update_student_profile(
        session,
        STAFF,
        student_id,
        StudentProfileUpdate.model_validate(
            {
                "passport_number": "TZ1234567",
                "passport_expiry": (date.today() + timedelta(days=400)).isoformat(),
                "nationality": "Tanzanian",
                "family_members": [{"name": "Anna Kweka", "relation": "mother"}],
                "education_history": [{"institution": "Kibaha Secondary", "level": "secondary"}],
            }
        ),
    )
    return student_id


def _university(session: Session, service: CaseLifecycleService, name: str = "Zhejiang University") -> uuid.UUID:
    return service.create_university(session, ADMIN, UniversityCreate(name=name, country="china", city="Hangzhou")).id


def _verify(session: Session, service: CaseLifecycleService, student_id: uuid.UUID, *doc_types: str) -> None:
    for doc_type in doc_types:
        document = service.add_document(
            session,
            STAFF,
            student_id,
            DocumentCreate(doc_type=doc_type, name=f"{doc_type} scan", file_ref=f"files/{doc_type}.pdf"),
        )
        service.review_document(session, STAFF, document.id, DocumentReview(status="verified"))


def _application(
    session: Session,
    service: CaseLifecycleService,
    student_id: uuid.UUID,
    university_id: uuid.UUID,
    *,
    batch: int = 1,
    priority: int = 1,
) -> uuid.UUID:
    created = service.create_application(
        session,
        STAFF,
        ApplicationCreate(
            student_id=student_id,
            university_id=university_id,
            program="BSc Computer Science",
            batch=batch,
            priority=priority,
        ),
    )
    return created.id


def test_submission_requires_all_required_documents_verified(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    application_id = _application(db_session, service, student_id, _university(db_session, service))
    _verify(db_session, service, student_id, "passport", "transcript")

    with pytest.raises(PreconditionFailed) as exc_info:
        service.submit_application_to_admin(db_session, STAFF, application_id)

    assert exc_info.value.details == {"missing": ["certificate"]}
    assert db_session.get(UniversityApplication, application_id).status == "draft"
    student = db_session.get(Student, student_id)
    assert student.status == "active_profile"
    assert student.is_profile_locked is False


def test_submission_requires_complete_profile(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _convert(db_session, service)
    service.activate_student(db_session, STAFF, student_id, signed_contract_ref="contract-001", deposit_receipt_ref="deposit-001")
    _verify(db_session, service, student_id, "passport", "transcript", "certificate")
    application_id = _application(db_session, service, student_id, _university(db_session, service))

    with pytest.raises(PreconditionFailed) as exc_info:
        service.submit_application_to_admin(db_session, STAFF, application_id)

    assert exc_info.value.missing == ["family_members", "education_history", "passport_expiry"]
    assert db_session.get(UniversityApplication, application_id).status == "draft"
    student = db_session.get(Student, student_id)
    assert student.status == "active_profile"
    assert student.is_profile_locked is False


def test_admin_status_change_cannot_skip_profile_checks(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _convert(db_session, service)
    service.activate_student(db_session, STAFF, student_id, signed_contract_ref="contract-001", deposit_receipt_ref="deposit-001")

    with pytest.raises(PreconditionFailed):
        service.change_student_status(db_session, ADMIN, student_id, "submitted_to_admin")

    student = db_session.get(Student, student_id)
    assert student.status == "active_profile"
    assert student.is_profile_locked is False


def test_flagged_document_does_not_count_as_verified(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    application_id = _application(db_session, service, student_id, _university(db_session, service))
    _verify(db_session, service, student_id, "passport", "transcript")
    certificate = service.add_document(
        db_session,
        STAFF,
        student_id,
        DocumentCreate(doc_type="certificate", name="certificate scan", file_ref="files/certificate.pdf"),
    )

    with pytest.raises(ValidationError):
        service.review_document(db_session, STAFF, certificate.id, DocumentReview(status="error"))
    flagged = service.review_document(
        db_session,
        STAFF,
        certificate.id,
        DocumentReview(status="action_required", error_message="stamp missing"),
    )
    assert flagged.error_message == "stamp missing"

    with pytest.raises(PreconditionFailed) as exc_info:
        service.submit_application_to_admin(db_session, STAFF, application_id)
    assert exc_info.value.missing == ["certificate"]


def test_batch_capacity_and_priority(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    university_id = _university(db_session, service)

    _application(db_session, service, student_id, university_id, batch=1, priority=1)
    _application(db_session, service, student_id, university_id, batch=1, priority=2)
    with pytest.raises(ValidationError) as exc_info:
        _application(db_session, service, student_id, university_id, batch=1, priority=3)
    assert exc_info.value.details == {"batch": 1, "capacity": 2}

    _application(db_session, service, student_id, university_id, batch=2, priority=1)
    with pytest.raises(ValidationError):
        _application(db_session, service, student_id, university_id, batch=2, priority=1)

    listed = service.list_applications(db_session, STAFF, student_id)
    assert [(row.batch, row.priority) for row in listed] == [(1, 1), (1, 2), (2, 1)]


def test_application_requires_active_profile(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _convert(db_session, service)
    university_id = _university(db_session, service)

    with pytest.raises(PreconditionFailed):
        _application(db_session, service, student_id, university_id)


def test_only_admin_manages_universities(db_session: Session) -> None:
    service = CaseLifecycleService()
    with pytest.raises(Forbidden):
        service.create_university(db_session, STAFF, UniversityCreate(name="Anadolu University", country="turkey"))
    _university(db_session, service, "Anadolu University")
    assert [row.name for row in service.list_universities(db_session)] == ["Anadolu University"]


def test_school_return_unlocks_named_fields_and_resubmission_relocks(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    application_id = _application(db_session, service, student_id, _university(db_session, service))
    _verify(db_session, service, student_id, "passport", "transcript", "certificate")

    submitted = service.submit_application_to_admin(db_session, STAFF, application_id)
    assert submitted.status == "pending_admin"
    student = db_session.get(Student, student_id)
    assert student.status == "submitted_to_admin"
    assert student.is_profile_locked is True

    with pytest.raises(Forbidden):
        service.approve_application(db_session, STAFF, application_id)
    service.approve_application(db_session, ADMIN, application_id, notes="looks complete")

    sent = service.submit_application_to_university(db_session, ADMIN, application_id)
    assert sent.status == "submitted_to_uni"
    assert sent.submitted_to_uni_at is not None
    db_session.refresh(student)
    assert student.status == "submitted_to_uni"
    documents = db_session.scalars(select(Document).where(Document.student_id == student_id)).all()
    assert documents
    assert all(document.is_locked for document in documents)

    passport_doc = next(document for document in documents if document.doc_type == "passport")
    with pytest.raises(InvalidState):
        service.review_document(
            db_session,
            STAFF,
            passport_doc.id,
            DocumentReview(status="error", error_message="blurred"),
        )

    with pytest.raises(ValidationError):
        service.return_application_from_school(db_session, STAFF, application_id, reason="scan unreadable", fields=[])

    returned = service.return_application_from_school(
        db_session,
        STAFF,
        application_id,
        reason="passport scan unreadable",
        fields=["passport_number", "documents.passport"],
    )
    assert returned.status == "returned_by_school"
    assert returned.returned_fields == ["documents.passport", "passport_number"]
    db_session.refresh(student)
    assert student.status == "returned_by_school"
    assert student.is_profile_locked is True
    assert student.unlocked_fields == ["documents.passport", "passport_number"]

    service.update_student_profile(db_session, STAFF, student_id, StudentProfileUpdate(passport_number="TZ7654321"))
    with pytest.raises(Forbidden):
        service.update_student_profile(db_session, STAFF, student_id, StudentProfileUpdate(nationality="Kenyan"))
    service.add_document(
        db_session,
        STAFF,
        student_id,
        DocumentCreate(doc_type="passport", name="passport rescan", file_ref="files/passport-2.pdf"),
    )
    with pytest.raises(Forbidden):
        service.add_document(
            db_session,
            STAFF,
            student_id,
            DocumentCreate(doc_type="transcript", name="transcript rescan", file_ref="files/transcript-2.pdf"),
        )

    resubmitted = service.submit_application_to_admin(db_session, STAFF, application_id)
    assert resubmitted.status == "pending_admin"
    db_session.refresh(student)
    assert student.is_profile_locked is True
    assert student.unlocked_fields == []


def test_admin_rejection_returns_profile_for_edits(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    application_id = _application(db_session, service, student_id, _university(db_session, service))
    _verify(db_session, service, student_id, "passport", "transcript", "certificate")
    service.submit_application_to_admin(db_session, STAFF, application_id)

    with pytest.raises(ValidationError):
        service.reject_application(db_session, ADMIN, application_id, reason="  ")
    assert db_session.get(UniversityApplication, application_id).status == "pending_admin"

    rejected = service.reject_application(db_session, ADMIN, application_id, reason="wrong programme")
    assert rejected.status == "rejected"
    assert rejected.admin_notes == "wrong programme"

    student = db_session.get(Student, student_id)
    assert student.status == "returned_by_admin"
    assert student.current_step == 3
    assert student.is_profile_locked is False

    service.update_student_profile(db_session, STAFF, student_id, StudentProfileUpdate(nationality="Kenyan"))
    resubmitted = service.lock_and_submit_profile(db_session, STAFF, student_id)
    assert resubmitted.status == "submitted_to_admin"
    assert resubmitted.is_profile_locked is True

    with pytest.raises(InvalidTransition):
        service.approve_application(db_session, ADMIN, application_id)


def test_acceptance_offer_release_and_completion(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    application_id = _application(db_session, service, student_id, _university(db_session, service))
    _verify(db_session, service, student_id, "passport", "transcript", "certificate")
    service.submit_application_to_admin(db_session, STAFF, application_id)
    service.approve_application(db_session, ADMIN, application_id)
    service.submit_application_to_university(db_session, ADMIN, application_id)

    with pytest.raises(ValidationError):
        service.record_university_decision(db_session, STAFF, application_id, decision="maybe")
    accepted = service.record_university_decision(db_session, STAFF, application_id, decision="accepted")
    assert accepted.status == "accepted"
    assert accepted.responded_at is not None
    assert db_session.get(Student, student_id).status == "offer_received"

    letter = service.add_document(
        db_session,
        ADMIN,
        student_id,
        DocumentCreate(doc_type="admission_letter", name="Admission letter", file_ref="files/admission.pdf"),
    )
    assert letter.is_hidden is True

    with pytest.raises(PreconditionFailed) as exc_info:
        service.release_offer(db_session, ADMIN, student_id)
    assert exc_info.value.missing == ["balance_payment"]

    service.record_payment(
        db_session,
        STAFF,
        student_id,
        PaymentCreate(type="balance", amount=Decimal("3000000"), currency="TZS", receipt_ref="balance-001"),
    )
    with pytest.raises(Forbidden):
        service.release_offer(db_session, STAFF, student_id)

    released = service.release_offer(db_session, ADMIN, student_id)
    assert released.status == "offer_released"
    assert released.offers_unlocked is True
    assert released.current_step == 5
    assert db_session.get(Document, letter.id).is_hidden is False
    offer_events = [item for item in events.published_events if item["event_type"] == "cases.offer.released"]
    assert offer_events[0]["payload"]["document_ids"] == [str(letter.id)]

    completed = service.complete_case(db_session, STAFF, student_id)
    assert completed.status == "completed"
    with pytest.raises(InvalidState):
        service.update_student_profile(db_session, ADMIN, student_id, StudentProfileUpdate(phone="+255700000004"))


def test_idle_applications_report(db_session: Session) -> None:
    service = CaseLifecycleService()
    student_id = _active_student(db_session, service)
    application_id = _application(db_session, service, student_id, _university(db_session, service))
    _verify(db_session, service, student_id, "passport", "transcript", "certificate")
    service.submit_application_to_admin(db_session, STAFF, application_id)

    assert service.list_idle_applications(db_session, ADMIN, days=3) == []
    assert [row.id for row in service.list_idle_applications(db_session, ADMIN, days=0)] == [application_id]
