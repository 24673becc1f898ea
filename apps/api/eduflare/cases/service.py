from __future__ import annotations

import calendar
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eduflare import events
from eduflare.cases.errors import CaseLifecycleError, Forbidden, InvalidState, PreconditionFailed, ValidationError
from eduflare.cases.locks import LockManager, document_field, lock_manager, lock_state
from eduflare.cases.models import Contract, Document, Lead, Student, UniversityApplication, University
from eduflare.cases.repositories import (
    ApplicationRepository,
    ContractRepository,
    DocumentRepository,
    InvoiceRepository,
    LeadRepository,
    StudentRepository,
    UniversityRepository,
    UnlockRequestRepository,
)
from eduflare.cases.schemas import (
    ApplicationCreate,
    ApplicationRead,
    ContractCreate,
    ContractRead,
    DocumentCreate,
    DocumentRead,
    DocumentReview,
    InvoiceIssue,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    PaymentCreate,
    StudentProfileUpdate,
    StudentRead,
    UniversityCreate,
    UniversityRead,
    UnlockRequestRead,
)
from eduflare.cases.transitions import StatusTransitionValidator, TransitionDecision, is_terminal, status_transition_validator
from eduflare.context import reset_actor_id, set_actor_id
from eduflare.core.config import Settings, get_settings
from eduflare.metrics import observe_operation, observe_operation_failure, observe_transition
from eduflare.otel import get_tracer
from eduflare.platform.audit.schemas import AuditEntryRead, AuditQuery
from eduflare.platform.audit.service import AuditLog, audit_log
from eduflare.platform.ledger.schemas import (
    CommissionRead,
    InvoiceRead,
    NetRevenueRead,
    StaffCommissionRateRead,
    StaffCommissionRateSet,
)
from eduflare.platform.ledger.service import LedgerService, ledger_service
from eduflare.platform.security.context import Actor


logger = logging.getLogger("eduflare.cases")
tracer = get_tracer("eduflare.cases")

# student statuses from which new university applications may be drafted
APPLICATION_READY_STATUSES = frozenset(
    {"active_profile", "submitted_to_admin", "returned_by_admin", "submitted_to_uni", "returned_by_school"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(value.day, calendar.monthrange(year, month)[1]))


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


@dataclass(slots=True)
class CaseLifecycleService:
    """Runs every state-changing case operation as one unit of work.

    Each public mutation validates, mutates, applies its side effects through
    the lock manager and ledger, appends exactly one audit entry and commits.
    Any typed failure rolls the whole session back. Domain events are
    published only after the commit succeeds.
    """

    leads: LeadRepository = LeadRepository()
    students: StudentRepository = StudentRepository()
    documents: DocumentRepository = DocumentRepository()
    universities: UniversityRepository = UniversityRepository()
    applications: ApplicationRepository = ApplicationRepository()
    contracts: ContractRepository = ContractRepository()
    unlock_requests: UnlockRequestRepository = UnlockRequestRepository()
    invoices: InvoiceRepository = InvoiceRepository()
    validator: StatusTransitionValidator = field(default_factory=lambda: status_transition_validator)
    locks: LockManager = field(default_factory=lambda: lock_manager)
    ledger: LedgerService = field(default_factory=lambda: ledger_service)
    audit: AuditLog = field(default_factory=lambda: audit_log)
    settings: Settings | None = None

    # ------------------------------------------------------------------ leads

    def create_lead(self, session: Session, actor: Actor, dto: LeadCreate) -> LeadRead:
        with self._operation(session, actor, "lead.create") as pending:
            self.validator.require_role("lead.create", actor.role)
            assigned = dto.assigned_staff_id
            if actor.role == "staff":
                if assigned not in (None, actor.user_id):
                    raise Forbidden("staff may only create leads assigned to themselves", role=actor.role)
                assigned = actor.user_id

            payload = dto.model_dump(mode="python")
            payload["assigned_staff_id"] = assigned
            lead = self.leads.add(session, Lead(**payload, status="new"))

            self.audit.record(
                session,
                actor,
                action="lead.created",
                entity_type="lead",
                entity_id=lead.id,
                previous_value=None,
                new_value=LeadRead.model_validate(lead).model_dump(mode="json"),
            )
            pending.append(events.build_envelope("cases.lead.created", actor.user_id, {"lead_id": str(lead.id)}))
        return LeadRead.model_validate(lead)

    def get_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID) -> LeadRead:
        lead = self.leads.get(session, lead_id)
        self.validator.require_owner("lead.update", lead.assigned_staff_id, actor.user_id, actor.role)
        return LeadRead.model_validate(lead)

    def list_leads(self, session: Session, actor: Actor, *, status: str | None = None) -> list[LeadRead]:
        self.validator.require_role("lead.update", actor.role)
        staff_filter = actor.user_id if actor.role == "staff" else None
        return [LeadRead.model_validate(row) for row in self.leads.search(session, status=status, assigned_staff_id=staff_filter)]

    def update_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        with self._operation(session, actor, "lead.update"):
            lead = self.leads.get(session, lead_id)
            self.validator.require_owner("lead.update", lead.assigned_staff_id, actor.user_id, actor.role)
            changes = dto.model_dump(mode="python", exclude_unset=True)
            if not changes:
                raise ValidationError("no lead fields supplied")
            if is_terminal("lead", lead.status):
                frozen = sorted(set(changes) - {"notes"})
                if frozen:
                    raise InvalidState(
                        f"lead is {lead.status}; only notes may change",
                        details={"fields": frozen, "status": lead.status},
                    )

            previous = {name: getattr(lead, name) for name in changes}
            for name, value in changes.items():
                setattr(lead, name, value)
            lead.row_version += 1
            session.add(lead)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="lead.updated",
                entity_type="lead",
                entity_id=lead.id,
                previous_value=previous,
                new_value=changes,
            )
        return LeadRead.model_validate(lead)

    def change_lead_status(self, session: Session, actor: Actor, lead_id: uuid.UUID, requested: str) -> LeadRead:
        with self._operation(session, actor, "lead.change_status") as pending:
            lead = self.leads.get(session, lead_id)
            self.validator.require_owner("lead.update", lead.assigned_staff_id, actor.user_id, actor.role)
            if requested == "converted":
                raise ValidationError("leads are converted through the conversion operation")
            decision = self.validator.check_transition("lead", lead.status, requested, actor.role)
            self._apply_status(lead, decision)
            lead.row_version += 1
            session.add(lead)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="lead.status_changed",
                entity_type="lead",
                entity_id=lead.id,
                previous_value={"status": decision.current},
                new_value={"status": decision.requested},
            )
            pending.append(
                events.build_envelope(
                    "cases.lead.status_changed",
                    actor.user_id,
                    {"lead_id": str(lead.id), "from": decision.current, "to": decision.requested},
                )
            )
        return LeadRead.model_validate(lead)

    def assign_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID, staff_id: str) -> LeadRead:
        with self._operation(session, actor, "lead.assign"):
            self.validator.require_role("lead.assign", actor.role)
            lead = self.leads.get(session, lead_id)
            if is_terminal("lead", lead.status):
                raise InvalidState(f"lead is {lead.status} and can no longer be reassigned")
            if _blank(staff_id):
                raise ValidationError("staff id is required")
            previous = lead.assigned_staff_id
            lead.assigned_staff_id = staff_id
            lead.row_version += 1
            session.add(lead)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="lead.assigned",
                entity_type="lead",
                entity_id=lead.id,
                previous_value={"assigned_staff_id": previous},
                new_value={"assigned_staff_id": staff_id},
            )
        return LeadRead.model_validate(lead)

    def record_lead_contact(self, session: Session, actor: Actor, lead_id: uuid.UUID, *, note: str | None = None) -> LeadRead:
        with self._operation(session, actor, "lead.contact"):
            lead = self.leads.get(session, lead_id)
            self.validator.require_owner("lead.update", lead.assigned_staff_id, actor.user_id, actor.role)
            if is_terminal("lead", lead.status):
                raise InvalidState(f"lead is {lead.status}; contact can no longer be logged")
            previous = {"last_contact_at": lead.last_contact_at, "notes": lead.notes}
            lead.last_contact_at = utcnow()
            if not _blank(note):
                lead.notes = f"{lead.notes}\n{note}" if lead.notes else note
            lead.row_version += 1
            session.add(lead)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="lead.contacted",
                entity_type="lead",
                entity_id=lead.id,
                previous_value=previous,
                new_value={"last_contact_at": lead.last_contact_at, "notes": lead.notes},
            )
        return LeadRead.model_validate(lead)

    def list_idle_leads(self, session: Session, actor: Actor, *, days: int | None = None) -> list[LeadRead]:
        self.validator.require_role("report.idle", actor.role)
        idle_days = days if days is not None else self._settings().lead_idle_days
        cutoff = utcnow() - timedelta(days=idle_days)
        staff_filter = actor.user_id if actor.role == "staff" else None
        rows = self.leads.list_idle(session, before=cutoff, assigned_staff_id=staff_filter)
        return [LeadRead.model_validate(row) for row in rows]

    def convert_lead(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        *,
        assigned_staff_id: str | None,
        payment_amount: Decimal | None,
        payment_currency: str | None,
        receipt_ref: str | None,
    ) -> StudentRead:
        with self._operation(session, actor, "lead.convert") as pending:
            lead = self.leads.get(session, lead_id)
            self.validator.require_owner("lead.convert", lead.assigned_staff_id, actor.user_id, actor.role)

            if _blank(assigned_staff_id):
                raise ValidationError("an assigned staff member is required to convert a lead")
            if payment_amount is None or Decimal(payment_amount) <= 0:
                raise ValidationError(
                    "opening book payment must be greater than zero",
                    details={"payment_amount": None if payment_amount is None else str(payment_amount)},
                )
            if _blank(receipt_ref):
                raise ValidationError("a payment receipt is required to convert a lead")
            currency = (payment_currency or "").strip().upper() or self._settings().default_currency

            decision = self.validator.check_transition("lead", lead.status, "converted", actor.role)
            if self.students.get_by_lead(session, lead.id) is not None:
                raise InvalidState("lead already has a student record", details={"lead_id": str(lead.id)})

            student = self.students.add(
                session,
                Student(
                    lead_id=lead.id,
                    assigned_staff_id=assigned_staff_id,
                    full_name=lead.name,
                    email=lead.email,
                    phone=lead.phone,
                    status="pending_contract",
                    family_members=[],
                    education_history=[],
                    employment_history=[],
                    unlocked_fields=[],
                ),
            )

            invoice = None
            if "open_opening_book_invoice" in decision.side_effects:
                invoice = self.ledger.on_convert(
                    session,
                    actor,
                    student=student,
                    amount=Decimal(payment_amount),
                    currency=currency,
                    receipt_ref=receipt_ref,
                )
            receipt = self.documents.add(
                session,
                Document(
                    student_id=student.id,
                    doc_type="receipt",
                    name="Opening book payment receipt",
                    file_ref=receipt_ref,
                    status="verified",
                    verified_by=actor.user_id,
                    verified_at=utcnow(),
                    uploaded_by=actor.user_id,
                ),
            )

            self._apply_status(lead, decision)
            lead.assigned_staff_id = assigned_staff_id
            lead.converted_at = utcnow()
            lead.converted_student_id = student.id
            lead.row_version += 1
            session.add(lead)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="lead.converted",
                entity_type="lead",
                entity_id=lead.id,
                previous_value={"status": decision.current, "assigned_staff_id": lead.assigned_staff_id},
                new_value={
                    "status": lead.status,
                    "student_id": str(student.id),
                    "student_status": student.status,
                    "invoice_id": str(invoice.id) if invoice else None,
                    "payment_amount": str(Decimal(payment_amount)),
                    "payment_currency": currency,
                    "receipt_document_id": str(receipt.id),
                },
            )
            pending.append(
                events.build_envelope(
                    "cases.lead.converted",
                    actor.user_id,
                    {
                        "lead_id": str(lead.id),
                        "student_id": str(student.id),
                        "assigned_staff_id": assigned_staff_id,
                        "invoice_id": str(invoice.id) if invoice else None,
                    },
                )
            )
        return StudentRead.model_validate(student)

    # --------------------------------------------------------------- students

    def get_student(self, session: Session, actor: Actor, student_id: uuid.UUID) -> StudentRead:
        student = self.students.get(session, student_id)
        self.validator.require_owner(
            "student.read", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
        )
        return StudentRead.model_validate(student)

    def list_students(self, session: Session, actor: Actor, *, status: str | None = None) -> list[StudentRead]:
        self.validator.require_role("lead.update", actor.role)
        staff_filter = actor.user_id if actor.role == "staff" else None
        rows = self.students.search(session, status=status, assigned_staff_id=staff_filter)
        return [StudentRead.model_validate(row) for row in rows]

    def update_student_profile(
        self,
        session: Session,
        actor: Actor,
        student_id: uuid.UUID,
        dto: StudentProfileUpdate,
    ) -> StudentRead:
        with self._operation(session, actor, "student.update_profile"):
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "student.update_profile", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            if is_terminal("student", student.status):
                raise InvalidState(f"student case is {student.status}")
            changes = dto.changes()
            if not changes:
                raise ValidationError("no profile fields supplied")
            self.locks.apply_field_changes(session, actor, student, changes, expected_version=dto.row_version)
        return StudentRead.model_validate(student)

    def activate_student(
        self,
        session: Session,
        actor: Actor,
        student_id: uuid.UUID,
        *,
        signed_contract_ref: str | None,
        deposit_receipt_ref: str | None,
    ) -> StudentRead:
        with self._operation(session, actor, "student.activate") as pending:
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "student.update_profile", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            missing = [
                name
                for name, value in (("signed_contract_ref", signed_contract_ref), ("deposit_receipt_ref", deposit_receipt_ref))
                if _blank(value)
            ]
            if missing:
                raise ValidationError("signed contract and deposit receipt are required", details={"missing": missing})

            decision = self.validator.check_transition("student", student.status, "active_profile", actor.role)
            now = utcnow()
            contract_doc = self.documents.add(
                session,
                Document(
                    student_id=student.id,
                    doc_type="contract",
                    name="Signed service contract",
                    file_ref=signed_contract_ref,
                    status="verified",
                    verified_by=actor.user_id,
                    verified_at=now,
                    uploaded_by=actor.user_id,
                ),
            )
            deposit_doc = self.documents.add(
                session,
                Document(
                    student_id=student.id,
                    doc_type="receipt",
                    name="Deposit payment receipt",
                    file_ref=deposit_receipt_ref,
                    status="verified",
                    verified_by=actor.user_id,
                    verified_at=now,
                    uploaded_by=actor.user_id,
                ),
            )
            self._move_student(session, actor, student, decision)

            self.audit.record(
                session,
                actor,
                action="student.activated",
                entity_type="student",
                entity_id=student.id,
                previous_value={"status": decision.current},
                new_value={
                    "status": student.status,
                    "contract_document_id": str(contract_doc.id),
                    "deposit_document_id": str(deposit_doc.id),
                },
            )
            pending.append(events.build_envelope("cases.student.activated", actor.user_id, {"student_id": str(student.id)}))
        return StudentRead.model_validate(student)

    def lock_and_submit_profile(self, session: Session, actor: Actor, student_id: uuid.UUID) -> StudentRead:
        with self._operation(session, actor, "student.lock_and_submit") as pending:
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "student.lock_and_submit", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            decision = self.validator.check_transition("student", student.status, "submitted_to_admin", actor.role)

            previous = {"status": decision.current, **lock_state(student)}
            self._move_student(session, actor, student, decision)
            if not student.is_profile_locked:
                self.locks.lock(session, student, locked_by=actor.user_id)

            self.audit.record(
                session,
                actor,
                action="student.profile_submitted",
                entity_type="student",
                entity_id=student.id,
                previous_value=previous,
                new_value={"status": student.status, **lock_state(student)},
                is_override=False,
            )
            pending.append(events.build_envelope("cases.student.submitted", actor.user_id, {"student_id": str(student.id)}))
        return StudentRead.model_validate(student)

    def change_student_status(
        self,
        session: Session,
        actor: Actor,
        student_id: uuid.UUID,
        requested: str,
        *,
        reason: str | None = None,
    ) -> StudentRead:
        with self._operation(session, actor, "student.change_status") as pending:
            self.validator.require_role("student.change_status", actor.role)
            student = self.students.get(session, student_id)
            decision = self.validator.check_transition("student", student.status, requested, actor.role)
            if requested == "offer_released":
                raise ValidationError("offers are released through the offer release operation")
            if "unlock_returned_fields" in decision.side_effects:
                raise ValidationError("school returns are recorded against the application")
            previous = {"status": decision.current, **lock_state(student)}
            self._move_student(session, actor, student, decision)

            self.audit.record(
                session,
                actor,
                action="student.status_changed",
                entity_type="student",
                entity_id=student.id,
                previous_value=previous,
                new_value={"status": student.status, "reason": reason, **lock_state(student)},
            )
            pending.append(
                events.build_envelope(
                    "cases.student.status_changed",
                    actor.user_id,
                    {"student_id": str(student.id), "from": decision.current, "to": decision.requested},
                )
            )
        return StudentRead.model_validate(student)

    def release_offer(self, session: Session, actor: Actor, student_id: uuid.UUID) -> StudentRead:
        with self._operation(session, actor, "offer.release") as pending:
            student = self.students.get(session, student_id)
            decision = self.validator.check_transition("student", student.status, "offer_released", actor.role)
            if not self.invoices.has_paid(session, student.id, "balance"):
                raise PreconditionFailed("balance must be paid before the offer is released", missing=["balance_payment"])

            released = self._move_student(session, actor, student, decision)
            self.audit.record(
                session,
                actor,
                action="student.offer_released",
                entity_type="student",
                entity_id=student.id,
                previous_value={"status": decision.current, "offers_unlocked": False},
                new_value={"status": student.status, "offers_unlocked": student.offers_unlocked, "document_ids": released},
            )
            pending.append(
                events.build_envelope(
                    "cases.offer.released",
                    actor.user_id,
                    {"student_id": str(student.id), "document_ids": released},
                )
            )
        return StudentRead.model_validate(student)

    def complete_case(self, session: Session, actor: Actor, student_id: uuid.UUID) -> StudentRead:
        with self._operation(session, actor, "student.complete") as pending:
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "student.update_profile", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            decision = self.validator.check_transition("student", student.status, "completed", actor.role)
            self._move_student(session, actor, student, decision)
            self.audit.record(
                session,
                actor,
                action="student.completed",
                entity_type="student",
                entity_id=student.id,
                previous_value={"status": decision.current},
                new_value={"status": student.status},
            )
            pending.append(events.build_envelope("cases.student.completed", actor.user_id, {"student_id": str(student.id)}))
        return StudentRead.model_validate(student)

    # -------------------------------------------------------------- documents

    def add_document(self, session: Session, actor: Actor, student_id: uuid.UUID, dto: DocumentCreate) -> DocumentRead:
        with self._operation(session, actor, "document.add"):
            self.validator.require_role("document.add", actor.role)
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "document.add", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            field_name = document_field(dto.doc_type)
            if not self.locks.is_editable(student, field_name, actor.role):
                raise Forbidden("documents of this type are locked", role=actor.role, fields=[field_name])
            is_override = self.locks.is_override(student, field_name, actor.role)
            hidden = dto.doc_type in self._settings().offer_document_types and not student.offers_unlocked

            document = self.documents.add(
                session,
                Document(
                    student_id=student.id,
                    doc_type=dto.doc_type,
                    name=dto.name,
                    file_ref=dto.file_ref,
                    status="pending",
                    is_hidden=hidden,
                    uploaded_by=actor.user_id,
                ),
            )
            self.audit.record(
                session,
                actor,
                action="document.added",
                entity_type="document",
                entity_id=document.id,
                previous_value=None,
                new_value={"student_id": str(student.id), "doc_type": document.doc_type, "file_ref": document.file_ref},
                is_override=is_override,
                override_reason="admin upload to locked document slot" if is_override else None,
            )
        return DocumentRead.model_validate(document)

    def review_document(self, session: Session, actor: Actor, document_id: uuid.UUID, dto: DocumentReview) -> DocumentRead:
        with self._operation(session, actor, "document.review"):
            self.validator.require_role("document.verify", actor.role)
            document = self.documents.get(session, document_id)
            if document.is_locked:
                raise InvalidState("document is locked", details={"document_id": str(document.id)})
            if dto.status != "verified" and _blank(dto.error_message):
                raise ValidationError("a message is required when a document is flagged")

            previous = {"status": document.status, "error_message": document.error_message}
            document.status = dto.status
            document.error_message = None if dto.status == "verified" else dto.error_message
            document.verified_by = actor.user_id if dto.status == "verified" else None
            document.verified_at = utcnow() if dto.status == "verified" else None
            session.add(document)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="document.reviewed",
                entity_type="document",
                entity_id=document.id,
                previous_value=previous,
                new_value={"status": document.status, "error_message": document.error_message},
            )
        return DocumentRead.model_validate(document)

    def list_documents(self, session: Session, actor: Actor, student_id: uuid.UUID) -> list[DocumentRead]:
        student = self.students.get(session, student_id)
        self.validator.require_owner(
            "student.read", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
        )
        rows = self.documents.list_for_student(session, student.id, include_hidden=actor.role != "student")
        return [DocumentRead.model_validate(row) for row in rows]

    # ----------------------------------------------------------- universities

    def create_university(self, session: Session, actor: Actor, dto: UniversityCreate) -> UniversityRead:
        with self._operation(session, actor, "university.create"):
            self.validator.require_role("university.manage", actor.role)
            university = self.universities.add(session, University(**dto.model_dump(mode="python")))
            self.audit.record(
                session,
                actor,
                action="university.created",
                entity_type="university",
                entity_id=university.id,
                previous_value=None,
                new_value=dto.model_dump(mode="json"),
            )
        return UniversityRead.model_validate(university)

    def list_universities(self, session: Session) -> list[UniversityRead]:
        return [UniversityRead.model_validate(row) for row in self.universities.list_active(session)]

    # ----------------------------------------------------------- applications

    def create_application(self, session: Session, actor: Actor, dto: ApplicationCreate) -> ApplicationRead:
        with self._operation(session, actor, "application.create"):
            self.validator.require_role("application.create", actor.role)
            student = self.students.get(session, dto.student_id)
            self.validator.require_owner(
                "application.create", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            if student.status not in APPLICATION_READY_STATUSES:
                raise PreconditionFailed(
                    f"student in status '{student.status}' cannot receive applications",
                    missing=["active_profile"],
                )
            university = self.universities.get(session, dto.university_id)
            if not university.is_active:
                raise ValidationError("university is not accepting applications")

            settings = self._settings()
            capacity = settings.batch_one_capacity if dto.batch == 1 else settings.batch_two_capacity
            if self.applications.count_open_in_batch(session, student.id, dto.batch) >= capacity:
                raise ValidationError(
                    f"batch {dto.batch} already holds {capacity} applications",
                    details={"batch": dto.batch, "capacity": capacity},
                )
            if self.applications.priority_taken(session, student.id, dto.batch, dto.priority):
                raise ValidationError(
                    "priority already used in this batch",
                    details={"batch": dto.batch, "priority": dto.priority},
                )

            application = self.applications.add(
                session,
                UniversityApplication(
                    student_id=student.id,
                    university_id=university.id,
                    program=dto.program,
                    status="draft",
                    batch=dto.batch,
                    priority=dto.priority,
                    returned_fields=[],
                    created_by=actor.user_id,
                ),
            )
            self.audit.record(
                session,
                actor,
                action="application.created",
                entity_type="application",
                entity_id=application.id,
                previous_value=None,
                new_value=dto.model_dump(mode="json"),
            )
        return ApplicationRead.model_validate(application)

    def list_applications(self, session: Session, actor: Actor, student_id: uuid.UUID) -> list[ApplicationRead]:
        student = self.students.get(session, student_id)
        self.validator.require_owner(
            "student.read", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
        )
        return [ApplicationRead.model_validate(row) for row in self.applications.list_for_student(session, student.id)]

    def submit_application_to_admin(self, session: Session, actor: Actor, application_id: uuid.UUID) -> ApplicationRead:
        with self._operation(session, actor, "application.submit_to_admin") as pending:
            application = self.applications.get(session, application_id)
            student = self.students.get(session, application.student_id)
            self.validator.require_owner(
                "application.create", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            decision = self.validator.check_transition("application", application.status, "pending_admin", actor.role)

            required = list(self._settings().required_document_types)
            verified = self.documents.verified_types(session, student.id)
            missing = sorted(doc_type for doc_type in required if doc_type not in verified)
            if missing:
                raise PreconditionFailed("required documents are not verified", missing=missing)

            previous = {"status": decision.current, "student_status": student.status, **lock_state(student)}
            self._apply_status(application, decision)
            application.submitted_to_admin_at = utcnow()
            application.row_version += 1
            session.add(application)

            if self.validator.can_transition("student", student.status, "submitted_to_admin", actor.role):
                student_decision = self.validator.check_transition("student", student.status, "submitted_to_admin", actor.role)
                self._move_student(session, actor, student, student_decision)
            if "lock_profile" in decision.side_effects and (not student.is_profile_locked or student.unlocked_fields):
                self.locks.lock(session, student, locked_by=actor.user_id)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="application.submitted_to_admin",
                entity_type="application",
                entity_id=application.id,
                previous_value=previous,
                new_value={"status": application.status, "student_status": student.status, **lock_state(student)},
            )
            pending.append(
                events.build_envelope(
                    "cases.application.submitted",
                    actor.user_id,
                    {"application_id": str(application.id), "student_id": str(student.id)},
                )
            )
        return ApplicationRead.model_validate(application)

    def approve_application(
        self,
        session: Session,
        actor: Actor,
        application_id: uuid.UUID,
        *,
        notes: str | None = None,
    ) -> ApplicationRead:
        with self._operation(session, actor, "application.approve") as pending:
            application = self.applications.get(session, application_id)
            decision = self.validator.check_transition("application", application.status, "approved", actor.role)
            self._apply_status(application, decision)
            application.approved_at = utcnow()
            if notes is not None:
                application.admin_notes = notes
            application.row_version += 1
            session.add(application)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="application.approved",
                entity_type="application",
                entity_id=application.id,
                previous_value={"status": decision.current},
                new_value={"status": application.status, "admin_notes": application.admin_notes},
            )
            pending.append(
                events.build_envelope("cases.application.approved", actor.user_id, {"application_id": str(application.id)})
            )
        return ApplicationRead.model_validate(application)

    def reject_application(
        self,
        session: Session,
        actor: Actor,
        application_id: uuid.UUID,
        *,
        reason: str | None,
    ) -> ApplicationRead:
        with self._operation(session, actor, "application.reject") as pending:
            application = self.applications.get(session, application_id)
            decision = self.validator.check_transition("application", application.status, "rejected", actor.role)
            if _blank(reason):
                raise ValidationError("a rejection reason is required")
            student = self.students.get(session, application.student_id)

            previous = {"status": decision.current, "student_status": student.status, **lock_state(student)}
            self._apply_status(application, decision)
            application.admin_notes = reason
            application.row_version += 1
            session.add(application)

            # the profile reopens only while nothing has gone to a university yet
            if self.validator.can_transition("student", student.status, "returned_by_admin", actor.role):
                student_decision = self.validator.check_transition("student", student.status, "returned_by_admin", actor.role)
                self._move_student(session, actor, student, student_decision)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="application.rejected",
                entity_type="application",
                entity_id=application.id,
                previous_value=previous,
                new_value={
                    "status": application.status,
                    "reason": reason,
                    "student_status": student.status,
                    **lock_state(student),
                },
            )
            pending.append(
                events.build_envelope(
                    "cases.application.rejected",
                    actor.user_id,
                    {"application_id": str(application.id), "student_id": str(student.id), "reason": reason},
                )
            )
        return ApplicationRead.model_validate(application)

    def submit_application_to_university(self, session: Session, actor: Actor, application_id: uuid.UUID) -> ApplicationRead:
        with self._operation(session, actor, "application.submit_to_university") as pending:
            application = self.applications.get(session, application_id)
            decision = self.validator.check_transition("application", application.status, "submitted_to_uni", actor.role)
            student = self.students.get(session, application.student_id)

            previous = {"status": decision.current, "student_status": student.status, **lock_state(student)}
            self._apply_status(application, decision)
            application.submitted_to_uni_at = utcnow()
            application.row_version += 1
            session.add(application)

            if self.validator.can_transition("student", student.status, "submitted_to_uni", actor.role):
                student_decision = self.validator.check_transition("student", student.status, "submitted_to_uni", actor.role)
                self._move_student(session, actor, student, student_decision)
            if "lock_profile" in decision.side_effects:
                self.locks.lock(
                    session,
                    student,
                    locked_by=actor.user_id,
                    include_documents="lock_documents" in decision.side_effects,
                )
            session.flush()

            self.audit.record(
                session,
                actor,
                action="application.submitted_to_university",
                entity_type="application",
                entity_id=application.id,
                previous_value=previous,
                new_value={"status": application.status, "student_status": student.status, **lock_state(student)},
            )
            pending.append(
                events.build_envelope(
                    "cases.application.submitted_to_university",
                    actor.user_id,
                    {"application_id": str(application.id), "student_id": str(student.id)},
                )
            )
        return ApplicationRead.model_validate(application)

    def return_application_from_school(
        self,
        session: Session,
        actor: Actor,
        application_id: uuid.UUID,
        *,
        reason: str | None,
        fields: list[str],
    ) -> ApplicationRead:
        with self._operation(session, actor, "application.return_from_school") as pending:
            application = self.applications.get(session, application_id)
            decision = self.validator.check_transition("application", application.status, "returned_by_school", actor.role)
            if _blank(reason):
                raise ValidationError("a return reason is required")
            cleaned = sorted({item.strip() for item in fields if item and item.strip()})
            if not cleaned:
                raise ValidationError("at least one returned field is required")
            self.locks.require_known_fields(cleaned)
            student = self.students.get(session, application.student_id)

            previous = {"status": decision.current, "student_status": student.status, **lock_state(student)}
            self._apply_status(application, decision)
            application.return_reason = reason
            application.returned_fields = cleaned
            application.returned_at = utcnow()
            application.row_version += 1
            session.add(application)

            if self.validator.can_transition("student", student.status, "returned_by_school", actor.role):
                student_decision = self.validator.check_transition("student", student.status, "returned_by_school", actor.role)
                self._move_student(session, actor, student, student_decision)
            if "unlock_returned_fields" in decision.side_effects:
                self.locks.unlock_fields(session, student, cleaned)
            session.flush()

            self.audit.record(
                session,
                actor,
                action="application.returned_by_school",
                entity_type="application",
                entity_id=application.id,
                previous_value=previous,
                new_value={
                    "status": application.status,
                    "reason": reason,
                    "returned_fields": cleaned,
                    "student_status": student.status,
                    **lock_state(student),
                },
            )
            pending.append(
                events.build_envelope(
                    "cases.application.returned",
                    actor.user_id,
                    {"application_id": str(application.id), "student_id": str(student.id), "fields": cleaned},
                )
            )
        return ApplicationRead.model_validate(application)

    def record_university_decision(
        self,
        session: Session,
        actor: Actor,
        application_id: uuid.UUID,
        *,
        decision: str,
        notes: str | None = None,
    ) -> ApplicationRead:
        with self._operation(session, actor, "application.record_decision") as pending:
            if decision not in {"accepted", "declined"}:
                raise ValidationError("decision must be accepted or declined", details={"decision": decision})
            application = self.applications.get(session, application_id)
            transition = self.validator.check_transition("application", application.status, decision, actor.role)
            student = self.students.get(session, application.student_id)

            previous = {"status": transition.current, "student_status": student.status}
            self._apply_status(application, transition)
            application.responded_at = utcnow()
            if notes is not None:
                application.admin_notes = notes
            application.row_version += 1
            session.add(application)

            if decision == "accepted" and self.validator.can_transition("student", student.status, "offer_received", actor.role):
                student_decision = self.validator.check_transition("student", student.status, "offer_received", actor.role)
                self._move_student(session, actor, student, student_decision)
            session.flush()

            self.audit.record(
                session,
                actor,
                action=f"application.{decision}",
                entity_type="application",
                entity_id=application.id,
                previous_value=previous,
                new_value={"status": application.status, "student_status": student.status},
            )
            pending.append(
                events.build_envelope(
                    f"cases.application.{decision}",
                    actor.user_id,
                    {"application_id": str(application.id), "student_id": str(student.id)},
                )
            )
        return ApplicationRead.model_validate(application)

    def list_idle_applications(self, session: Session, actor: Actor, *, days: int | None = None) -> list[ApplicationRead]:
        self.validator.require_role("report.idle", actor.role)
        idle_days = days if days is not None else self._settings().application_idle_days
        cutoff = utcnow() - timedelta(days=idle_days)
        return [ApplicationRead.model_validate(row) for row in self.applications.list_idle(session, before=cutoff)]

    # -------------------------------------------------------------- contracts

    def create_contract(self, session: Session, actor: Actor, dto: ContractCreate) -> ContractRead:
        with self._operation(session, actor, "contract.create"):
            self.validator.require_role("contract.create", actor.role)
            student = self.students.get(session, dto.student_id)
            self.validator.require_owner(
                "contract.create", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            if is_terminal("student", student.status):
                raise InvalidState(f"student case is {student.status}")
            if dto.deposit_amount + dto.non_refundable_amount > dto.amount:
                raise ValidationError("deposit and non-refundable portions exceed the contract amount")

            contract = self.contracts.add(
                session,
                Contract(
                    student_id=student.id,
                    staff_id=dto.staff_id or student.assigned_staff_id,
                    status="draft",
                    amount=dto.amount,
                    deposit_amount=dto.deposit_amount,
                    non_refundable_amount=dto.non_refundable_amount,
                    currency=dto.currency.upper(),
                    pricing_version=self._settings().current_pricing_version,
                ),
            )
            self.audit.record(
                session,
                actor,
                action="contract.created",
                entity_type="contract",
                entity_id=contract.id,
                previous_value=None,
                new_value=ContractRead.model_validate(contract).model_dump(mode="json"),
            )
        return ContractRead.model_validate(contract)

    def send_contract(self, session: Session, actor: Actor, contract_id: uuid.UUID) -> ContractRead:
        with self._operation(session, actor, "contract.send"):
            contract = self.contracts.get(session, contract_id)
            decision = self.validator.check_transition("contract", contract.status, "pending", actor.role)
            self._apply_status(contract, decision)
            contract.sent_at = utcnow()
            session.add(contract)
            session.flush()
            self._audit_contract(session, actor, contract, decision, action="contract.sent")
        return ContractRead.model_validate(contract)

    def request_signature(self, session: Session, actor: Actor, contract_id: uuid.UUID) -> ContractRead:
        with self._operation(session, actor, "contract.request_signature"):
            contract = self.contracts.get(session, contract_id)
            decision = self.validator.check_transition("contract", contract.status, "pending_signature", actor.role)
            self._apply_status(contract, decision)
            contract.expires_at = utcnow() + timedelta(days=self._settings().contract_expiry_days)
            session.add(contract)
            session.flush()
            self._audit_contract(
                session,
                actor,
                contract,
                decision,
                action="contract.signature_requested",
                extra={"expires_at": contract.expires_at},
            )
        return ContractRead.model_validate(contract)

    def sign_contract(
        self,
        session: Session,
        actor: Actor,
        contract_id: uuid.UUID,
        *,
        signature_ref: str | None,
    ) -> ContractRead:
        with self._operation(session, actor, "contract.sign") as pending:
            contract = self.contracts.get(session, contract_id)
            decision = self.validator.check_transition("contract", contract.status, "signed", actor.role)
            if _blank(signature_ref):
                raise ValidationError("a signature reference is required")
            if contract.expires_at is not None and as_utc(contract.expires_at) < utcnow():
                raise PreconditionFailed("signature window has closed", missing=["valid_signature_window"])
            student = self.students.get(session, contract.student_id)

            self._apply_status(contract, decision)
            contract.signature_ref = signature_ref
            contract.signed_at = utcnow()
            session.add(contract)
            session.flush()

            commission = None
            if "accrue_commission" in decision.side_effects:
                commission = self.ledger.on_contract_signed(session, contract)
            student_previous = student.status
            if self.validator.can_transition("student", student.status, "contract_signed", actor.role):
                student_decision = self.validator.check_transition("student", student.status, "contract_signed", actor.role)
                self._move_student(session, actor, student, student_decision)

            self._audit_contract(
                session,
                actor,
                contract,
                decision,
                action="contract.signed",
                extra={
                    "commission_id": str(commission.id) if commission else None,
                    "commission_amount": str(commission.amount) if commission else None,
                    "student_status": student.status,
                    "previous_student_status": student_previous,
                },
            )
            pending.append(
                events.build_envelope(
                    "cases.contract.signed",
                    actor.user_id,
                    {"contract_id": str(contract.id), "student_id": str(student.id), "staff_id": contract.staff_id},
                )
            )
        return ContractRead.model_validate(contract)

    def expire_contract(self, session: Session, actor: Actor, contract_id: uuid.UUID) -> ContractRead:
        with self._operation(session, actor, "contract.expire"):
            contract = self.contracts.get(session, contract_id)
            decision = self.validator.check_transition("contract", contract.status, "expired", actor.role)
            if contract.expires_at is None or as_utc(contract.expires_at) > utcnow():
                raise PreconditionFailed("signature window is still open", missing=["elapsed_signature_window"])
            self._apply_status(contract, decision)
            session.add(contract)
            session.flush()
            self._audit_contract(session, actor, contract, decision, action="contract.expired")
        return ContractRead.model_validate(contract)

    def expire_overdue_contracts(self, session: Session, actor: Actor) -> list[ContractRead]:
        expired: list[ContractRead] = []
        for contract in self.contracts.list_expiring(session, now=utcnow()):
            expired.append(self.expire_contract(session, actor, contract.id))
        return expired

    def cancel_contract(
        self,
        session: Session,
        actor: Actor,
        contract_id: uuid.UUID,
        *,
        reason: str | None,
    ) -> ContractRead:
        with self._operation(session, actor, "contract.cancel") as pending:
            contract = self.contracts.get(session, contract_id)
            decision = self.validator.check_transition("contract", contract.status, "cancelled", actor.role)
            if _blank(reason):
                raise ValidationError("a cancellation reason is required")
            self._apply_status(contract, decision)
            contract.cancelled_at = utcnow()
            contract.cancel_reason = reason
            session.add(contract)
            session.flush()

            clawbacks = []
            if "clawback_commission" in decision.side_effects:
                clawbacks = self.ledger.on_contract_cancelled(session, contract, reason=reason)
            self._audit_contract(
                session,
                actor,
                contract,
                decision,
                action="contract.cancelled",
                extra={"reason": reason, "clawback_ids": [str(row.id) for row in clawbacks]},
                override_reason=reason,
            )
            pending.append(
                events.build_envelope(
                    "cases.contract.cancelled",
                    actor.user_id,
                    {"contract_id": str(contract.id), "student_id": str(contract.student_id)},
                )
            )
        return ContractRead.model_validate(contract)

    def list_contracts(self, session: Session, actor: Actor, student_id: uuid.UUID) -> list[ContractRead]:
        student = self.students.get(session, student_id)
        self.validator.require_owner(
            "student.read", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
        )
        return [ContractRead.model_validate(row) for row in self.contracts.list_for_student(session, student.id)]

    # ---------------------------------------------------------------- ledger

    def record_payment(self, session: Session, actor: Actor, student_id: uuid.UUID, dto: PaymentCreate) -> InvoiceRead:
        with self._operation(session, actor, "payment.record") as pending:
            self.validator.require_role("payment.record", actor.role)
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "payment.record", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            if student.status == "cancelled":
                raise InvalidState("student case is cancelled")
            if dto.amount is None:
                raise ValidationError("payment amount is required")
            invoice = self.ledger.on_payment(
                session,
                actor,
                student=student,
                invoice_type=dto.type,
                amount=dto.amount,
                currency=dto.currency,
                receipt_ref=dto.receipt_ref or "",
                description=dto.description,
            )
            self.audit.record(
                session,
                actor,
                action="invoice.payment_recorded",
                entity_type="invoice",
                entity_id=invoice.id,
                previous_value=None,
                new_value=InvoiceRead.model_validate(invoice).model_dump(mode="json"),
            )
            pending.append(
                events.build_envelope(
                    "cases.payment.recorded",
                    actor.user_id,
                    {"invoice_id": str(invoice.id), "student_id": str(student.id), "type": invoice.type},
                )
            )
        return InvoiceRead.model_validate(invoice)

    def issue_invoice(self, session: Session, actor: Actor, student_id: uuid.UUID, dto: InvoiceIssue) -> InvoiceRead:
        with self._operation(session, actor, "invoice.issue"):
            self.validator.require_role("invoice.issue", actor.role)
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "invoice.issue", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            invoice = self.ledger.issue_invoice(
                session,
                actor,
                student=student,
                invoice_type=dto.type,
                amount=dto.amount,
                currency=dto.currency,
                due_date=dto.due_date,
                description=dto.description,
            )
            self.audit.record(
                session,
                actor,
                action="invoice.issued",
                entity_type="invoice",
                entity_id=invoice.id,
                previous_value=None,
                new_value=InvoiceRead.model_validate(invoice).model_dump(mode="json"),
            )
        return InvoiceRead.model_validate(invoice)

    def settle_invoice(self, session: Session, actor: Actor, invoice_id: uuid.UUID, *, receipt_ref: str) -> InvoiceRead:
        with self._operation(session, actor, "invoice.settle"):
            self.validator.require_role("invoice.settle", actor.role)
            invoice = self.invoices.get(session, invoice_id)
            previous = {"status": invoice.status, "receipt_ref": invoice.receipt_ref}
            self.ledger.settle_invoice(session, invoice, receipt_ref=receipt_ref)
            self.audit.record(
                session,
                actor,
                action="invoice.settled",
                entity_type="invoice",
                entity_id=invoice.id,
                previous_value=previous,
                new_value={"status": invoice.status, "receipt_ref": invoice.receipt_ref, "paid_at": invoice.paid_at},
            )
        return InvoiceRead.model_validate(invoice)

    def mark_overdue_invoices(self, session: Session, actor: Actor, *, today: date | None = None) -> list[InvoiceRead]:
        as_of = today or utcnow().date()
        with self._operation(session, actor, "invoice.mark_overdue"):
            self.validator.require_role("invoice.mark_overdue", actor.role)
            rows = self.ledger.mark_overdue(session, today=as_of)
            self.audit.record(
                session,
                actor,
                action="invoice.marked_overdue",
                entity_type="invoice_batch",
                entity_id=as_of.isoformat(),
                previous_value={"status": "pending"},
                new_value={"status": "overdue", "invoice_ids": [str(row.id) for row in rows]},
            )
        return [InvoiceRead.model_validate(row) for row in rows]

    def record_refund(
        self,
        session: Session,
        actor: Actor,
        invoice_id: uuid.UUID,
        *,
        amount: Decimal | None,
        reason: str | None,
    ) -> InvoiceRead:
        with self._operation(session, actor, "refund.record") as pending:
            self.validator.require_role("refund.record", actor.role)
            original = self.invoices.get(session, invoice_id)
            if amount is None:
                raise ValidationError("refund amount is required")
            if _blank(reason):
                raise ValidationError("a refund reason is required")

            refunded_before = self.ledger.refunded_total(session, original.id)
            reversal = self.ledger.on_refund_approved(session, actor, invoice=original, amount=amount, reason=reason)
            self.audit.record(
                session,
                actor,
                action="invoice.refunded",
                entity_type="invoice",
                entity_id=original.id,
                previous_value={"refunded_total": refunded_before},
                new_value={
                    "refund_invoice_id": str(reversal.id),
                    "amount": reversal.amount,
                    "currency": reversal.currency,
                    "reason": reason,
                    "refunded_total": refunded_before + reversal.amount,
                },
            )
            pending.append(
                events.build_envelope(
                    "cases.refund.recorded",
                    actor.user_id,
                    {"invoice_id": str(original.id), "refund_invoice_id": str(reversal.id), "student_id": str(original.student_id)},
                )
            )
        return InvoiceRead.model_validate(reversal)

    def set_commission_rate(
        self,
        session: Session,
        actor: Actor,
        staff_id: str,
        dto: StaffCommissionRateSet,
    ) -> StaffCommissionRateRead:
        with self._operation(session, actor, "commission.set_rate"):
            self.validator.require_role("commission.set_rate", actor.role)
            row, previous = self.ledger.set_staff_rate(session, actor, staff_id=staff_id, amount=dto.amount, currency=dto.currency)
            self.audit.record(
                session,
                actor,
                action="commission.rate_set",
                entity_type="staff_commission_rate",
                entity_id=staff_id,
                previous_value=previous,
                new_value={"amount": row.amount, "currency": row.currency},
            )
        return StaffCommissionRateRead.model_validate(row)

    def list_invoices(self, session: Session, actor: Actor, student_id: uuid.UUID) -> list[InvoiceRead]:
        self.validator.require_role("ledger.read", actor.role)
        student = self.students.get(session, student_id)
        return [InvoiceRead.model_validate(row) for row in self.ledger.list_invoices(session, student.id)]

    def list_commissions(self, session: Session, actor: Actor, *, staff_id: str | None = None) -> list[CommissionRead]:
        self.validator.require_role("ledger.read", actor.role)
        if actor.role == "staff":
            staff_id = actor.user_id
        return [CommissionRead.model_validate(row) for row in self.ledger.list_commissions(session, staff_id=staff_id)]

    def net_revenue(self, session: Session, actor: Actor, *, student_id: uuid.UUID | None = None) -> NetRevenueRead:
        self.validator.require_role("ledger.read", actor.role)
        return self.ledger.net_revenue(session, student_id)

    # ---------------------------------------------------------------- unlocks

    def request_unlock(
        self,
        session: Session,
        actor: Actor,
        student_id: uuid.UUID,
        *,
        fields: list[str],
        reason: str | None,
    ) -> UnlockRequestRead:
        with self._operation(session, actor, "unlock.request") as pending:
            student = self.students.get(session, student_id)
            self.validator.require_owner(
                "unlock.request", student.assigned_staff_id, actor.user_id, actor.role, subject_id=str(student.id)
            )
            request = self.locks.request_unlock(session, actor, student, fields=fields, reason=reason)
            pending.append(
                events.build_envelope(
                    "cases.unlock.requested",
                    actor.user_id,
                    {"unlock_request_id": str(request.id), "student_id": str(student.id), "fields": request.requested_fields},
                )
            )
        return UnlockRequestRead.model_validate(request)

    def resolve_unlock(
        self,
        session: Session,
        actor: Actor,
        request_id: uuid.UUID,
        *,
        decision: str,
        admin_notes: str | None = None,
    ) -> UnlockRequestRead:
        with self._operation(session, actor, "unlock.resolve") as pending:
            request = self.unlock_requests.get(session, request_id)
            self.locks.resolve_unlock(session, actor, request, decision=decision, admin_notes=admin_notes)
            pending.append(
                events.build_envelope(
                    "cases.unlock.resolved",
                    actor.user_id,
                    {"unlock_request_id": str(request.id), "student_id": str(request.student_id), "decision": decision},
                )
            )
        return UnlockRequestRead.model_validate(request)

    def list_unlock_requests(
        self,
        session: Session,
        actor: Actor,
        *,
        status: str | None = None,
        student_id: uuid.UUID | None = None,
    ) -> list[UnlockRequestRead]:
        self.validator.require_role("unlock.request" if actor.role == "staff" else "unlock.resolve", actor.role)
        rows = self.unlock_requests.search(session, status=status, student_id=student_id)
        return [UnlockRequestRead.model_validate(row) for row in rows]

    # ------------------------------------------------------------------ audit

    def query_audit(self, session: Session, actor: Actor, filters: AuditQuery) -> list[AuditEntryRead]:
        self.validator.require_role("audit.read", actor.role)
        return self.audit.query(session, filters)

    # --------------------------------------------------------------- helpers

    @contextmanager
    def _operation(self, session: Session, actor: Actor, operation: str) -> Iterator[list[dict[str, Any]]]:
        pending: list[dict[str, Any]] = []
        started = time.perf_counter()
        token = set_actor_id(actor.user_id)
        try:
            with tracer.start_as_current_span(f"cases.{operation}") as span:
                span.set_attribute("case.operation", operation)
                span.set_attribute("case.actor_role", actor.role)
                try:
                    yield pending
                    session.commit()
                except CaseLifecycleError as exc:
                    session.rollback()
                    observe_operation_failure(operation, exc.code)
                    span.set_status(Status(StatusCode.ERROR, exc.message))
                    logger.info("case.operation_rejected", extra={"operation": operation, "error": exc.message})
                    raise
                except IntegrityError as exc:
                    session.rollback()
                    observe_operation_failure(operation, "integrity_error")
                    span.set_status(Status(StatusCode.ERROR, "integrity_error"))
                    logger.warning("case.operation_conflict", extra={"operation": operation, "error": str(exc.orig)})
                    raise InvalidState("operation conflicts with existing records", details={"operation": operation}) from exc
                except Exception:
                    session.rollback()
                    observe_operation_failure(operation, "unexpected")
                    span.set_status(Status(StatusCode.ERROR, "unexpected"))
                    raise
            observe_operation(operation, time.perf_counter() - started)
            logger.info("case.operation_committed", extra={"operation": operation, "actor_role": actor.role})
        finally:
            reset_actor_id(token)

        for envelope in pending:
            events.publish(envelope)

    def _apply_status(self, row: Any, decision: TransitionDecision) -> None:
        row.status = decision.requested
        observe_transition(decision.entity_kind, decision.current, decision.requested)
        logger.info(
            "case.transition",
            extra={
                "entity_type": decision.entity_kind,
                "entity_id": str(row.id),
                "from_status": decision.current,
                "to_status": decision.requested,
                "is_override": decision.is_override,
            },
        )

    def _move_student(self, session: Session, actor: Actor, student: Student, decision: TransitionDecision) -> list[str]:
        """Apply a student status edge and the lock side effects attached to it.

        Returns the ids of documents revealed by an offer release.
        """
        if decision.requested == "submitted_to_admin":
            self._require_submittable_profile(student)
        self._apply_status(student, decision)
        student.row_version += 1
        session.add(student)
        session.flush()

        revealed: list[str] = []
        effects = decision.side_effects
        if "release_profile_lock" in effects:
            self.locks.release(session, student)
        if "lock_profile" in effects:
            self.locks.lock(session, student, locked_by=actor.user_id, include_documents="lock_documents" in effects)
        if "release_offer_documents" in effects:
            offer_types = set(self._settings().offer_document_types)
            for document in self.documents.list_for_student(session, student.id):
                if document.doc_type in offer_types and document.is_hidden:
                    document.is_hidden = False
                    session.add(document)
                    revealed.append(str(document.id))
            student.offers_unlocked = True
            session.add(student)
            session.flush()
        return revealed

    def _require_submittable_profile(self, student: Student) -> None:
        missing: list[str] = []
        if not student.family_members:
            missing.append("family_members")
        if not student.education_history:
            missing.append("education_history")
        if student.passport_expiry is None:
            missing.append("passport_expiry")
        if missing:
            raise PreconditionFailed("profile is incomplete", missing=missing)

        months = self._settings().passport_expiry_months
        if student.passport_expiry <= add_months(utcnow().date(), months):
            raise PreconditionFailed(
                f"passport must be valid for more than {months} months",
                missing=["passport_validity"],
            )

    def _audit_contract(
        self,
        session: Session,
        actor: Actor,
        contract: Contract,
        decision: TransitionDecision,
        *,
        action: str,
        extra: dict[str, Any] | None = None,
        override_reason: str | None = None,
    ) -> None:
        self.audit.record(
            session,
            actor,
            action=action,
            entity_type="contract",
            entity_id=contract.id,
            previous_value={"status": decision.current},
            new_value={"status": contract.status, **(extra or {})},
            is_override=decision.is_override,
            override_reason=override_reason if decision.is_override else None,
        )

    def _settings(self) -> Settings:
        return self.settings or get_settings()


case_lifecycle_service = CaseLifecycleService()
