from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, ClassVar

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from eduflare.cases.errors import NotFound
from eduflare.cases.models import Contract, Document, Lead, Student, UniversityApplication, University, UnlockRequest
from eduflare.platform.ledger.models import Invoice


class CaseRepository:
    model: ClassVar[type[Any]]
    entity_type: ClassVar[str]

    def find(self, session: Session, entity_id: uuid.UUID) -> Any | None:
        return session.get(self.model, entity_id)

    def get(self, session: Session, entity_id: uuid.UUID) -> Any:
        row = self.find(session, entity_id)
        if row is None:
            raise NotFound(self.entity_type, entity_id)
        return row

    def add(self, session: Session, row: Any) -> Any:
        session.add(row)
        session.flush()
        return row


class LeadRepository(CaseRepository):
    model = Lead
    entity_type = "lead"

    def get(self, session: Session, entity_id: uuid.UUID) -> Lead:
        return super().get(session, entity_id)

    def search(self, session: Session, *, status: str | None = None, assigned_staff_id: str | None = None) -> list[Lead]:
        stmt = select(Lead)
        if status is not None:
            stmt = stmt.where(Lead.status == status)
        if assigned_staff_id is not None:
            stmt = stmt.where(Lead.assigned_staff_id == assigned_staff_id)
        return list(session.scalars(stmt.order_by(Lead.created_at.desc())).all())

    def list_idle(self, session: Session, *, before: datetime, assigned_staff_id: str | None = None) -> list[Lead]:
        last_touch = func.coalesce(Lead.last_contact_at, Lead.created_at)
        stmt = select(Lead).where(Lead.status.in_(("new", "hot", "cold")), last_touch < before)
        if assigned_staff_id is not None:
            stmt = stmt.where(Lead.assigned_staff_id == assigned_staff_id)
        return list(session.scalars(stmt.order_by(last_touch.asc())).all())


class StudentRepository(CaseRepository):
    model = Student
    entity_type = "student"

    def get(self, session: Session, entity_id: uuid.UUID) -> Student:
        return super().get(session, entity_id)

    def get_by_lead(self, session: Session, lead_id: uuid.UUID) -> Student | None:
        return session.scalar(select(Student).where(Student.lead_id == lead_id))

    def search(self, session: Session, *, status: str | None = None, assigned_staff_id: str | None = None) -> list[Student]:
        stmt = select(Student)
        if status is not None:
            stmt = stmt.where(Student.status == status)
        if assigned_staff_id is not None:
            stmt = stmt.where(Student.assigned_staff_id == assigned_staff_id)
        return list(session.scalars(stmt.order_by(Student.created_at.desc())).all())


class DocumentRepository(CaseRepository):
    model = Document
    entity_type = "document"

    def get(self, session: Session, entity_id: uuid.UUID) -> Document:
        return super().get(session, entity_id)

    def list_for_student(self, session: Session, student_id: uuid.UUID, *, include_hidden: bool = True) -> list[Document]:
        stmt = select(Document).where(Document.student_id == student_id)
        if not include_hidden:
            stmt = stmt.where(Document.is_hidden.is_(False))
        return list(session.scalars(stmt.order_by(Document.created_at.asc())).all())

    def verified_types(self, session: Session, student_id: uuid.UUID) -> set[str]:
        rows = session.scalars(
            select(Document.doc_type).where(Document.student_id == student_id, Document.status == "verified")
        ).all()
        return set(rows)


class UniversityRepository(CaseRepository):
    model = University
    entity_type = "university"

    def get(self, session: Session, entity_id: uuid.UUID) -> University:
        return super().get(session, entity_id)

    def list_active(self, session: Session) -> list[University]:
        return list(session.scalars(select(University).where(University.is_active.is_(True)).order_by(University.name.asc())).all())


class ApplicationRepository(CaseRepository):
    model = UniversityApplication
    entity_type = "application"

    # applications in these states no longer occupy a batch slot
    closed_statuses = ("rejected", "declined")

    def get(self, session: Session, entity_id: uuid.UUID) -> UniversityApplication:
        return super().get(session, entity_id)

    def list_for_student(self, session: Session, student_id: uuid.UUID) -> list[UniversityApplication]:
        return list(
            session.scalars(
                select(UniversityApplication)
                .where(UniversityApplication.student_id == student_id)
                .order_by(UniversityApplication.batch.asc(), UniversityApplication.priority.asc())
            ).all()
        )

    def count_open_in_batch(self, session: Session, student_id: uuid.UUID, batch: int) -> int:
        return (
            session.scalar(
                select(func.count())
                .select_from(UniversityApplication)
                .where(
                    UniversityApplication.student_id == student_id,
                    UniversityApplication.batch == batch,
                    UniversityApplication.status.not_in(self.closed_statuses),
                )
            )
            or 0
        )

    def priority_taken(self, session: Session, student_id: uuid.UUID, batch: int, priority: int) -> bool:
        existing = session.scalar(
            select(UniversityApplication.id).where(
                UniversityApplication.student_id == student_id,
                UniversityApplication.batch == batch,
                UniversityApplication.priority == priority,
                UniversityApplication.status.not_in(self.closed_statuses),
            )
        )
        return existing is not None

    def list_idle(self, session: Session, *, before: datetime) -> list[UniversityApplication]:
        stmt = select(UniversityApplication).where(
            or_(
                UniversityApplication.status == "pending_admin",
                UniversityApplication.status == "submitted_to_uni",
            ),
            UniversityApplication.updated_at < before,
        )
        return list(session.scalars(stmt.order_by(UniversityApplication.updated_at.asc())).all())


class ContractRepository(CaseRepository):
    model = Contract
    entity_type = "contract"

    def get(self, session: Session, entity_id: uuid.UUID) -> Contract:
        return super().get(session, entity_id)

    def list_for_student(self, session: Session, student_id: uuid.UUID) -> list[Contract]:
        return list(
            session.scalars(select(Contract).where(Contract.student_id == student_id).order_by(Contract.created_at.asc())).all()
        )

    def list_expiring(self, session: Session, *, now: datetime) -> list[Contract]:
        return list(
            session.scalars(
                select(Contract).where(
                    Contract.status == "pending_signature",
                    Contract.expires_at.is_not(None),
                    Contract.expires_at < now,
                )
            ).all()
        )


class UnlockRequestRepository(CaseRepository):
    model = UnlockRequest
    entity_type = "unlock_request"

    def get(self, session: Session, entity_id: uuid.UUID) -> UnlockRequest:
        return super().get(session, entity_id)

    def search(self, session: Session, *, status: str | None = None, student_id: uuid.UUID | None = None) -> list[UnlockRequest]:
        stmt = select(UnlockRequest)
        if status is not None:
            stmt = stmt.where(UnlockRequest.status == status)
        if student_id is not None:
            stmt = stmt.where(UnlockRequest.student_id == student_id)
        return list(session.scalars(stmt.order_by(UnlockRequest.created_at.asc())).all())


class InvoiceRepository(CaseRepository):
    model = Invoice
    entity_type = "invoice"

    def get(self, session: Session, entity_id: uuid.UUID) -> Invoice:
        return super().get(session, entity_id)

    def has_paid(self, session: Session, student_id: uuid.UUID, invoice_type: str) -> bool:
        existing = session.scalar(
            select(Invoice.id).where(
                Invoice.student_id == student_id,
                Invoice.type == invoice_type,
                Invoice.status == "paid",
            )
        )
        return existing is not None
