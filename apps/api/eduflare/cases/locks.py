from __future__ import annotations

import logging
import threading
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from eduflare.cases.errors import Forbidden, InvalidState, ValidationError
from eduflare.cases.models import Document, Student, UnlockRequest
from eduflare.cases.schemas import DOCUMENT_TYPES
from eduflare.cases.transitions import StatusTransitionValidator, status_transition_validator
from eduflare.metrics import observe_lock_event
from eduflare.platform.audit.service import AuditLog, audit_log
from eduflare.platform.security.context import Actor


logger = logging.getLogger("eduflare.cases.locks")

PROFILE_FIELDS: tuple[str, ...] = (
    "full_name",
    "email",
    "phone",
    "date_of_birth",
    "gender",
    "nationality",
    "passport_number",
    "passport_expiry",
    "current_address",
    "emergency_contact_name",
    "emergency_contact_phone",
    "emergency_contact_relation",
    "financial_supporter_name",
    "financial_supporter_relation",
    "financial_supporter_occupation",
    "scholarship_type",
    "family_members",
    "education_history",
    "employment_history",
)

LOCKABLE_FIELDS: frozenset[str] = frozenset(PROFILE_FIELDS) | frozenset(f"documents.{doc_type}" for doc_type in DOCUMENT_TYPES)
NON_NULLABLE_PROFILE_FIELDS: frozenset[str] = frozenset({"full_name", "family_members", "education_history", "employment_history"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def document_field(doc_type: str) -> str:
    return f"documents.{doc_type}"


def lock_state(student: Student) -> dict[str, Any]:
    return {
        "is_profile_locked": student.is_profile_locked,
        "locked_at": student.locked_at.isoformat() if student.locked_at else None,
        "unlocked_fields": sorted(student.unlocked_fields or []),
    }


class EntityMutexRegistry:
    """Hands out one re-entrant mutex per entity id.

    Entries live only while some caller still holds the mutex.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._mutexes: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()

    def for_entity(self, entity_id: uuid.UUID | str) -> threading.RLock:
        key = str(entity_id)
        with self._guard:
            mutex = self._mutexes.get(key)
            if mutex is None:
                mutex = threading.RLock()
                self._mutexes[key] = mutex
            return mutex

    def clear(self) -> None:
        with self._guard:
            self._mutexes.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._mutexes)


student_mutexes = EntityMutexRegistry()


@dataclass(slots=True)
class LockManager:
    """Owns the field-lock state of student profiles and documents.

    Lock state and profile fields are only written through ``_write_student``,
    which holds the per-student mutex and refuses to overwrite a row whose
    ``row_version`` moved since it was loaded.
    """

    validator: StatusTransitionValidator = field(default_factory=lambda: status_transition_validator)
    audit: AuditLog = field(default_factory=lambda: audit_log)
    mutexes: EntityMutexRegistry = field(default_factory=lambda: student_mutexes)

    def is_editable(self, student: Student, field_name: str, role: str) -> bool:
        if not student.is_profile_locked:
            return True
        if field_name in (student.unlocked_fields or []):
            return True
        return role == "admin"

    def is_override(self, student: Student, field_name: str, role: str) -> bool:
        return (
            role == "admin"
            and student.is_profile_locked
            and field_name not in (student.unlocked_fields or [])
        )

    def lock(self, session: Session, student: Student, *, locked_by: str, include_documents: bool = False) -> None:
        """Lock the profile. The enclosing lifecycle operation writes the audit entry."""
        now = utcnow()
        self._write_student(
            session,
            student,
            is_profile_locked=True,
            locked_at=now,
            locked_by=locked_by,
            unlocked_fields=[],
        )
        if include_documents:
            for document in self._documents(session, student.id):
                if not document.is_locked:
                    document.is_locked = True
                    document.locked_at = now
                    session.add(document)
            session.flush()
        observe_lock_event("locked")

    def release(self, session: Session, student: Student) -> None:
        self._write_student(
            session,
            student,
            is_profile_locked=False,
            locked_at=None,
            locked_by=None,
            unlocked_fields=[],
        )
        for document in self._documents(session, student.id):
            if document.is_locked:
                document.is_locked = False
                document.locked_at = None
                session.add(document)
        session.flush()
        observe_lock_event("released")

    def unlock_fields(self, session: Session, student: Student, fields: list[str]) -> None:
        self.require_known_fields(fields)
        merged = sorted(set(student.unlocked_fields or []) | set(fields))
        self._write_student(session, student, unlocked_fields=merged)
        observe_lock_event("fields_unlocked")

    def request_unlock(
        self,
        session: Session,
        actor: Actor,
        student: Student,
        *,
        fields: list[str],
        reason: str | None,
    ) -> UnlockRequest:
        self.validator.require_role("unlock.request", actor.role)
        cleaned = sorted({item.strip() for item in fields if item and item.strip()})
        if not cleaned:
            raise ValidationError("at least one field must be requested")
        if not reason or not reason.strip():
            raise ValidationError("an unlock reason is required")
        if not student.is_profile_locked:
            raise ValidationError("profile is not locked", details={"student_id": str(student.id)})
        self.require_known_fields(cleaned)

        request = UnlockRequest(
            student_id=student.id,
            requested_fields=cleaned,
            reason=reason.strip(),
            requested_by=actor.user_id,
            requested_by_role=actor.role,
            status="pending",
        )
        session.add(request)
        session.flush()

        self.audit.record(
            session,
            actor,
            action="unlock.requested",
            entity_type="unlock_request",
            entity_id=request.id,
            previous_value=None,
            new_value={"student_id": str(student.id), "fields": cleaned, "reason": request.reason},
        )
        observe_lock_event("unlock_requested")
        logger.info(
            "case.unlock_requested",
            extra={"entity_type": "student", "entity_id": str(student.id), "fields": cleaned},
        )
        return request

    def resolve_unlock(
        self,
        session: Session,
        actor: Actor,
        request: UnlockRequest,
        *,
        decision: str,
        admin_notes: str | None = None,
    ) -> UnlockRequest:
        self.validator.require_role("unlock.resolve", actor.role)
        if decision not in {"approved", "denied"}:
            raise ValidationError("decision must be approved or denied", details={"decision": decision})

        with self.mutexes.for_entity(request.student_id):
            if request.status != "pending":
                raise InvalidState(
                    "unlock request already resolved",
                    details={"unlock_request_id": str(request.id), "status": request.status},
                )

            student = session.get(Student, request.student_id)
            if student is None:
                raise InvalidState("unlock request refers to a missing student")

            previous = lock_state(student)
            self._claim_request(session, actor, request, decision=decision, admin_notes=admin_notes)
            if decision == "approved":
                merged = sorted(set(student.unlocked_fields or []) | set(request.requested_fields))
                self._write_student(session, student, unlocked_fields=merged)

            self.audit.record(
                session,
                actor,
                action=f"unlock.{decision}",
                entity_type="student",
                entity_id=student.id,
                previous_value={**previous, "unlock_request_id": str(request.id)},
                new_value={**lock_state(student), "unlock_request_id": str(request.id), "decision": decision},
            )
        observe_lock_event(f"unlock_{decision}")
        return request

    def apply_field_changes(
        self,
        session: Session,
        actor: Actor,
        student: Student,
        changes: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> uuid.UUID | None:
        """Write profile fields after checking each one against the lock.

        Any field the actor may not edit rejects the whole change set. Admin
        writes to locked fields succeed and are audited as overrides.
        """
        self.validator.require_role("student.update_profile", actor.role)
        if not changes:
            return None
        unknown = sorted(name for name in changes if name not in PROFILE_FIELDS)
        if unknown:
            raise ValidationError("unknown profile fields", details={"fields": unknown})
        cleared = sorted(name for name in changes if name in NON_NULLABLE_PROFILE_FIELDS and changes[name] is None)
        if cleared:
            raise ValidationError("profile fields cannot be cleared", details={"fields": cleared})

        with self.mutexes.for_entity(student.id):
            if expected_version is not None and expected_version != student.row_version:
                raise InvalidState("row_version conflict", details={"student_id": str(student.id)})

            blocked = [name for name in changes if not self.is_editable(student, name, actor.role)]
            if blocked:
                raise Forbidden("profile fields are locked", role=actor.role, fields=blocked)

            overridden = sorted(name for name in changes if self.is_override(student, name, actor.role))
            previous = {name: _jsonable(getattr(student, name)) for name in changes}
            self._write_student(session, student, **changes)

            audit_id = self.audit.record(
                session,
                actor,
                action="student.profile_updated",
                entity_type="student",
                entity_id=student.id,
                previous_value=previous,
                new_value={name: _jsonable(getattr(student, name)) for name in changes},
                is_override=bool(overridden),
                override_reason="admin edit of locked fields" if overridden else None,
            )
        if overridden:
            logger.info(
                "case.lock_override",
                extra={"entity_type": "student", "entity_id": str(student.id), "fields": overridden, "is_override": True},
            )
        return audit_id

    def _write_student(self, session: Session, student: Student, **values: Any) -> None:
        with self.mutexes.for_entity(student.id):
            session.flush()
            loaded_version = student.row_version
            result = session.execute(
                update(Student)
                .where(Student.id == student.id, Student.row_version == loaded_version)
                .values(**values, row_version=loaded_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidState("row_version conflict", details={"student_id": str(student.id)})
            session.refresh(student)

    def _claim_request(
        self,
        session: Session,
        actor: Actor,
        request: UnlockRequest,
        *,
        decision: str,
        admin_notes: str | None,
    ) -> None:
        """Move a pending request to its decision, once.

        A resolution committed elsewhere after ``request`` was loaded leaves
        no pending row at the loaded version, and the claim fails.
        """
        session.flush()
        loaded_version = request.row_version
        result = session.execute(
            update(UnlockRequest)
            .where(
                UnlockRequest.id == request.id,
                UnlockRequest.status == "pending",
                UnlockRequest.row_version == loaded_version,
            )
            .values(
                status=decision,
                resolved_by=actor.user_id,
                resolved_at=utcnow(),
                admin_notes=admin_notes,
                row_version=loaded_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidState(
                "unlock request was resolved concurrently",
                details={"unlock_request_id": str(request.id)},
            )
        session.refresh(request)

    def _documents(self, session: Session, student_id: uuid.UUID) -> list[Document]:
        return list(session.scalars(select(Document).where(Document.student_id == student_id)).all())

    @staticmethod
    def require_known_fields(fields: list[str]) -> None:
        unknown = sorted(name for name in fields if name not in LOCKABLE_FIELDS)
        if unknown:
            raise ValidationError("unknown lockable fields", details={"fields": unknown})


def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


lock_manager = LockManager()
