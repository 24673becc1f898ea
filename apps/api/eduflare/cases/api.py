from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from eduflare.cases.errors import CaseLifecycleError, Forbidden
from eduflare.cases.schemas import (
    ApplicationCreate,
    ApplicationDecision,
    ApplicationRead,
    ApplicationReject,
    ApplicationReturn,
    ApplicationReview,
    ContractCancel,
    ContractCreate,
    ContractRead,
    ContractSign,
    DocumentCreate,
    DocumentRead,
    DocumentReview,
    InvoiceIssue,
    InvoiceSettle,
    LeadAssign,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadStatusChange,
    LeadUpdate,
    PaymentCreate,
    RefundCreate,
    StudentActivateRequest,
    StudentProfileUpdate,
    StudentRead,
    StudentStatusChange,
    UniversityCreate,
    UniversityRead,
    UnlockRequestCreate,
    UnlockRequestRead,
    UnlockResolve,
)
from eduflare.cases.service import case_lifecycle_service as service
from eduflare.context import get_correlation_id
from eduflare.core.auth import AuthUser, get_current_user as get_auth_user
from eduflare.core.database import get_db
from eduflare.platform.audit.schemas import AuditEntryRead, AuditQuery
from eduflare.platform.ledger.schemas import (
    CommissionRead,
    InvoiceRead,
    NetRevenueRead,
    StaffCommissionRateRead,
    StaffCommissionRateSet,
)
from eduflare.platform.security.context import Actor


leads_router = APIRouter(prefix="/api/cases", tags=["cases.leads"])
students_router = APIRouter(prefix="/api/cases", tags=["cases.students"])
documents_router = APIRouter(prefix="/api/cases", tags=["cases.documents"])
applications_router = APIRouter(prefix="/api/cases", tags=["cases.applications"])
contracts_router = APIRouter(prefix="/api/cases", tags=["cases.contracts"])
billing_router = APIRouter(prefix="/api/cases", tags=["cases.billing"])
unlocks_router = APIRouter(prefix="/api/cases", tags=["cases.unlocks"])
reports_router = APIRouter(prefix="/api/cases", tags=["cases.reports"])
audit_router = APIRouter(prefix="/api/cases", tags=["cases.audit"])

ERROR_STATUS: dict[str, int] = {
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "precondition_failed": status.HTTP_412_PRECONDITION_FAILED,
    "invalid_state": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
}

T = TypeVar("T")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> Actor:
    if auth_user.role is None:
        raise Forbidden("a staff, admin or student token is required")
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return Actor(user_id=auth_user.sub, role=auth_user.role, correlation_id=correlation_id)


def _run(request: Request, call: Callable[[], T]) -> T | JSONResponse:
    try:
        return call()
    except CaseLifecycleError as exc:
        return error_response(
            request,
            status_code=ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )


def _actor_or_error(request: Request, auth_user: AuthUser) -> Actor | JSONResponse:
    try:
        return get_current_actor(request, auth_user)
    except Forbidden as exc:
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="unauthenticated",
            message=exc.message,
            details=exc.details,
        )


def actor_dependency(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> Actor | JSONResponse:
    return _actor_or_error(request, auth_user)


def _call(request: Request, actor: Actor | JSONResponse, call: Callable[[Actor], T]) -> T | JSONResponse:
    if isinstance(actor, JSONResponse):
        return actor
    return _run(request, lambda: call(actor))


# ------------------------------------------------------------------- leads


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> LeadRead | JSONResponse:
    return _call(request, actor, lambda user: service.create_lead(db, user, dto))


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[LeadRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_leads(db, user, status=status_filter))


@leads_router.get("/leads/idle", response_model=list[LeadRead])
def list_idle_leads(
    request: Request,
    days: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[LeadRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_idle_leads(db, user, days=days))


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> LeadRead | JSONResponse:
    return _call(request, actor, lambda user: service.get_lead(db, user, lead_id))


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> LeadRead | JSONResponse:
    return _call(request, actor, lambda user: service.update_lead(db, user, lead_id, dto))


@leads_router.post("/leads/{lead_id}/status", response_model=LeadRead)
def change_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusChange,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> LeadRead | JSONResponse:
    return _call(request, actor, lambda user: service.change_lead_status(db, user, lead_id, dto.status))


@leads_router.post("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadAssign,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> LeadRead | JSONResponse:
    return _call(request, actor, lambda user: service.assign_lead(db, user, lead_id, dto.assigned_staff_id))


@leads_router.post("/leads/{lead_id}/contact", response_model=LeadRead)
def record_lead_contact(
    request: Request,
    lead_id: uuid.UUID,
    note: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> LeadRead | JSONResponse:
    return _call(request, actor, lambda user: service.record_lead_contact(db, user, lead_id, note=note))


@leads_router.post("/leads/{lead_id}/convert", response_model=StudentRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.convert_lead(
            db,
            user,
            lead_id,
            assigned_staff_id=dto.assigned_staff_id,
            payment_amount=dto.payment_amount,
            payment_currency=dto.payment_currency,
            receipt_ref=dto.receipt_ref,
        ),
    )


# ---------------------------------------------------------------- students


@students_router.get("/students", response_model=list[StudentRead])
def list_students(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[StudentRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_students(db, user, status=status_filter))


@students_router.get("/students/{student_id}", response_model=StudentRead)
def get_student(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(request, actor, lambda user: service.get_student(db, user, student_id))


@students_router.patch("/students/{student_id}/profile", response_model=StudentRead)
def update_student_profile(
    request: Request,
    student_id: uuid.UUID,
    dto: StudentProfileUpdate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(request, actor, lambda user: service.update_student_profile(db, user, student_id, dto))


@students_router.post("/students/{student_id}/activate", response_model=StudentRead)
def activate_student(
    request: Request,
    student_id: uuid.UUID,
    dto: StudentActivateRequest,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.activate_student(
            db,
            user,
            student_id,
            signed_contract_ref=dto.signed_contract_ref,
            deposit_receipt_ref=dto.deposit_receipt_ref,
        ),
    )


@students_router.post("/students/{student_id}/submit", response_model=StudentRead)
def lock_and_submit_profile(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(request, actor, lambda user: service.lock_and_submit_profile(db, user, student_id))


@students_router.post("/students/{student_id}/status", response_model=StudentRead)
def change_student_status(
    request: Request,
    student_id: uuid.UUID,
    dto: StudentStatusChange,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.change_student_status(db, user, student_id, dto.status, reason=dto.reason),
    )


@students_router.post("/students/{student_id}/release-offer", response_model=StudentRead)
def release_offer(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(request, actor, lambda user: service.release_offer(db, user, student_id))


@students_router.post("/students/{student_id}/complete", response_model=StudentRead)
def complete_case(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StudentRead | JSONResponse:
    return _call(request, actor, lambda user: service.complete_case(db, user, student_id))


# --------------------------------------------------------------- documents


@documents_router.get("/students/{student_id}/documents", response_model=list[DocumentRead])
def list_documents(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[DocumentRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_documents(db, user, student_id))


@documents_router.post(
    "/students/{student_id}/documents",
    response_model=DocumentRead,
    status_code=status.HTTP_201_CREATED,
)
def add_document(
    request: Request,
    student_id: uuid.UUID,
    dto: DocumentCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> DocumentRead | JSONResponse:
    return _call(request, actor, lambda user: service.add_document(db, user, student_id, dto))


@documents_router.post("/documents/{document_id}/review", response_model=DocumentRead)
def review_document(
    request: Request,
    document_id: uuid.UUID,
    dto: DocumentReview,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> DocumentRead | JSONResponse:
    return _call(request, actor, lambda user: service.review_document(db, user, document_id, dto))


# ------------------------------------------------------------ applications


@applications_router.get("/universities", response_model=list[UniversityRead])
def list_universities(db: Session = Depends(get_db)) -> list[UniversityRead]:
    return service.list_universities(db)


@applications_router.post("/universities", response_model=UniversityRead, status_code=status.HTTP_201_CREATED)
def create_university(
    request: Request,
    dto: UniversityCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> UniversityRead | JSONResponse:
    return _call(request, actor, lambda user: service.create_university(db, user, dto))


@applications_router.get("/students/{student_id}/applications", response_model=list[ApplicationRead])
def list_applications(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[ApplicationRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_applications(db, user, student_id))


@applications_router.post("/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED)
def create_application(
    request: Request,
    dto: ApplicationCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(request, actor, lambda user: service.create_application(db, user, dto))


@applications_router.post("/applications/{application_id}/submit", response_model=ApplicationRead)
def submit_application_to_admin(
    request: Request,
    application_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(request, actor, lambda user: service.submit_application_to_admin(db, user, application_id))


@applications_router.post("/applications/{application_id}/approve", response_model=ApplicationRead)
def approve_application(
    request: Request,
    application_id: uuid.UUID,
    dto: ApplicationReview,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(request, actor, lambda user: service.approve_application(db, user, application_id, notes=dto.notes))


@applications_router.post("/applications/{application_id}/reject", response_model=ApplicationRead)
def reject_application(
    request: Request,
    application_id: uuid.UUID,
    dto: ApplicationReject,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(request, actor, lambda user: service.reject_application(db, user, application_id, reason=dto.reason))


@applications_router.post("/applications/{application_id}/submit-to-university", response_model=ApplicationRead)
def submit_application_to_university(
    request: Request,
    application_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(request, actor, lambda user: service.submit_application_to_university(db, user, application_id))


@applications_router.post("/applications/{application_id}/return", response_model=ApplicationRead)
def return_application_from_school(
    request: Request,
    application_id: uuid.UUID,
    dto: ApplicationReturn,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.return_application_from_school(
            db,
            user,
            application_id,
            reason=dto.reason,
            fields=dto.fields,
        ),
    )


@applications_router.post("/applications/{application_id}/decision", response_model=ApplicationRead)
def record_university_decision(
    request: Request,
    application_id: uuid.UUID,
    dto: ApplicationDecision,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ApplicationRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.record_university_decision(db, user, application_id, decision=dto.decision, notes=dto.notes),
    )


# --------------------------------------------------------------- contracts


@contracts_router.get("/students/{student_id}/contracts", response_model=list[ContractRead])
def list_contracts(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[ContractRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_contracts(db, user, student_id))


@contracts_router.post("/contracts", response_model=ContractRead, status_code=status.HTTP_201_CREATED)
def create_contract(
    request: Request,
    dto: ContractCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ContractRead | JSONResponse:
    return _call(request, actor, lambda user: service.create_contract(db, user, dto))


@contracts_router.post("/contracts/{contract_id}/send", response_model=ContractRead)
def send_contract(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ContractRead | JSONResponse:
    return _call(request, actor, lambda user: service.send_contract(db, user, contract_id))


@contracts_router.post("/contracts/{contract_id}/request-signature", response_model=ContractRead)
def request_signature(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ContractRead | JSONResponse:
    return _call(request, actor, lambda user: service.request_signature(db, user, contract_id))


@contracts_router.post("/contracts/{contract_id}/sign", response_model=ContractRead)
def sign_contract(
    request: Request,
    contract_id: uuid.UUID,
    dto: ContractSign,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ContractRead | JSONResponse:
    return _call(request, actor, lambda user: service.sign_contract(db, user, contract_id, signature_ref=dto.signature_ref))


@contracts_router.post("/contracts/{contract_id}/expire", response_model=ContractRead)
def expire_contract(
    request: Request,
    contract_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ContractRead | JSONResponse:
    return _call(request, actor, lambda user: service.expire_contract(db, user, contract_id))


@contracts_router.post("/contracts/expire-overdue", response_model=list[ContractRead])
def expire_overdue_contracts(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[ContractRead] | JSONResponse:
    return _call(request, actor, lambda user: service.expire_overdue_contracts(db, user))


@contracts_router.post("/contracts/{contract_id}/cancel", response_model=ContractRead)
def cancel_contract(
    request: Request,
    contract_id: uuid.UUID,
    dto: ContractCancel,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> ContractRead | JSONResponse:
    return _call(request, actor, lambda user: service.cancel_contract(db, user, contract_id, reason=dto.reason))


# ----------------------------------------------------------------- billing


@billing_router.get("/students/{student_id}/invoices", response_model=list[InvoiceRead])
def list_invoices(
    request: Request,
    student_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[InvoiceRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_invoices(db, user, student_id))


@billing_router.post(
    "/students/{student_id}/payments",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
)
def record_payment(
    request: Request,
    student_id: uuid.UUID,
    dto: PaymentCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> InvoiceRead | JSONResponse:
    return _call(request, actor, lambda user: service.record_payment(db, user, student_id, dto))


@billing_router.post(
    "/students/{student_id}/invoices",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
)
def issue_invoice(
    request: Request,
    student_id: uuid.UUID,
    dto: InvoiceIssue,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> InvoiceRead | JSONResponse:
    return _call(request, actor, lambda user: service.issue_invoice(db, user, student_id, dto))


@billing_router.post("/invoices/{invoice_id}/settle", response_model=InvoiceRead)
def settle_invoice(
    request: Request,
    invoice_id: uuid.UUID,
    dto: InvoiceSettle,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> InvoiceRead | JSONResponse:
    return _call(request, actor, lambda user: service.settle_invoice(db, user, invoice_id, receipt_ref=dto.receipt_ref))


@billing_router.post("/invoices/mark-overdue", response_model=list[InvoiceRead])
def mark_overdue_invoices(
    request: Request,
    today: date | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[InvoiceRead] | JSONResponse:
    return _call(request, actor, lambda user: service.mark_overdue_invoices(db, user, today=today))


@billing_router.post(
    "/invoices/{invoice_id}/refunds",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
)
def record_refund(
    request: Request,
    invoice_id: uuid.UUID,
    dto: RefundCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> InvoiceRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.record_refund(db, user, invoice_id, amount=dto.amount, reason=dto.reason),
    )


@billing_router.get("/commissions", response_model=list[CommissionRead])
def list_commissions(
    request: Request,
    staff_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[CommissionRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_commissions(db, user, staff_id=staff_id))


@billing_router.put("/commission-rates/{staff_id}", response_model=StaffCommissionRateRead)
def set_commission_rate(
    request: Request,
    staff_id: str,
    dto: StaffCommissionRateSet,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> StaffCommissionRateRead | JSONResponse:
    return _call(request, actor, lambda user: service.set_commission_rate(db, user, staff_id, dto))


@billing_router.get("/revenue", response_model=NetRevenueRead)
def net_revenue(
    request: Request,
    student_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> NetRevenueRead | JSONResponse:
    return _call(request, actor, lambda user: service.net_revenue(db, user, student_id=student_id))


# ----------------------------------------------------------------- unlocks


@unlocks_router.get("/unlock-requests", response_model=list[UnlockRequestRead])
def list_unlock_requests(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    student_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[UnlockRequestRead] | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.list_unlock_requests(db, user, status=status_filter, student_id=student_id),
    )


@unlocks_router.post(
    "/students/{student_id}/unlock-requests",
    response_model=UnlockRequestRead,
    status_code=status.HTTP_201_CREATED,
)
def request_unlock(
    request: Request,
    student_id: uuid.UUID,
    dto: UnlockRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> UnlockRequestRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.request_unlock(db, user, student_id, fields=dto.fields, reason=dto.reason),
    )


@unlocks_router.post("/unlock-requests/{request_id}/resolve", response_model=UnlockRequestRead)
def resolve_unlock(
    request: Request,
    request_id: uuid.UUID,
    dto: UnlockResolve,
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> UnlockRequestRead | JSONResponse:
    return _call(
        request,
        actor,
        lambda user: service.resolve_unlock(db, user, request_id, decision=dto.decision, admin_notes=dto.admin_notes),
    )


# ----------------------------------------------------------------- reports


@reports_router.get("/reports/idle-applications", response_model=list[ApplicationRead])
def list_idle_applications(
    request: Request,
    days: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[ApplicationRead] | JSONResponse:
    return _call(request, actor, lambda user: service.list_idle_applications(db, user, days=days))


@audit_router.get("/audit", response_model=list[AuditEntryRead])
def query_audit(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    is_override: bool | None = Query(default=None),
    correlation_id: str | None = Query(default=None),
    occurred_from: datetime | None = Query(default=None),
    occurred_to: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor | JSONResponse = Depends(actor_dependency),
) -> list[AuditEntryRead] | JSONResponse:
    filters = AuditQuery(
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        action=action,
        is_override=is_override,
        correlation_id=correlation_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit,
    )
    return _call(request, actor, lambda user: service.query_audit(db, user, filters))
