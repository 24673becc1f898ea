from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, get_args
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


LeadStatus = Literal["new", "hot", "cold", "converted", "lost"]
LeadSource = Literal["website", "referral", "event", "manual", "other"]
StudyGoal = Literal["diploma", "bachelor", "masters", "phd"]
Country = Literal["china", "india", "turkey", "other"]
StudentStatus = Literal[
    "pending_contract",
    "contract_signed",
    "active_profile",
    "submitted_to_admin",
    "returned_by_admin",
    "submitted_to_uni",
    "returned_by_school",
    "offer_received",
    "offer_released",
    "completed",
    "cancelled",
]
ApplicationStatus = Literal[
    "draft",
    "pending_admin",
    "approved",
    "rejected",
    "submitted_to_uni",
    "returned_by_school",
    "accepted",
    "declined",
]
ContractStatus = Literal["draft", "pending", "pending_signature", "signed", "expired", "cancelled"]
DocumentType = Literal[
    "passport",
    "transcript",
    "certificate",
    "bank_statement",
    "recommendation",
    "personal_statement",
    "admission_letter",
    "jw202",
    "financial",
    "receipt",
    "contract",
    "other",
]
DocumentStatus = Literal["pending", "verified", "error", "locked", "action_required"]
UnlockStatus = Literal["pending", "approved", "denied"]
UnlockDecision = Literal["approved", "denied"]

DOCUMENT_TYPES: tuple[str, ...] = get_args(DocumentType)
PROFILE_LIST_FIELDS = ("family_members", "education_history", "employment_history")


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    source: LeadSource = "manual"
    study_goal: StudyGoal | None = None
    preferred_country: Country | None = None
    message: str | None = None
    notes: str | None = None
    assigned_staff_id: str | None = None


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    study_goal: StudyGoal | None = None
    preferred_country: Country | None = None
    message: str | None = None
    notes: str | None = None


class LeadStatusChange(BaseModel):
    status: LeadStatus


class LeadAssign(BaseModel):
    assigned_staff_id: str = Field(min_length=1)


class LeadConvertRequest(BaseModel):
    assigned_staff_id: str | None = None
    payment_amount: Decimal | None = None
    payment_currency: str | None = None
    receipt_ref: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    source: str
    study_goal: str | None
    preferred_country: str | None
    message: str | None
    notes: str | None
    status: LeadStatus
    assigned_staff_id: str | None
    last_contact_at: datetime | None
    converted_at: datetime | None
    converted_student_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class FamilyMember(BaseModel):
    name: str = Field(min_length=1)
    relation: str = Field(min_length=1)
    phone: str | None = None
    occupation: str | None = None


class EducationRecord(BaseModel):
    institution: str = Field(min_length=1)
    level: str = Field(min_length=1)
    start_year: int | None = None
    end_year: int | None = None
    grade: str | None = None


class EmploymentRecord(BaseModel):
    employer: str = Field(min_length=1)
    position: str = Field(min_length=1)
    start_date: date | None = None
    end_date: date | None = None


class StudentProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    nationality: str | None = None
    passport_number: str | None = None
    passport_expiry: date | None = None
    current_address: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    emergency_contact_relation: str | None = None
    financial_supporter_name: str | None = None
    financial_supporter_relation: str | None = None
    financial_supporter_occupation: str | None = None
    scholarship_type: str | None = None
    family_members: list[FamilyMember] | None = None
    education_history: list[EducationRecord] | None = None
    employment_history: list[EmploymentRecord] | None = None
    row_version: int | None = None

    def changes(self) -> dict[str, Any]:
        scalars = self.model_dump(mode="python", exclude_unset=True, exclude={"row_version", *PROFILE_LIST_FIELDS})
        lists = self.model_dump(mode="json", exclude_unset=True, include=set(PROFILE_LIST_FIELDS))
        return {**scalars, **{name: value or [] for name, value in lists.items()}}


class StudentActivateRequest(BaseModel):
    signed_contract_ref: str | None = None
    deposit_receipt_ref: str | None = None


class StudentStatusChange(BaseModel):
    status: StudentStatus
    reason: str | None = None


class StudentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    assigned_staff_id: str
    status: StudentStatus
    current_step: int | None
    full_name: str
    email: str | None
    phone: str | None
    date_of_birth: date | None
    gender: str | None
    nationality: str | None
    passport_number: str | None
    passport_expiry: date | None
    current_address: str | None
    emergency_contact_name: str | None
    emergency_contact_phone: str | None
    emergency_contact_relation: str | None
    financial_supporter_name: str | None
    financial_supporter_relation: str | None
    financial_supporter_occupation: str | None
    scholarship_type: str | None
    family_members: list[dict[str, Any]]
    education_history: list[dict[str, Any]]
    employment_history: list[dict[str, Any]]
    is_profile_locked: bool
    locked_at: datetime | None
    locked_by: str | None
    unlocked_fields: list[str]
    offers_unlocked: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class DocumentCreate(BaseModel):
    doc_type: DocumentType
    name: str = Field(min_length=1)
    file_ref: str = Field(min_length=1)


class DocumentReview(BaseModel):
    status: Literal["verified", "error", "action_required"]
    error_message: str | None = None


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    doc_type: str
    name: str
    status: DocumentStatus
    file_ref: str
    is_locked: bool
    locked_at: datetime | None
    is_hidden: bool
    verified_by: str | None
    verified_at: datetime | None
    error_message: str | None
    uploaded_by: str
    created_at: datetime


class UniversityCreate(BaseModel):
    name: str = Field(min_length=1)
    country: Country
    city: str | None = None
    is_partner: bool = False


class UniversityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    country: str
    city: str | None
    is_partner: bool
    is_active: bool


class ApplicationCreate(BaseModel):
    student_id: UUID
    university_id: UUID
    program: str = Field(min_length=1)
    batch: Literal[1, 2]
    priority: int = Field(ge=1, le=5)


class ApplicationReview(BaseModel):
    notes: str | None = None


class ApplicationReject(BaseModel):
    reason: str | None = None


class ApplicationReturn(BaseModel):
    reason: str | None = None
    fields: list[str] = Field(default_factory=list)


class ApplicationDecision(BaseModel):
    decision: Literal["accepted", "declined"]
    notes: str | None = None


class ApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    university_id: UUID
    program: str
    status: ApplicationStatus
    batch: int
    priority: int
    submitted_to_admin_at: datetime | None
    approved_at: datetime | None
    submitted_to_uni_at: datetime | None
    responded_at: datetime | None
    returned_at: datetime | None
    return_reason: str | None
    returned_fields: list[str]
    admin_notes: str | None
    created_by: str
    created_at: datetime
    updated_at: datetime


class ContractCreate(BaseModel):
    student_id: UUID
    amount: Decimal = Field(gt=Decimal("0"))
    deposit_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    non_refundable_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    currency: str = Field(min_length=3, max_length=16)
    staff_id: str | None = None


class ContractSign(BaseModel):
    signature_ref: str | None = None


class ContractCancel(BaseModel):
    reason: str | None = None


class ContractRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    staff_id: str
    status: ContractStatus
    amount: Decimal
    deposit_amount: Decimal
    non_refundable_amount: Decimal
    currency: str
    pricing_version: str
    signature_ref: str | None
    sent_at: datetime | None
    signed_at: datetime | None
    expires_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    created_at: datetime


class PaymentCreate(BaseModel):
    type: Literal["deposit", "balance"]
    amount: Decimal | None = None
    currency: str = Field(min_length=3, max_length=16)
    receipt_ref: str | None = None
    description: str | None = None


class InvoiceIssue(BaseModel):
    type: Literal["opening_book", "deposit", "balance"]
    amount: Decimal = Field(gt=Decimal("0"))
    currency: str = Field(min_length=3, max_length=16)
    due_date: date | None = None
    description: str | None = None


class InvoiceSettle(BaseModel):
    receipt_ref: str = Field(min_length=1)


class RefundCreate(BaseModel):
    amount: Decimal | None = None
    reason: str | None = None


class UnlockRequestCreate(BaseModel):
    fields: list[str] = Field(default_factory=list)
    reason: str | None = None


class UnlockResolve(BaseModel):
    decision: UnlockDecision
    admin_notes: str | None = None


class UnlockRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    requested_fields: list[str]
    reason: str
    requested_by: str
    requested_by_role: str
    status: UnlockStatus
    resolved_by: str | None
    resolved_at: datetime | None
    admin_notes: str | None
    created_at: datetime
    row_version: int
