"""create case tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "case_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("study_goal", sa.String(length=32), nullable=True),
        sa.Column("preferred_country", sa.String(length=32), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="new"),
        sa.Column("assigned_staff_id", sa.String(length=128), nullable=True),
        sa.Column("last_contact_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_student_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_case_lead_status_staff", "case_lead", ["status", "assigned_staff_id", "created_at"])
    op.create_index("ix_case_lead_email", "case_lead", ["email"])

    op.create_table(
        "case_student",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_staff_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_contract"),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("gender", sa.String(length=16), nullable=True),
        sa.Column("nationality", sa.String(length=64), nullable=True),
        sa.Column("passport_number", sa.String(length=64), nullable=True),
        sa.Column("passport_expiry", sa.Date(), nullable=True),
        sa.Column("current_address", sa.Text(), nullable=True),
        sa.Column("emergency_contact_name", sa.Text(), nullable=True),
        sa.Column("emergency_contact_phone", sa.String(length=64), nullable=True),
        sa.Column("emergency_contact_relation", sa.String(length=64), nullable=True),
        sa.Column("financial_supporter_name", sa.Text(), nullable=True),
        sa.Column("financial_supporter_relation", sa.String(length=64), nullable=True),
        sa.Column("financial_supporter_occupation", sa.Text(), nullable=True),
        sa.Column("scholarship_type", sa.String(length=32), nullable=True),
        sa.Column("family_members", sa.JSON(), nullable=False),
        sa.Column("education_history", sa.JSON(), nullable=False),
        sa.Column("employment_history", sa.JSON(), nullable=False),
        sa.Column("is_profile_locked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=128), nullable=True),
        sa.Column("unlocked_fields", sa.JSON(), nullable=False),
        sa.Column("offers_unlocked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["lead_id"], ["case_lead.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_id", name="uq_case_student_lead"),
    )
    op.create_index("ix_case_student_status_staff", "case_student", ["status", "assigned_staff_id"])

    op.create_table(
        "case_document",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("student_id", sa.Uuid(), nullable=False),
        sa.Column("doc_type", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("file_ref", sa.Text(), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("verified_by", sa.String(length=128), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("uploaded_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["student_id"], ["case_student.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_case_document_student_type", "case_document", ["student_id", "doc_type"])

    op.create_table(
        "case_university",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("country", sa.String(length=32), nullable=False),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("is_partner", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "case_application",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("student_id", sa.Uuid(), nullable=False),
        sa.Column("university_id", sa.Uuid(), nullable=False),
        sa.Column("program", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("batch", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("submitted_to_admin_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_to_uni_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_reason", sa.Text(), nullable=True),
        sa.Column("returned_fields", sa.JSON(), nullable=False),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("batch IN (1, 2)", name="ck_case_application_batch"),
        sa.CheckConstraint("priority >= 1 AND priority <= 5", name="ck_case_application_priority"),
        sa.ForeignKeyConstraint(["student_id"], ["case_student.id"]),
        sa.ForeignKeyConstraint(["university_id"], ["case_university.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_case_application_student", "case_application", ["student_id", "batch", "priority"])

    op.create_table(
        "case_contract",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("student_id", sa.Uuid(), nullable=False),
        sa.Column("staff_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("non_refundable_amount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("pricing_version", sa.String(length=32), nullable=False),
        sa.Column("signature_ref", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_case_contract_amount_positive"),
        sa.ForeignKeyConstraint(["student_id"], ["case_student.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_case_contract_student", "case_contract", ["student_id", "status"])

    op.create_table(
        "case_unlock_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("student_id", sa.Uuid(), nullable=False),
        sa.Column("requested_fields", sa.JSON(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("requested_by", sa.String(length=128), nullable=False),
        sa.Column("requested_by_role", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["student_id"], ["case_student.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_case_unlock_request_student_status", "case_unlock_request", ["student_id", "status"])


def downgrade() -> None:
    op.drop_index("ix_case_unlock_request_student_status", table_name="case_unlock_request")
    op.drop_table("case_unlock_request")
    op.drop_index("ix_case_contract_student", table_name="case_contract")
    op.drop_table("case_contract")
    op.drop_index("ix_case_application_student", table_name="case_application")
    op.drop_table("case_application")
    op.drop_table("case_university")
    op.drop_index("ix_case_document_student_type", table_name="case_document")
    op.drop_table("case_document")
    op.drop_index("ix_case_student_status_staff", table_name="case_student")
    op.drop_table("case_student")
    op.drop_index("ix_case_lead_email", table_name="case_lead")
    op.drop_index("ix_case_lead_status_staff", table_name="case_lead")
    op.drop_table("case_lead")
