"""create audit and ledger tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 09:30:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "audit_entry",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_role", sa.String(length=16), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("previous_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("is_override", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("override_reason", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_entry_entity", "audit_entry", ["entity_type", "entity_id", "occurred_at"])
    op.create_index("ix_audit_entry_actor", "audit_entry", ["actor_id", "occurred_at"])

    op.create_table(
        "ledger_invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("student_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("receipt_ref", sa.Text(), nullable=True),
        sa.Column("reverses_invoice_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_ledger_invoice_amount_positive"),
        sa.CheckConstraint(
            "(type = 'refund' AND reverses_invoice_id IS NOT NULL) OR (type <> 'refund' AND reverses_invoice_id IS NULL)",
            name="ck_ledger_invoice_refund_reference",
        ),
        sa.ForeignKeyConstraint(["student_id"], ["case_student.id"]),
        sa.ForeignKeyConstraint(["reverses_invoice_id"], ["ledger_invoice.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number"),
    )
    op.create_index("ix_ledger_invoice_student", "ledger_invoice", ["student_id", "created_at"])

    op.create_table(
        "ledger_commission",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("staff_id", sa.String(length=128), nullable=False),
        sa.Column("student_id", sa.Uuid(), nullable=False),
        sa.Column("contract_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("reverses_commission_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount <> 0", name="ck_ledger_commission_amount_nonzero"),
        sa.ForeignKeyConstraint(["student_id"], ["case_student.id"]),
        sa.ForeignKeyConstraint(["contract_id"], ["case_contract.id"]),
        sa.ForeignKeyConstraint(["reverses_commission_id"], ["ledger_commission.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ledger_commission_staff", "ledger_commission", ["staff_id", "created_at"])
    op.create_index("ix_ledger_commission_contract", "ledger_commission", ["contract_id"])

    op.create_table(
        "ledger_staff_commission_rate",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("staff_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("updated_by", sa.String(length=128), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_ledger_staff_rate_nonnegative"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("staff_id"),
    )


def downgrade() -> None:
    op.drop_table("ledger_staff_commission_rate")
    op.drop_index("ix_ledger_commission_contract", table_name="ledger_commission")
    op.drop_index("ix_ledger_commission_staff", table_name="ledger_commission")
    op.drop_table("ledger_commission")
    op.drop_index("ix_ledger_invoice_student", table_name="ledger_invoice")
    op.drop_table("ledger_invoice")
    op.drop_index("ix_audit_entry_actor", table_name="audit_entry")
    op.drop_index("ix_audit_entry_entity", table_name="audit_entry")
    op.drop_table("audit_entry")
