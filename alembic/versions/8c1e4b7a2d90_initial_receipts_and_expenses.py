"""initial receipts and expenses

Revision ID: 8c1e4b7a2d90
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "8c1e4b7a2d90"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_RECEIPT_STATUS = sa.Enum(
    "UPLOADED",
    "PROCESSING",
    "COMPLETED",
    "FAILED",
    "COMMITTED",
    name="receiptstatus",
    native_enum=False,
)


def upgrade() -> None:
    op.create_table(
        "expenses_batch",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_expenses_batch_user_id", "expenses_batch", ["user_id"])

    op.create_table(
        "receipts_receipt",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("batch_id", sa.Uuid(), sa.ForeignKey("expenses_batch.id"), nullable=True),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=True),
        sa.Column("storage_key", sa.String(length=1024), nullable=True),
        sa.Column("status", _RECEIPT_STATUS, nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False),
        sa.Column("page_count", sa.Integer(), nullable=True),
        sa.Column("extracted_items", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("storage_key"),
    )
    op.create_index("ix_receipts_receipt_user_id", "receipts_receipt", ["user_id"])
    op.create_index("ix_receipts_receipt_batch_id", "receipts_receipt", ["batch_id"])
    op.create_index("ix_receipts_receipt_sha256", "receipts_receipt", ["sha256"])
    op.create_index("ix_receipts_receipt_status", "receipts_receipt", ["status"])

    op.create_table(
        "expenses_expense",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("batch_id", sa.Uuid(), sa.ForeignKey("expenses_batch.id"), nullable=False),
        sa.Column(
            "receipt_id", sa.Uuid(), sa.ForeignKey("receipts_receipt.id"), nullable=True
        ),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=300), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("vat_code", sa.String(length=200), nullable=False),
        sa.Column("vat_percentage", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("nui", sa.String(length=100), nullable=True),
        sa.Column("fiscal_number", sa.String(length=100), nullable=True),
        sa.Column("vat_number", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_expenses_expense_batch_id", "expenses_expense", ["batch_id"])
    op.create_index("ix_expenses_expense_receipt_id", "expenses_expense", ["receipt_id"])
    op.create_index("ix_expenses_expense_user_id", "expenses_expense", ["user_id"])
    op.create_index("ix_expenses_expense_category", "expenses_expense", ["category"])


def downgrade() -> None:
    op.drop_index("ix_expenses_expense_category", table_name="expenses_expense")
    op.drop_index("ix_expenses_expense_user_id", table_name="expenses_expense")
    op.drop_index("ix_expenses_expense_receipt_id", table_name="expenses_expense")
    op.drop_index("ix_expenses_expense_batch_id", table_name="expenses_expense")
    op.drop_table("expenses_expense")

    op.drop_index("ix_receipts_receipt_status", table_name="receipts_receipt")
    op.drop_index("ix_receipts_receipt_sha256", table_name="receipts_receipt")
    op.drop_index("ix_receipts_receipt_batch_id", table_name="receipts_receipt")
    op.drop_index("ix_receipts_receipt_user_id", table_name="receipts_receipt")
    op.drop_table("receipts_receipt")

    op.drop_index("ix_expenses_batch_user_id", table_name="expenses_batch")
    op.drop_table("expenses_batch")
