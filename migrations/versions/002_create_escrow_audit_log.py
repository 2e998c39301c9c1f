"""Create escrow_audit_log table.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "escrow_audit_log",
        sa.Column("escrow_audit_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Uuid(),
            sa.ForeignKey("escrow_transactions.transaction_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "action",
            sa.Enum(
                "created", "status_changed", "delivery_updated", "disputed",
                "dispute_resolved", "item_marked_sold",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("from_status", sa.String(16), nullable=True),
        sa.Column("to_status", sa.String(16), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index(
        "ix_escrow_audit_log_transaction_id", "escrow_audit_log", ["transaction_id"]
    )


def downgrade() -> None:
    op.drop_table("escrow_audit_log")
    op.execute("DROP TYPE IF EXISTS escrowaction")
