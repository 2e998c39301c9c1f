"""Dispute case files and reconciliation audit actions.

- disputes: one row per dispute case, with evidence and the refund split
- escrowaction: add payment_not_applied, evidence_submitted,
  dispute_notes_added, dispute_closed

Revision ID: 004
Revises: 003
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NEW_AUDIT_ACTIONS = (
    "payment_not_applied",
    "evidence_submitted",
    "dispute_notes_added",
    "dispute_closed",
)


def upgrade() -> None:
    # ADD VALUE cannot run inside a transaction block on older Postgres
    with op.get_context().autocommit_block():
        for action in NEW_AUDIT_ACTIONS:
            op.execute(f"ALTER TYPE escrowaction ADD VALUE IF NOT EXISTS '{action}'")

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Uuid(),
            sa.ForeignKey("escrow_transactions.transaction_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("opened_by", sa.String(128), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("buyer_evidence", JSONB, nullable=True),
        sa.Column("seller_evidence", JSONB, nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("open", "under_review", "resolved", "closed", name="disputestatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(128), nullable=True),
        sa.Column("refund_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("seller_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_disputes_transaction_id", "disputes", ["transaction_id"])
    op.create_index("ix_disputes_opened_by", "disputes", ["opened_by"])
    op.create_index("ix_disputes_status", "disputes", ["status"])


def downgrade() -> None:
    op.drop_table("disputes")
    op.execute("DROP TYPE IF EXISTS disputestatus")
    # Postgres cannot drop enum values; the extra escrowaction labels stay
