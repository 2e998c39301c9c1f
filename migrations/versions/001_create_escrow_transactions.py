"""Create escrow_transactions table.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "escrow_transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column("item_id", sa.String(128), nullable=False),
        sa.Column("buyer_id", sa.String(128), nullable=False),
        sa.Column("seller_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("commission", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("seller_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "paid", "shipped", "delivered", "completed", "disputed", "cancelled",
                name="escrowstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "payment_method",
            sa.Enum("card", "bank_transfer", "mobile_money", name="paymentmethod"),
            nullable=False,
        ),
        sa.Column("delivery_details", JSONB, nullable=False),
        sa.Column("payment_reference", sa.String(128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("dispute_resolution_note", sa.Text(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("item_marked_sold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_escrow_transactions_amount_positive"),
        sa.CheckConstraint(
            "commission + seller_amount = amount", name="ck_escrow_transactions_split",
        ),
    )
    op.create_index("ix_escrow_transactions_item_id", "escrow_transactions", ["item_id"])
    op.create_index("ix_escrow_transactions_buyer_id", "escrow_transactions", ["buyer_id"])
    op.create_index("ix_escrow_transactions_seller_id", "escrow_transactions", ["seller_id"])
    # Recovery scan: paid but item not yet flagged sold
    op.create_index(
        "ix_escrow_transactions_item_sold_pending",
        "escrow_transactions",
        ["paid_at"],
        postgresql_where=sa.text("item_marked_sold_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_table("escrow_transactions")
    op.execute("DROP TYPE IF EXISTS escrowstatus")
    op.execute("DROP TYPE IF EXISTS paymentmethod")
