"""Escrow transaction and audit log models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from yrdly_escrow.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class EscrowStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class PaymentMethod(enum.Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"


class DeliveryOption(enum.Enum):
    FACE_TO_FACE = "face_to_face"
    SELLER_DELIVERY = "seller_delivery"
    PARTNERED_SERVICE = "partnered_service"


class EscrowAction(enum.Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    DELIVERY_UPDATED = "delivery_updated"
    DISPUTED = "disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    ITEM_MARKED_SOLD = "item_marked_sold"
    PAYMENT_NOT_APPLIED = "payment_not_applied"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    DISPUTE_NOTES_ADDED = "dispute_notes_added"
    DISPUTE_CLOSED = "dispute_closed"


TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.CANCELLED})

# Leaving DISPUTED additionally requires the dispute to be resolved.
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.PENDING: {EscrowStatus.PAID, EscrowStatus.DISPUTED, EscrowStatus.CANCELLED},
    EscrowStatus.PAID: {EscrowStatus.SHIPPED, EscrowStatus.DISPUTED, EscrowStatus.CANCELLED},
    EscrowStatus.SHIPPED: {EscrowStatus.DELIVERED, EscrowStatus.DISPUTED, EscrowStatus.CANCELLED},
    EscrowStatus.DELIVERED: {EscrowStatus.COMPLETED, EscrowStatus.DISPUTED, EscrowStatus.CANCELLED},
    EscrowStatus.DISPUTED: {
        EscrowStatus.SHIPPED,
        EscrowStatus.DELIVERED,
        EscrowStatus.COMPLETED,
        EscrowStatus.CANCELLED,
    },
    EscrowStatus.COMPLETED: set(),
    EscrowStatus.CANCELLED: set(),
}

# Status -> timestamp column stamped the first time that status is reached
MILESTONE_FIELDS: dict[EscrowStatus, str] = {
    EscrowStatus.PAID: "paid_at",
    EscrowStatus.SHIPPED: "shipped_at",
    EscrowStatus.DELIVERED: "delivered_at",
    EscrowStatus.COMPLETED: "completed_at",
    EscrowStatus.CANCELLED: "cancelled_at",
}

# Milestone that must already be set before a status may be entered
MILESTONE_PREREQUISITES: dict[EscrowStatus, str] = {
    EscrowStatus.SHIPPED: "paid_at",
    EscrowStatus.DELIVERED: "shipped_at",
    EscrowStatus.COMPLETED: "delivered_at",
}


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x])


class EscrowTransaction(Base):
    """A marketplace sale held in escrow. Never deleted."""
    __tablename__ = "escrow_transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    item_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    commission: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    seller_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(
        _enum_column(EscrowStatus),
        nullable=False,
        default=EscrowStatus.PENDING,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod), nullable=False
    )
    delivery_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    item_marked_sold_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    escrow_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_transactions.transaction_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    action: Mapped[EscrowAction] = mapped_column(_enum_column(EscrowAction), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
