"""Pydantic v2 schemas for escrow transactions."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from yrdly_escrow.models.escrow import DeliveryOption, EscrowStatus, PaymentMethod


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class DeliveryDetails(BaseModel):
    option: DeliveryOption
    address: str | None = Field(None, max_length=512)
    meeting_point: str | None = Field(None, max_length=512)
    estimated_delivery: str | None = Field(None, max_length=128)
    tracking_number: str | None = Field(None, max_length=128)
    notes: str | None = Field(None, max_length=2048)


class TransactionCreate(BaseModel):
    """Buyer opens an escrow transaction for a marketplace item."""
    item_id: str = Field(..., min_length=1, max_length=128)
    buyer_id: str = Field(..., min_length=1, max_length=128)
    seller_id: str = Field(..., min_length=1, max_length=128)
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    payment_method: PaymentMethod
    delivery_details: DeliveryDetails


class StatusUpdate(BaseModel):
    status: EscrowStatus
    expected_status: EscrowStatus | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    completed_at: datetime | None = None

    def additional_data(self) -> dict:
        return self.model_dump(exclude={"status", "expected_status"}, exclude_none=True)


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2048)


class DisputeResolve(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=2048)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    item_id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    commission: Decimal
    total_amount: Decimal
    seller_amount: Decimal
    currency: str
    status: str
    payment_method: str
    delivery_details: dict
    payment_reference: str | None
    paid_at: datetime | None
    shipped_at: datetime | None
    delivered_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    dispute_reason: str | None
    dispute_resolution_note: str | None
    disputed_at: datetime | None
    dispute_resolved_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("status", "payment_method", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_audit_id: uuid.UUID
    action: str
    from_status: str | None
    to_status: str | None
    amount: Decimal
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> str:
        return _enum_value(v)


class EscrowStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_transactions: int
    total_volume: Decimal
    total_commission: Decimal
    pending_transactions: int
    completed_transactions: int
    disputed_transactions: int
    by_status: dict[str, int]
