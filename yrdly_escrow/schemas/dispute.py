"""Pydantic v2 schemas for dispute case files."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from yrdly_escrow.schemas.escrow import TransactionResponse, _enum_value


class DisputeEvidence(BaseModel):
    """What a party submits to support their side. URLs point at uploaded files."""
    description: str = Field(..., min_length=1, max_length=4096)
    photos: list[str] = Field(default_factory=list, max_length=20)
    chat_screenshots: list[str] = Field(default_factory=list, max_length=20)
    additional_notes: str | None = Field(None, max_length=4096)


class DisputeOpen(BaseModel):
    transaction_id: uuid.UUID
    user_id: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(..., min_length=1, max_length=2048)
    evidence: DisputeEvidence | None = None


class EvidenceSubmit(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    evidence: DisputeEvidence


class AdminNotes(BaseModel):
    notes: str = Field(..., min_length=1, max_length=8192)


class DisputeSettle(BaseModel):
    admin_id: str = Field(..., min_length=1, max_length=128)
    resolution: str = Field(..., min_length=1, max_length=2048)
    refund_amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    seller_amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    transaction_id: uuid.UUID
    opened_by: str
    reason: str
    buyer_evidence: dict | None
    seller_evidence: dict | None
    admin_notes: str | None
    status: str
    resolution: str | None
    resolved_by: str | None
    refund_amount: Decimal
    seller_amount: Decimal
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None
    closed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class DisputeDetailResponse(DisputeResponse):
    transaction: TransactionResponse
