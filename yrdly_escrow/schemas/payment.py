"""Pydantic v2 schemas for payment verification and checkout.

The verification endpoint keeps the camelCase wire format the marketplace
client already speaks.
"""

import re
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_EMAIL_PATTERN = re.compile(
    r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
)


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_reference: str | None = Field(None, alias="transactionReference")


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    message: str = "Payment verified successfully"
    transaction_id: str = Field(..., serialization_alias="transactionId")
    amount: float


class CheckoutRequest(BaseModel):
    buyer_email: str = Field(..., max_length=320)
    buyer_name: str = Field(..., min_length=1, max_length=256)
    item_title: str = Field(..., min_length=1, max_length=256)
    seller_name: str = Field(..., min_length=1, max_length=256)

    @field_validator("buyer_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address")
        return v


class CheckoutResponse(BaseModel):
    transaction_id: str
    amount: Decimal
    currency: str
    payment_link: str
