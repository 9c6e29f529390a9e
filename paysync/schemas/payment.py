"""Payment-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PaymentInitiate(BaseModel):
    """Schema for initiating (or retrying) a booking payment."""

    booking_id: UUID
    gateway: str = Field(default="mpesa", pattern="^(mpesa|manual)$")
    phone_number: str | None = Field(None, max_length=20)
    # Only used when the booking has no locked amount yet
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)


class PaymentInitiateResponse(BaseModel):
    """Correlation id the gateway callback will carry."""

    payment_id: UUID
    booking_id: UUID
    correlation_id: str
    state: str
    attempt_count: int


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID
    correlation_id: str
    amount: Decimal
    currency: str
    received_amount: Decimal | None
    gateway: str
    external_transaction_id: str | None
    state: str
    state_changed_at: datetime
    failure_reason: str | None
    attempt_count: int
    requires_review: bool
    amount_flagged: bool
    confirmed_at: datetime | None
    created_at: datetime


class PaymentOverride(BaseModel):
    """Staff refund or cancellation."""

    reason: str = Field(..., min_length=3, max_length=1000)


class PaymentReview(BaseModel):
    """Staff decision on a payment held for an amount discrepancy."""

    approve: bool
    reason: str = Field(..., min_length=3, max_length=1000)


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway for every parsed callback."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"
