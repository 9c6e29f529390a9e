"""Booking-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BookingCreate(BaseModel):
    """Schema for requesting a booking."""

    provider_id: UUID
    scheduled_at: datetime
    service_type: str = Field(
        default="individual",
        pattern="^(individual|couples|family|group)$",
    )
    amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)

    # Staff may book on behalf of a client
    requester_id: UUID | None = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class BookingAction(BaseModel):
    """Body for a booking lifecycle action."""

    reason: str | None = Field(None, max_length=1000)


class AmountCorrection(BaseModel):
    """Staff correction of a locked booking amount."""

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    reason: str = Field(..., min_length=3, max_length=1000)


class VideoEvent(BaseModel):
    """A signal reported by the video-call collaborator."""

    event: str = Field(..., max_length=50)  # joined, left, ended, dropped
    target_state: str = Field(..., max_length=50)


class BookingResponse(BaseModel):
    """Schema for booking response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_number: str
    requester_id: UUID
    provider_id: UUID
    service_type: str
    scheduled_at: datetime

    amount: Decimal | None
    currency: str
    amount_locked_at: datetime | None

    state: str
    state_changed_at: datetime
    cancellation_reason: str | None
    payment_reference: str | None

    version: int
    created_at: datetime
    updated_at: datetime


class BookingListResponse(BaseModel):
    """Paginated bookings."""

    items: list[BookingResponse]
    total: int
    page: int
    limit: int


class VideoAccessResponse(BaseModel):
    """Whether the session call may be joined for a booking."""

    booking_id: UUID
    booking_state: str
    can_join: bool
    reason: str
