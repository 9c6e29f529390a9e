"""Booking database model."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, validates

from paysync.core.exceptions import ValidationError
from paysync.database import Base
from paysync.domain.booking_state import BookingState
from paysync.domain.transitions import EntityType, validate_transition


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Booking(Base):
    """One scheduled service engagement between a requester and a provider."""

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False, index=True
    )  # PS-XXXXXX

    # Parties
    requester_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    service_type: Mapped[str] = mapped_column(
        String(50), default="individual"
    )  # individual, couples, family, group
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Amount is locked once and only changed through the audited correction path
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    amount_locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Lifecycle
    state: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    state_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Correlation id of the most recent payment attempt
    payment_reference: Mapped[str | None] = mapped_column(String(100), index=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    _amount_correction_open = False

    @validates("state")
    def _validate_state(self, key: str, value: str) -> str:
        current = self.state
        if current is not None:
            validate_transition(EntityType.BOOKING, current, value)
        return BookingState(value).value

    @validates("amount")
    def _guard_amount(self, key: str, value: Decimal | None) -> Decimal | None:
        current = self.amount
        if current is not None and value != current and not self._amount_correction_open:
            raise ValidationError(
                f"Booking amount is locked at {current}; use the amount correction path"
            )
        return value

    @contextmanager
    def amount_correction(self):
        """Open the amount for a single audited correction."""
        self._amount_correction_open = True
        try:
            yield self
        finally:
            self._amount_correction_open = False

    @property
    def booking_state(self) -> BookingState:
        return BookingState(self.state)

    def lock_amount(self, amount: Decimal) -> bool:
        """Set the amount if not already locked. Returns True when it was set."""
        if self.amount is not None:
            return False
        self.amount = amount
        self.amount_locked_at = _utcnow()
        return True
