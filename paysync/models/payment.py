"""Payment-related database models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, validates

from paysync.database import Base
from paysync.domain.payment_state import PaymentState
from paysync.domain.transitions import EntityType, validate_transition


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Payment(Base):
    """One attempted collection of funds against a booking.

    ``booking_id`` is deliberately not a foreign key: a payment whose booking
    cannot be resolved is a valid, reportable (orphaned) pairing.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Correlation id of the current attempt (unique per attempt)
    correlation_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    # Amount
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    received_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    # Payer / gateway
    phone_number: Mapped[str | None] = mapped_column(String(20))
    gateway: Mapped[str] = mapped_column(String(30), default="mpesa")  # mpesa, manual
    external_transaction_id: Mapped[str | None] = mapped_column(String(100), index=True)

    # Lifecycle
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    state_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(Integer, default=1)

    # Amount policy flags
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    amount_flagged: Mapped[bool] = mapped_column(Boolean, default=False)

    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("state")
    def _validate_state(self, key: str, value: str) -> str:
        current = self.state
        if current is not None:
            validate_transition(EntityType.PAYMENT, current, value)
        return PaymentState(value).value

    @property
    def payment_state(self) -> PaymentState:
        return PaymentState(self.state)


class PaymentAttempt(Base):
    """Append-only attempt history, indexed by correlation id.

    ``kind`` is ``initiated`` for the row written when the gateway request
    goes out and ``outcome`` for the row written when the callback is
    applied. The unique (correlation_id, kind) index is the duplicate check.
    """

    __tablename__ = "payment_attempts"
    __table_args__ = (
        UniqueConstraint("correlation_id", "kind", name="uq_payment_attempts_correlation_kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=False, index=True
    )
    correlation_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # initiated, outcome

    result_code: Mapped[int | None] = mapped_column(Integer)
    result_description: Mapped[str | None] = mapped_column(Text)
    external_transaction_id: Mapped[str | None] = mapped_column(String(100))
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    outcome: Mapped[str | None] = mapped_column(String(30))  # confirmed, failed, held_for_review

    # Result snapshot returned to every duplicate of this correlation id
    result: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB, "postgresql"))

    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
