"""Audit trail and review-queue models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from paysync.database import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


_JSON = JSON().with_variant(JSONB, "postgresql")


class AuditRecord(Base):
    """One immutable state-transition fact.

    Records are keyed by (entity_type, entity_id, sequence) and are never
    updated or deleted (see ``paysync.core.immutability``).
    """

    __tablename__ = "audit_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_records_entity_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # booking, payment
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    from_state: Mapped[str | None] = mapped_column(String(30))
    to_state: Mapped[str] = mapped_column(String(30), nullable=False)

    actor: Mapped[str] = mapped_column(String(100), nullable=False)  # user id, "gateway", "system"
    actor_role: Mapped[str | None] = mapped_column(String(20))
    reason: Mapped[str | None] = mapped_column(Text)
    correlation_id: Mapped[str | None] = mapped_column(String(100), index=True)

    # e.g. ["amount_discrepancy"], ["held_for_review"], ["repair"]
    flags: Mapped[list | None] = mapped_column(_JSON)
    details: Mapped[dict | None] = mapped_column(_JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


class UnresolvedEvent(Base):
    """Callback that was acknowledged but could not be applied."""

    __tablename__ = "unresolved_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(String(30), nullable=False)  # mpesa, callback
    correlation_id: Mapped[str | None] = mapped_column(String(100), index=True)
    external_transaction_id: Mapped[str | None] = mapped_column(String(100))
    reason: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # unresolved_reference, invalid_transition, authority_violation
    detail: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict | None] = mapped_column(_JSON)

    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
