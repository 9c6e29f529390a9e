"""Append-only audit trail service."""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paysync.core.security import Actor
from paysync.models.audit import AuditRecord, UnresolvedEvent

logger = logging.getLogger(__name__)


class AuditService:
    """Writes audit records inside the caller's unit of work."""

    # Flags carried on audit records
    AMOUNT_DISCREPANCY = "amount_discrepancy"
    HELD_FOR_REVIEW = "held_for_review"
    REVIEW_RESOLVED = "review_resolved"
    AMOUNT_CORRECTION = "amount_correction"
    REPAIR = "repair"

    async def next_sequence(self, db: AsyncSession, entity_type: str, entity_id: UUID) -> int:
        result = await db.execute(
            select(func.max(AuditRecord.sequence)).where(
                AuditRecord.entity_type == entity_type,
                AuditRecord.entity_id == entity_id,
            )
        )
        return (result.scalar_one_or_none() or 0) + 1

    async def record_transition(
        self,
        db: AsyncSession,
        entity_type: str,
        entity_id: UUID,
        from_state: str | None,
        to_state: str,
        actor: Actor,
        reason: str | None = None,
        correlation_id: str | None = None,
        flags: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Append one transition record (immutable).

        Args:
            db: Session of the enclosing unit of work
            entity_type: "booking" or "payment"
            entity_id: Entity ID
            from_state: Previous state (None on creation)
            to_state: New state
            actor: Who caused the change
            reason: Free-text reason
            correlation_id: Gateway correlation id, if any
            flags: Markers such as ``amount_discrepancy``
            details: Extra structured context

        Returns:
            Created audit record
        """
        record = AuditRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            sequence=await self.next_sequence(db, entity_type, entity_id),
            from_state=from_state,
            to_state=to_state,
            actor=actor.id,
            actor_role=actor.role,
            reason=reason,
            correlation_id=correlation_id,
            flags=flags or None,
            details=details,
        )
        db.add(record)
        return record

    async def trail(self, db: AsyncSession, entity_type: str, entity_id: UUID) -> list[AuditRecord]:
        """Full history of one entity, oldest first."""
        result = await db.execute(
            select(AuditRecord)
            .where(AuditRecord.entity_type == entity_type, AuditRecord.entity_id == entity_id)
            .order_by(AuditRecord.sequence)
        )
        return list(result.scalars().all())

    async def record_unresolved(
        self,
        db: AsyncSession,
        source: str,
        reason: str,
        correlation_id: str | None = None,
        external_transaction_id: str | None = None,
        detail: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> UnresolvedEvent:
        """Queue an acknowledged-but-unapplied callback for review."""
        event = UnresolvedEvent(
            source=source,
            reason=reason,
            correlation_id=correlation_id,
            external_transaction_id=external_transaction_id,
            detail=detail,
            payload=payload,
        )
        db.add(event)
        logger.warning(
            f"Unresolved {source} event queued: reason={reason} correlation_id={correlation_id}"
        )
        return event


audit_service = AuditService()
