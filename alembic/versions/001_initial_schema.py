"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

Creates all tables for the PaySync consistency engine:
- Bookings
- Payments and payment attempts
- Audit records
- Unresolved callback review queue
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all database tables."""

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_number", sa.String(20), unique=True, nullable=False, index=True),
        sa.Column("requester_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("service_type", sa.String(50), default="individual"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2)),
        sa.Column("currency", sa.String(3), default="KES"),
        sa.Column("amount_locked_at", sa.DateTime(timezone=True)),
        sa.Column("state", sa.String(30), nullable=False, index=True),
        sa.Column("state_changed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("payment_reference", sa.String(100), index=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ==================== PAYMENTS ====================
    # booking_id carries no foreign key so orphaned payments can be recorded
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("correlation_id", sa.String(100), unique=True, nullable=False, index=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), default="KES"),
        sa.Column("received_amount", sa.Numeric(12, 2)),
        sa.Column("phone_number", sa.String(20)),
        sa.Column("gateway", sa.String(30), default="mpesa"),
        sa.Column("external_transaction_id", sa.String(100), index=True),
        sa.Column("state", sa.String(20), nullable=False, index=True),
        sa.Column("state_changed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("failure_reason", sa.Text),
        sa.Column("attempt_count", sa.Integer, server_default="1"),
        sa.Column("requires_review", sa.Boolean, server_default=sa.false(), index=True),
        sa.Column("amount_flagged", sa.Boolean, server_default=sa.false()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "payment_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("payments.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("correlation_id", sa.String(100), nullable=False, index=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("result_code", sa.Integer),
        sa.Column("result_description", sa.Text),
        sa.Column("external_transaction_id", sa.String(100)),
        sa.Column("amount", sa.Numeric(12, 2)),
        sa.Column("outcome", sa.String(30)),
        sa.Column("result", postgresql.JSONB),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("correlation_id", "kind", name="uq_payment_attempts_correlation_kind"),
    )

    # ==================== AUDIT ====================
    op.create_table(
        "audit_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(20), nullable=False, index=True),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("from_state", sa.String(30)),
        sa.Column("to_state", sa.String(30), nullable=False),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("actor_role", sa.String(20)),
        sa.Column("reason", sa.Text),
        sa.Column("correlation_id", sa.String(100), index=True),
        sa.Column("flags", postgresql.JSONB),
        sa.Column("details", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_records_entity_sequence"),
    )

    op.create_table(
        "unresolved_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("correlation_id", sa.String(100), index=True),
        sa.Column("external_transaction_id", sa.String(100)),
        sa.Column("reason", sa.String(30), nullable=False),
        sa.Column("detail", sa.Text),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("resolved", sa.Boolean, server_default=sa.false(), index=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("unresolved_events")
    op.drop_table("audit_records")
    op.drop_table("payment_attempts")
    op.drop_table("payments")
    op.drop_table("bookings")
