"""Immutability enforcement for audit records using SQLAlchemy events."""

import logging
from datetime import UTC, datetime

from sqlalchemy import event

from paysync.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_registered = False


class ImmutabilityViolationError(ValidationError):
    """Raised when attempting to modify an append-only record."""

    def __init__(self, model_name: str, operation: str, record_id: str):
        self.model_name = model_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(
            f"Immutability violation: Cannot {operation} {model_name} record {record_id}. "
            "Audit records are append-only."
        )


def _log_immutability_violation(model_name: str, operation: str, record_id: str) -> None:
    logger.error(
        f"IMMUTABILITY_VIOLATION: Attempted to {operation} {model_name} "
        f"record_id={record_id} at {datetime.now(UTC).isoformat()}"
    )


def _forbid(model, operation: str) -> None:
    event_name = "before_update" if operation == "UPDATE" else "before_delete"

    @event.listens_for(model, event_name)
    def _prevent(mapper, connection, target):
        _log_immutability_violation(model.__name__, operation, str(target.id))
        raise ImmutabilityViolationError(model.__name__, operation, str(target.id))


def register_immutability_enforcement() -> None:
    """Register SQLAlchemy event listeners for append-only models.

    Idempotent; called from ``create_application`` and the Celery worker.
    """
    global _registered
    if _registered:
        return

    from paysync.models.audit import AuditRecord
    from paysync.models.booking import Booking
    from paysync.models.payment import Payment, PaymentAttempt

    # AuditRecord and PaymentAttempt: no UPDATE, no DELETE
    for model in (AuditRecord, PaymentAttempt):
        _forbid(model, "UPDATE")
        _forbid(model, "DELETE")

    # Bookings and payments are retained in terminal states, never deleted
    for model in (Booking, Payment):
        _forbid(model, "DELETE")

    _registered = True
    logger.info("Immutability enforcement registered for audit records")
