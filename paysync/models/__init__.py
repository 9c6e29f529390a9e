"""Database models."""

from paysync.models.audit import AuditRecord, UnresolvedEvent
from paysync.models.booking import Booking
from paysync.models.payment import Payment, PaymentAttempt

__all__ = [
    # Booking
    "Booking",
    # Payment
    "Payment",
    "PaymentAttempt",
    # Audit
    "AuditRecord",
    "UnresolvedEvent",
]
