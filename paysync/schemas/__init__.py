"""Pydantic schemas for API validation."""

from paysync.schemas.booking import (
    AmountCorrection,
    BookingAction,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    VideoAccessResponse,
    VideoEvent,
)
from paysync.schemas.payment import (
    CallbackAck,
    PaymentInitiate,
    PaymentInitiateResponse,
    PaymentOverride,
    PaymentResponse,
    PaymentReview,
)
from paysync.schemas.reconciliation import (
    PairingSchema,
    ReconciliationRunResponse,
    RepairProposal,
)

__all__ = [
    # Booking
    "BookingCreate",
    "BookingAction",
    "AmountCorrection",
    "VideoEvent",
    "BookingResponse",
    "BookingListResponse",
    "VideoAccessResponse",
    # Payment
    "PaymentInitiate",
    "PaymentInitiateResponse",
    "PaymentResponse",
    "PaymentOverride",
    "PaymentReview",
    "CallbackAck",
    # Reconciliation
    "PairingSchema",
    "ReconciliationRunResponse",
    "RepairProposal",
]
