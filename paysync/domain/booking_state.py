"""Booking state machine."""

from enum import Enum

from paysync.core.exceptions import InvalidTransition, ValidationError


class BookingState(str, Enum):
    """Lifecycle states of a booking."""

    REQUESTED = "requested"
    APPROVED = "approved"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    FORMS_REQUIRED = "forms_required"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW_CLIENT = "no_show_client"
    NO_SHOW_PROVIDER = "no_show_provider"


_NO_SHOWS = {BookingState.NO_SHOW_CLIENT, BookingState.NO_SHOW_PROVIDER}

BOOKING_TRANSITIONS: dict[BookingState, frozenset[BookingState]] = {
    BookingState.REQUESTED: frozenset({BookingState.APPROVED, BookingState.CANCELLED}),
    BookingState.APPROVED: frozenset({BookingState.PAYMENT_PENDING, BookingState.CANCELLED}),
    BookingState.PAYMENT_PENDING: frozenset({BookingState.PAID, BookingState.CANCELLED}),
    BookingState.PAID: frozenset(
        {BookingState.FORMS_REQUIRED, BookingState.READY, BookingState.CANCELLED, *_NO_SHOWS}
    ),
    BookingState.FORMS_REQUIRED: frozenset({BookingState.READY, BookingState.CANCELLED, *_NO_SHOWS}),
    BookingState.READY: frozenset({BookingState.IN_PROGRESS, BookingState.CANCELLED, *_NO_SHOWS}),
    BookingState.IN_PROGRESS: frozenset({BookingState.COMPLETED, *_NO_SHOWS}),
    BookingState.COMPLETED: frozenset(),
    BookingState.CANCELLED: frozenset(),
    BookingState.NO_SHOW_CLIENT: frozenset(),
    BookingState.NO_SHOW_PROVIDER: frozenset(),
}

BOOKING_TERMINAL_STATES = frozenset(s for s, targets in BOOKING_TRANSITIONS.items() if not targets)

# Labels written by older clients and the legacy document store.
LEGACY_BOOKING_LABELS: dict[str, BookingState] = {
    "Pending": BookingState.REQUESTED,
    "Pending Approval": BookingState.REQUESTED,
    "Requested": BookingState.REQUESTED,
    "Approved": BookingState.APPROVED,
    "Payment Pending": BookingState.PAYMENT_PENDING,
    "Awaiting Payment": BookingState.PAYMENT_PENDING,
    "Paid": BookingState.PAID,
    "Booked": BookingState.PAID,
    "Confirmed": BookingState.PAID,
    "Forms Required": BookingState.FORMS_REQUIRED,
    "Ready": BookingState.READY,
    "In Progress": BookingState.IN_PROGRESS,
    "Completed": BookingState.COMPLETED,
    "Cancelled": BookingState.CANCELLED,
    "Declined": BookingState.CANCELLED,
    "No Show": BookingState.NO_SHOW_CLIENT,
    "No Show Client": BookingState.NO_SHOW_CLIENT,
    "No Show Therapist": BookingState.NO_SHOW_PROVIDER,
}


def parse_booking_state(value: str | BookingState) -> BookingState:
    """Map a canonical value or a legacy label to ``BookingState``."""
    if isinstance(value, BookingState):
        return value
    try:
        return BookingState(value)
    except ValueError:
        pass
    if value in LEGACY_BOOKING_LABELS:
        return LEGACY_BOOKING_LABELS[value]
    raise ValidationError(f"Unknown booking status: {value!r}")


def assert_booking_transition(current: BookingState, target: BookingState) -> None:
    allowed = BOOKING_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransition(
            "booking",
            current.value,
            target.value,
            [s.value for s in allowed],
        )
