"""Payment state machine."""

from enum import Enum

from paysync.core.exceptions import InvalidTransition, ValidationError


class PaymentState(str, Enum):
    """Lifecycle states of a payment."""

    PENDING = "pending"
    INITIATED = "initiated"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


PAYMENT_TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.PENDING: frozenset({PaymentState.INITIATED, PaymentState.FAILED, PaymentState.CANCELLED}),
    PaymentState.INITIATED: frozenset({PaymentState.CONFIRMED, PaymentState.FAILED, PaymentState.CANCELLED}),
    PaymentState.CONFIRMED: frozenset({PaymentState.REFUNDED}),
    PaymentState.FAILED: frozenset({PaymentState.INITIATED, PaymentState.CANCELLED}),
    PaymentState.REFUNDED: frozenset(),
    PaymentState.CANCELLED: frozenset(),
}

PAYMENT_TERMINAL_STATES = frozenset(s for s, targets in PAYMENT_TRANSITIONS.items() if not targets)

# Payments in these states still expect a gateway outcome or a retry.
PAYMENT_OPEN_STATES = frozenset({PaymentState.PENDING, PaymentState.INITIATED, PaymentState.FAILED})

LEGACY_PAYMENT_LABELS: dict[str, PaymentState] = {
    "Pending": PaymentState.PENDING,
    "Processing": PaymentState.INITIATED,
    "Initiated": PaymentState.INITIATED,
    "Paid": PaymentState.CONFIRMED,
    "Confirmed": PaymentState.CONFIRMED,
    "Failed": PaymentState.FAILED,
    "Refunded": PaymentState.REFUNDED,
    "Cancelled": PaymentState.CANCELLED,
}


def parse_payment_state(value: str | PaymentState) -> PaymentState:
    """Map a canonical value or a legacy label to ``PaymentState``."""
    if isinstance(value, PaymentState):
        return value
    try:
        return PaymentState(value)
    except ValueError:
        pass
    if value in LEGACY_PAYMENT_LABELS:
        return LEGACY_PAYMENT_LABELS[value]
    raise ValidationError(f"Unknown payment status: {value!r}")


def assert_payment_transition(current: PaymentState, target: PaymentState) -> None:
    allowed = PAYMENT_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransition(
            "payment",
            current.value,
            target.value,
            [s.value for s in allowed],
        )
