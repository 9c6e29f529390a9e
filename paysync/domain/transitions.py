"""Transition validator shared by every mutation path.

Models call :func:`validate_transition` from their ``state`` attribute
validators, so an illegal state can never be assigned, let alone persisted.
"""

from enum import Enum

from paysync.core.exceptions import InvalidTransition, ValidationError
from paysync.domain.booking_state import (
    BOOKING_TERMINAL_STATES,
    BOOKING_TRANSITIONS,
    BookingState,
    assert_booking_transition,
)
from paysync.domain.payment_state import (
    PAYMENT_TERMINAL_STATES,
    PAYMENT_TRANSITIONS,
    PaymentState,
    assert_payment_transition,
)


class EntityType(str, Enum):
    """Entities that own a state machine or receive cross-entity signals."""

    BOOKING = "booking"
    PAYMENT = "payment"
    VIDEO_SESSION = "video_session"


def _coerce(entity_type: EntityType, state: str | Enum) -> BookingState | PaymentState:
    enum_cls = BookingState if entity_type == EntityType.BOOKING else PaymentState
    try:
        return enum_cls(state)
    except ValueError:
        raise ValidationError(f"{state!r} is not a {entity_type.value} state") from None


def validate_transition(
    entity_type: EntityType,
    current: str | Enum,
    target: str | Enum,
) -> None:
    """Raise ``InvalidTransition`` unless ``current → target`` is legal."""
    if entity_type == EntityType.BOOKING:
        assert_booking_transition(_coerce(entity_type, current), _coerce(entity_type, target))
    elif entity_type == EntityType.PAYMENT:
        assert_payment_transition(_coerce(entity_type, current), _coerce(entity_type, target))
    else:
        raise ValidationError(f"{entity_type.value} has no state machine")


def allowed_targets(entity_type: EntityType, current: str | Enum) -> frozenset:
    table = BOOKING_TRANSITIONS if entity_type == EntityType.BOOKING else PAYMENT_TRANSITIONS
    return table.get(_coerce(entity_type, current), frozenset())


def is_terminal(entity_type: EntityType, state: str | Enum) -> bool:
    terminal = BOOKING_TERMINAL_STATES if entity_type == EntityType.BOOKING else PAYMENT_TERMINAL_STATES
    return _coerce(entity_type, state) in terminal
