"""Authority matrix between collaborating state machines.

Payment outcomes drive the payment-related part of the booking lifecycle,
the booking drives video access, and nothing else may drive anything.
Video/session-call signals are never authoritative over booking state.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from paysync.core.exceptions import AuthorityViolation
from paysync.domain.booking_state import BookingState
from paysync.domain.payment_state import PaymentState
from paysync.domain.transitions import EntityType

logger = logging.getLogger(__name__)

VIDEO_JOINABLE = "joinable"


@dataclass(frozen=True)
class AuthorityDecision:
    """Outcome of an authority check."""

    allowed: bool
    reason: str
    authority: EntityType | None = None


# (source entity, source state) -> (target entity, target state)
AUTHORITY_RULES: dict[tuple[EntityType, str], tuple[EntityType, str]] = {
    (EntityType.PAYMENT, PaymentState.INITIATED.value): (
        EntityType.BOOKING,
        BookingState.PAYMENT_PENDING.value,
    ),
    (EntityType.PAYMENT, PaymentState.CONFIRMED.value): (EntityType.BOOKING, BookingState.PAID.value),
    (EntityType.PAYMENT, PaymentState.FAILED.value): (
        EntityType.BOOKING,
        BookingState.PAYMENT_PENDING.value,
    ),
    (EntityType.PAYMENT, PaymentState.REFUNDED.value): (EntityType.BOOKING, BookingState.CANCELLED.value),
    (EntityType.BOOKING, BookingState.READY.value): (EntityType.VIDEO_SESSION, VIDEO_JOINABLE),
    (EntityType.BOOKING, BookingState.IN_PROGRESS.value): (EntityType.VIDEO_SESSION, VIDEO_JOINABLE),
}

NEVER_AUTHORITATIVE: frozenset[tuple[EntityType, EntityType]] = frozenset(
    {(EntityType.VIDEO_SESSION, EntityType.BOOKING)}
)

# Booking states only a payment outcome may produce.
PAYMENT_OWNED_BOOKING_STATES = frozenset({BookingState.PAYMENT_PENDING, BookingState.PAID})

# Booking states consistent with each payment state.
EXPECTED_BOOKING_STATES: dict[PaymentState, frozenset[BookingState]] = {
    PaymentState.PENDING: frozenset(
        {BookingState.REQUESTED, BookingState.APPROVED, BookingState.PAYMENT_PENDING}
    ),
    PaymentState.INITIATED: frozenset({BookingState.PAYMENT_PENDING}),
    PaymentState.CONFIRMED: frozenset(
        {
            BookingState.PAID,
            BookingState.FORMS_REQUIRED,
            BookingState.READY,
            BookingState.IN_PROGRESS,
            BookingState.COMPLETED,
            BookingState.NO_SHOW_CLIENT,
        }
    ),
    PaymentState.FAILED: frozenset({BookingState.PAYMENT_PENDING, BookingState.CANCELLED}),
    PaymentState.REFUNDED: frozenset({BookingState.CANCELLED, BookingState.NO_SHOW_PROVIDER}),
    # A cancelled attempt leaves the booking awaiting a fresh one
    PaymentState.CANCELLED: frozenset(
        {BookingState.APPROVED, BookingState.PAYMENT_PENDING, BookingState.CANCELLED}
    ),
}


def _value(state: str | Enum) -> str:
    return state.value if isinstance(state, Enum) else str(state)


def authoritative_entity(target_type: EntityType, target_state: str | Enum) -> EntityType:
    """Entity entitled to drive ``target_type`` into ``target_state``."""
    target_type = EntityType(target_type)
    if target_type == EntityType.VIDEO_SESSION:
        return EntityType.BOOKING
    if target_type == EntityType.BOOKING and _value(target_state) in {
        s.value for s in PAYMENT_OWNED_BOOKING_STATES
    }:
        return EntityType.PAYMENT
    return target_type


def check_authority(
    source_type: EntityType,
    source_state: str | Enum | None,
    target_type: EntityType,
    target_state: str | Enum,
) -> AuthorityDecision:
    """Decide whether ``source`` may drive ``target`` into ``target_state``.

    Deny-by-default: only declared rules and self-driven transitions into
    states the entity owns are allowed.
    """
    source_type = EntityType(source_type)
    target_type = EntityType(target_type)
    target_value = _value(target_state)
    owner = authoritative_entity(target_type, target_value)

    if (source_type, target_type) in NEVER_AUTHORITATIVE:
        return AuthorityDecision(
            allowed=False,
            reason=f"{source_type.value} signals are never authoritative over {target_type.value} state",
            authority=owner,
        )

    if source_type == target_type:
        if owner != source_type:
            return AuthorityDecision(
                allowed=False,
                reason=f"{target_type.value} '{target_value}' is only reachable through {owner.value} outcomes",
                authority=owner,
            )
        return AuthorityDecision(allowed=True, reason="self-driven transition", authority=owner)

    rule = AUTHORITY_RULES.get((source_type, _value(source_state) if source_state is not None else ""))
    if rule == (target_type, target_value):
        return AuthorityDecision(
            allowed=True,
            reason=f"{source_type.value}:{_value(source_state)} drives {target_type.value}:{target_value}",
            authority=source_type,
        )

    return AuthorityDecision(
        allowed=False,
        reason="no authority rule declared for this transition",
        authority=owner,
    )


def assert_authority(
    source_type: EntityType,
    source_state: str | Enum | None,
    target_type: EntityType,
    target_state: str | Enum,
) -> AuthorityDecision:
    """Raise ``AuthorityViolation`` when the check fails."""
    decision = check_authority(source_type, source_state, target_type, target_state)
    if not decision.allowed:
        logger.error(
            f"AUTHORITY_VIOLATION: {EntityType(source_type).value}:{_value(source_state) if source_state else '-'} "
            f"→ {EntityType(target_type).value}:{_value(target_state)} ({decision.reason})"
        )
        raise AuthorityViolation(
            source_type=EntityType(source_type).value,
            target_type=EntityType(target_type).value,
            target_state=_value(target_state),
            authority=decision.authority.value if decision.authority else None,
            reason=decision.reason,
        )
    return decision


def derive_target_state(
    source_type: EntityType,
    source_state: str | Enum,
    target_type: EntityType,
) -> str | None:
    """State the matrix maps ``source`` to on ``target_type``, if any."""
    rule = AUTHORITY_RULES.get((EntityType(source_type), _value(source_state)))
    if rule and rule[0] == EntityType(target_type):
        return rule[1]
    return None


def is_consistent(payment_state: PaymentState, booking_state: BookingState) -> bool:
    return BookingState(booking_state) in EXPECTED_BOOKING_STATES[PaymentState(payment_state)]


def can_join_video(booking_state: BookingState) -> bool:
    return check_authority(
        EntityType.BOOKING, booking_state, EntityType.VIDEO_SESSION, VIDEO_JOINABLE
    ).allowed
