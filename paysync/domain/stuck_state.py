"""Stuck-state detection.

A non-terminal state is stuck once it has lasted more than twice its
expected dwell time.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from paysync.domain.booking_state import BookingState
from paysync.domain.payment_state import PaymentState
from paysync.domain.transitions import EntityType

STUCK_MULTIPLIER = 2

# Expected dwell time in minutes. Terminal states have no limit.
EXPECTED_DURATIONS: dict[EntityType, dict[str, int]] = {
    EntityType.PAYMENT: {
        PaymentState.PENDING.value: 60,
        PaymentState.INITIATED.value: 5,
        PaymentState.FAILED.value: 1440,
    },
    EntityType.BOOKING: {
        BookingState.REQUESTED.value: 1440,
        BookingState.APPROVED.value: 60,
        BookingState.PAYMENT_PENDING.value: 10,
        BookingState.PAID.value: 30,
        BookingState.FORMS_REQUIRED.value: 1440,
        BookingState.READY.value: 60,
        BookingState.IN_PROGRESS.value: 90,
    },
}

RESOLUTION_POLICIES: dict[EntityType, dict[str, str]] = {
    EntityType.PAYMENT: {
        PaymentState.PENDING.value: "alert_admin",
        PaymentState.INITIATED.value: "alert_admin_urgent",
        PaymentState.FAILED.value: "auto_cleanup",
    },
    EntityType.BOOKING: {
        BookingState.REQUESTED.value: "alert_provider",
        BookingState.APPROVED.value: "alert_client_payment",
        BookingState.PAYMENT_PENDING.value: "alert_admin_urgent",
        BookingState.PAID.value: "advance_to_ready",
        BookingState.FORMS_REQUIRED.value: "alert_client_forms",
        BookingState.READY.value: "alert_both_participants",
        BookingState.IN_PROGRESS.value: "end_session",
    },
}


@dataclass(frozen=True)
class StuckCheck:
    is_stuck: bool
    age_minutes: int
    expected_minutes: int | None
    recommended_action: str
    reason: str


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def state_age_minutes(entered_at: datetime, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    return int((_as_aware(now) - _as_aware(entered_at)).total_seconds() // 60)


def check_stuck(
    entity_type: EntityType,
    state: str | Enum,
    entered_at: datetime,
    now: datetime | None = None,
) -> StuckCheck:
    """Check whether ``state`` has lasted longer than twice its expected duration."""
    value = state.value if isinstance(state, Enum) else state
    age = state_age_minutes(entered_at, now)
    expected = EXPECTED_DURATIONS.get(EntityType(entity_type), {}).get(value)

    if expected is None:
        return StuckCheck(False, age, None, "none", "Terminal state or no duration limit")

    threshold = expected * STUCK_MULTIPLIER
    if age > threshold:
        action = RESOLUTION_POLICIES.get(EntityType(entity_type), {}).get(value, "alert_admin")
        return StuckCheck(
            True,
            age,
            expected,
            action,
            f"State has lasted {age} minutes, exceeding {STUCK_MULTIPLIER}× expected duration of {expected} minutes",
        )
    return StuckCheck(False, age, expected, "none", f"State age {age} minutes is within acceptable range")
