"""Booking numbers quoted by clients, providers and payment references."""

import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

BOOKING_NUMBER_PREFIX = "PS"
# Readable over the phone: no 0/O or 1/I
BOOKING_NUMBER_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
BOOKING_NUMBER_LENGTH = 6
MAX_DRAWS = 20


def draw_booking_number() -> str:
    suffix = "".join(secrets.choice(BOOKING_NUMBER_ALPHABET) for _ in range(BOOKING_NUMBER_LENGTH))
    return f"{BOOKING_NUMBER_PREFIX}-{suffix}"


async def generate_booking_number(db: AsyncSession) -> str:
    """Draw a ``PS-XXXXXX`` number not yet used by any booking.

    The unique index on ``bookings.booking_number`` still guards the
    insert; this only keeps collisions from reaching it.
    """
    from paysync.models.booking import Booking

    for _ in range(MAX_DRAWS):
        candidate = draw_booking_number()
        taken = await db.scalar(select(Booking.id).where(Booking.booking_number == candidate))
        if taken is None:
            return candidate
    raise RuntimeError(f"No free booking number after {MAX_DRAWS} draws")
