"""Booking endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select

from paysync.api.deps import CurrentActor, DbSession, Manager
from paysync.core.exceptions import NotFoundError, ValidationError
from paysync.core.permissions import (
    BOOKING_ACTIONS,
    Permission,
    check_permission,
    require_permission,
)
from paysync.core.security import Actor
from paysync.domain.authority import can_join_video
from paysync.domain.booking_state import parse_booking_state
from paysync.domain.transitions import EntityType
from paysync.models.booking import Booking
from paysync.schemas.booking import (
    AmountCorrection,
    BookingAction,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    VideoAccessResponse,
    VideoEvent,
)

router = APIRouter()


def _actor_uuid(actor: Actor) -> UUID:
    try:
        return UUID(actor.id)
    except ValueError:
        raise ValidationError(f"Actor {actor} has no user id") from None


def _ensure_party(booking: Booking, actor: Actor) -> None:
    """Clients see their own bookings, providers theirs, staff all."""
    if actor.is_staff:
        return
    if actor.role == "client" and str(booking.requester_id) == actor.id:
        return
    if actor.role == "provider" and str(booking.provider_id) == actor.id:
        return
    raise NotFoundError("Booking", str(booking.id))


async def _get_booking(db, booking_id: UUID, actor: Actor) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking", str(booking_id))
    _ensure_party(booking, actor)
    return booking


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    manager: Manager,
    actor: Actor = Depends(require_permission(Permission.CREATE_BOOKING)),
) -> Booking:
    """Request a booking. The amount, if given, is locked immediately."""
    if actor.is_staff and booking_data.requester_id:
        requester_id = booking_data.requester_id
    else:
        requester_id = _actor_uuid(actor)

    if requester_id == booking_data.provider_id:
        raise ValidationError("A booking needs two different parties")

    return await manager.create_booking(
        requester_id=requester_id,
        provider_id=booking_data.provider_id,
        scheduled_at=booking_data.scheduled_at,
        actor=actor,
        amount=booking_data.amount,
        service_type=booking_data.service_type,
        currency=booking_data.currency,
    )


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    actor: CurrentActor,
    db: DbSession,
    state: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> BookingListResponse:
    """List bookings visible to the caller, optionally filtered by state."""
    check_permission(actor, Permission.VIEW_BOOKING)

    query = select(Booking)
    if actor.role == "client":
        query = query.where(Booking.requester_id == _actor_uuid(actor))
    elif actor.role == "provider":
        query = query.where(Booking.provider_id == _actor_uuid(actor))

    if state:
        # Legacy labels ("Booked", "Pending Approval", ...) are accepted here
        query = query.where(Booking.state == parse_booking_state(state).value)

    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0

    result = await db.execute(
        query.order_by(Booking.scheduled_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    items = result.scalars().all()

    return BookingListResponse(
        items=[BookingResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, actor: CurrentActor, db: DbSession) -> Booking:
    check_permission(actor, Permission.VIEW_BOOKING)
    return await _get_booking(db, booking_id, actor)


@router.get("/{booking_id}/video-access", response_model=VideoAccessResponse)
async def get_video_access(booking_id: UUID, actor: CurrentActor, db: DbSession) -> VideoAccessResponse:
    """Whether the session call may be joined. Booking state is authoritative."""
    booking = await _get_booking(db, booking_id, actor)
    allowed = can_join_video(booking.booking_state)
    return VideoAccessResponse(
        booking_id=booking.id,
        booking_state=booking.state,
        can_join=allowed,
        reason="Session is open" if allowed else f"Session is not joinable while booking is {booking.state}",
    )


@router.post("/{booking_id}/video-events", response_model=BookingResponse)
async def report_video_event(
    booking_id: UUID,
    event: VideoEvent,
    manager: Manager,
    db: DbSession,
    actor: Actor = Depends(require_permission(Permission.REPORT_VIDEO_EVENT)),
) -> Booking:
    """Video signals may not drive booking state; they are refused and logged."""
    await _get_booking(db, booking_id, actor)
    return await manager.apply_external_signal(
        EntityType.VIDEO_SESSION,
        event.event,
        booking_id,
        event.target_state,
        actor,
    )


@router.post("/{booking_id}/amount-correction", response_model=BookingResponse)
async def correct_booking_amount(
    booking_id: UUID,
    correction: AmountCorrection,
    manager: Manager,
    actor: Actor = Depends(require_permission(Permission.CORRECT_AMOUNT)),
) -> Booking:
    """Change a locked amount (staff only, audited)."""
    return await manager.correct_amount(booking_id, correction.amount, actor, correction.reason)


@router.post("/{booking_id}/{action}", response_model=BookingResponse)
async def booking_action(
    booking_id: UUID,
    action: str,
    manager: Manager,
    actor: CurrentActor,
    db: DbSession,
    body: BookingAction | None = None,
) -> Booking:
    """Lifecycle action: approve, decline, cancel, require-forms, mark-ready,
    mark-in-progress, mark-completed, no-show-client, no-show-provider."""
    if action not in BOOKING_ACTIONS:
        raise NotFoundError("Booking action", action)
    target, permission = BOOKING_ACTIONS[action]
    check_permission(actor, permission)
    await _get_booking(db, booking_id, actor)

    reason = body.reason if body else None
    if action == "decline" and not reason:
        reason = "declined by provider"
    return await manager.request_booking_transition(booking_id, target, actor, reason=reason)
