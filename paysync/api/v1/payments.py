"""Payment endpoints."""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy import select

from paysync.api.deps import CurrentActor, DbSession, IdempotencyCache, Manager
from paysync.core.exceptions import NotFoundError, ValidationError
from paysync.core.idempotency import generate_idempotency_key
from paysync.core.permissions import Permission, check_permission, require_permission
from paysync.core.security import Actor
from paysync.domain.payment_state import PaymentState
from paysync.models.booking import Booking
from paysync.models.payment import Payment
from paysync.schemas.payment import (
    PaymentInitiate,
    PaymentInitiateResponse,
    PaymentOverride,
    PaymentResponse,
    PaymentReview,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/initiate", response_model=PaymentInitiateResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    payment_data: PaymentInitiate,
    manager: Manager,
    db: DbSession,
    actor: Actor = Depends(require_permission(Permission.INITIATE_PAYMENT)),
) -> PaymentInitiateResponse:
    """Send the payment request to the gateway; returns the callback correlation id."""
    result = await db.execute(select(Booking).where(Booking.id == payment_data.booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking", str(payment_data.booking_id))

    # Verify user is the requester
    if not actor.is_staff and str(booking.requester_id) != actor.id:
        raise ValidationError("You can only pay for your own bookings")

    payment = await manager.initiate_payment(
        booking.id,
        actor,
        phone_number=payment_data.phone_number,
        gateway=payment_data.gateway,
        amount=payment_data.amount,
    )
    return PaymentInitiateResponse(
        payment_id=payment.id,
        booking_id=payment.booking_id,
        correlation_id=payment.correlation_id,
        state=payment.state,
        attempt_count=payment.attempt_count,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: UUID, actor: CurrentActor, db: DbSession) -> Payment:
    """Get payment details."""
    check_permission(actor, Permission.VIEW_PAYMENT)
    result = await db.execute(select(Payment).where(Payment.id == payment_id))
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment", str(payment_id))

    if not actor.is_staff:
        booking = (
            await db.execute(select(Booking).where(Booking.id == payment.booking_id))
        ).scalar_one_or_none()
        if booking is None or actor.id not in (str(booking.requester_id), str(booking.provider_id)):
            raise NotFoundError("Payment", str(payment_id))

    return payment


async def _idempotent(
    store,
    operation: str,
    payment_id: UUID,
    idempotency_key: str | None,
    action,
) -> dict[str, Any]:
    """Run ``action`` once per client ``Idempotency-Key``; replays get the first response."""
    if not idempotency_key:
        payment = await action()
        return PaymentResponse.model_validate(payment).model_dump(mode="json")

    idem_key = generate_idempotency_key(operation, payment_id, {"key": idempotency_key})
    cached = await store.get(idem_key)
    if cached is not None:
        logger.info(f"Replayed {operation} for payment {payment_id} (Idempotency-Key {idempotency_key})")
        return cached

    payment = await action()
    response = PaymentResponse.model_validate(payment).model_dump(mode="json")
    await store.set(idem_key, response)
    return response


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: UUID,
    request: PaymentOverride,
    manager: Manager,
    store: IdempotencyCache,
    actor: Actor = Depends(require_permission(Permission.OVERRIDE_PAYMENT)),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    """Refund a confirmed payment (staff only). The booking is cancelled."""
    return await _idempotent(
        store,
        "payment_refund",
        payment_id,
        idempotency_key,
        lambda: manager.request_payment_transition(payment_id, PaymentState.REFUNDED, actor, request.reason),
    )


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: UUID,
    request: PaymentOverride,
    manager: Manager,
    store: IdempotencyCache,
    actor: Actor = Depends(require_permission(Permission.OVERRIDE_PAYMENT)),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    """Cancel an open payment (staff only)."""
    return await _idempotent(
        store,
        "payment_cancel",
        payment_id,
        idempotency_key,
        lambda: manager.request_payment_transition(payment_id, PaymentState.CANCELLED, actor, request.reason),
    )


@router.post("/{payment_id}/review", response_model=PaymentResponse)
async def review_payment(
    payment_id: UUID,
    request: PaymentReview,
    manager: Manager,
    store: IdempotencyCache,
    actor: Actor = Depends(require_permission(Permission.RESOLVE_REVIEW)),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    """Approve or reject a payment held for an amount discrepancy (staff only)."""
    return await _idempotent(
        store,
        "payment_review",
        payment_id,
        idempotency_key,
        lambda: manager.resolve_review(payment_id, request.approve, actor, request.reason),
    )
