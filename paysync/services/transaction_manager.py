"""Consistency transaction manager.

The single mutation entry point for bookings and payments. Every unit of
work:

- is serialized per booking (in-process ``asyncio.Lock`` plus
  ``SELECT ... FOR UPDATE`` and optimistic ``version`` columns across
  processes),
- validates every state change against the transition tables and every
  cross-entity change against the authority matrix before writing,
- writes payment, attempt, booking and audit rows in one transaction that
  commits within ``commit_timeout_seconds`` or rolls back completely.
"""

import asyncio
import logging
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from paysync.config import settings
from paysync.core.exceptions import (
    AmountDiscrepancy,
    AppException,
    ConcurrentModification,
    DuplicateEvent,
    NotFoundError,
    PaymentError,
    PersistenceFailure,
    UnresolvedReference,
    ValidationError,
)
from paysync.core.idempotency import IdempotencyStore
from paysync.core.security import GATEWAY_ACTOR, Actor
from paysync.domain.authority import (
    EXPECTED_BOOKING_STATES,
    assert_authority,
    derive_target_state,
)
from paysync.domain.booking_state import BookingState, parse_booking_state
from paysync.domain.payment_state import (
    PAYMENT_OPEN_STATES,
    PaymentState,
    parse_payment_state,
)
from paysync.domain.transitions import EntityType, validate_transition
from paysync.gateways.base import GatewayCallback, GatewayType
from paysync.models.booking import Booking
from paysync.models.payment import Payment, PaymentAttempt
from paysync.services.audit_service import AuditService, audit_service
from paysync.services.gateway_service import GatewayService, gateway_service
from paysync.services.notification_service import NotificationService, notification_service
from paysync.utils.booking_number import generate_booking_number

logger = logging.getLogger(__name__)

ATTEMPT_INITIATED = "initiated"
ATTEMPT_OUTCOME = "outcome"

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_FAILED = "failed"
OUTCOME_HELD = "held_for_review"


@dataclass(frozen=True)
class PaymentOutcome:
    """A gateway's verdict on one payment attempt."""

    correlation_id: str
    result_code: int
    result_description: str | None = None
    external_transaction_id: str | None = None
    amount: Decimal | None = None
    payer_reference: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @classmethod
    def from_callback(cls, callback: GatewayCallback) -> "PaymentOutcome":
        return cls(
            correlation_id=callback.correlation_id,
            result_code=callback.result_code,
            result_description=callback.result_description,
            external_transaction_id=callback.external_transaction_id,
            amount=callback.amount,
            payer_reference=callback.payer_reference,
        )


class LockRegistry:
    """Per-key ``asyncio.Lock`` registry. Unused locks are garbage collected."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


def _now() -> datetime:
    return datetime.now(UTC)


def _money(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


class ConsistencyTransactionManager:
    """Applies booking/payment changes atomically."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        idempotency_store: IdempotencyStore,
        notifier: NotificationService | None = None,
        audit: AuditService | None = None,
        gateways: GatewayService | None = None,
        amount_tolerance: Decimal | None = None,
        commit_timeout: float | None = None,
        max_payment_attempts: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.idempotency = idempotency_store
        self.notifier = notifier or notification_service
        self.audit = audit or audit_service
        self.gateways = gateways or gateway_service
        self.amount_tolerance = (
            amount_tolerance if amount_tolerance is not None else settings.amount_tolerance
        )
        self.commit_timeout = commit_timeout or settings.commit_timeout_seconds
        self.max_payment_attempts = max_payment_attempts or settings.max_payment_attempts
        self._locks = LockRegistry()

    # ==================== UNIT OF WORK ====================

    @asynccontextmanager
    async def _unit(self, lock_key: Any, entity_type: str, entity_id: Any) -> AsyncIterator[AsyncSession]:
        """Serialized session; any failure rolls the whole unit back."""
        async with self._locks.lock(str(lock_key)):
            async with self.session_factory() as db:
                try:
                    yield db
                except AppException:
                    await self._rollback(db)
                    raise
                except StaleDataError:
                    await self._rollback(db)
                    logger.warning(f"Stale write on {entity_type} {entity_id}; rolled back")
                    raise ConcurrentModification(entity_type, str(entity_id)) from None
                except IntegrityError as e:
                    await self._rollback(db)
                    logger.warning(f"Integrity conflict on {entity_type} {entity_id}: {e.orig}")
                    raise ConcurrentModification(entity_type, str(entity_id)) from e
                except SQLAlchemyError as e:
                    await self._rollback(db)
                    logger.error(f"ROLLBACK: unit for {entity_type} {entity_id} failed: {e}")
                    raise PersistenceFailure() from e

    async def _rollback(self, db: AsyncSession) -> None:
        try:
            await db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")

    async def _commit(self, db: AsyncSession) -> None:
        try:
            await asyncio.wait_for(db.commit(), timeout=self.commit_timeout)
        except TimeoutError:
            logger.error(f"ROLLBACK: commit exceeded {self.commit_timeout}s")
            raise PersistenceFailure(
                f"Commit did not complete within {self.commit_timeout}s and was rolled back"
            ) from None

    async def _load_booking(self, db: AsyncSession, booking_id: Any, for_update: bool = False) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _load_payment(self, db: AsyncSession, payment_id: Any, for_update: bool = False) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _find_attempt(self, db: AsyncSession, correlation_id: str, kind: str) -> PaymentAttempt | None:
        result = await db.execute(
            select(PaymentAttempt).where(
                PaymentAttempt.correlation_id == correlation_id,
                PaymentAttempt.kind == kind,
            )
        )
        return result.scalar_one_or_none()

    async def _booking_id_for_payment(self, payment_id: Any) -> uuid.UUID:
        async with self.session_factory() as db:
            payment = await self._load_payment(db, payment_id)
        if payment is None:
            raise NotFoundError("Payment", str(payment_id))
        return payment.booking_id

    # ==================== BOOKINGS ====================

    async def create_booking(
        self,
        requester_id: uuid.UUID,
        provider_id: uuid.UUID,
        scheduled_at: datetime,
        actor: Actor,
        amount: Decimal | None = None,
        service_type: str = "individual",
        currency: str | None = None,
    ) -> Booking:
        """Create a booking in ``requested``; the amount is locked if given."""
        if amount is not None and amount <= 0:
            raise ValidationError(f"Booking amount must be positive, got {amount}")

        booking_id = uuid.uuid4()
        async with self._unit(booking_id, "booking", booking_id) as db:
            booking = Booking(
                id=booking_id,
                booking_number=await generate_booking_number(db),
                requester_id=requester_id,
                provider_id=provider_id,
                scheduled_at=scheduled_at,
                service_type=service_type,
                currency=currency or settings.default_currency,
                state=BookingState.REQUESTED,
            )
            if amount is not None:
                booking.lock_amount(amount)
            db.add(booking)
            await self.audit.record_transition(
                db, "booking", booking.id, None, booking.state, actor, reason="booking requested"
            )
            await self._commit(db)

        logger.info(f"Booking {booking.booking_number} requested by {actor}")
        return booking

    async def request_booking_transition(
        self,
        booking_id: uuid.UUID,
        target: str | BookingState,
        actor: Actor,
        reason: str | None = None,
    ) -> Booking:
        """Move a booking to ``target`` on behalf of ``actor``.

        Payment-owned states (``payment_pending``, ``paid``) are refused with
        ``AuthorityViolation``; they are only reachable through payment
        outcomes.
        """
        target = parse_booking_state(target)
        assert_authority(EntityType.BOOKING, None, EntityType.BOOKING, target)

        async with self._unit(booking_id, "booking", booking_id) as db:
            booking = await self._load_booking(db, booking_id, for_update=True)
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))

            validate_transition(EntityType.BOOKING, booking.state, target)

            from_state = booking.state
            booking.state = target
            booking.state_changed_at = _now()
            if target == BookingState.CANCELLED and reason:
                booking.cancellation_reason = reason

            await self.audit.record_transition(
                db, "booking", booking.id, from_state, booking.state, actor, reason=reason
            )
            await self._commit(db)

        logger.info(f"Booking {booking_id}: {from_state} → {booking.state} by {actor}")
        self.notifier.notify_transition(booking.id, booking.state, reason=reason)
        return booking

    async def correct_amount(
        self,
        booking_id: uuid.UUID,
        amount: Decimal,
        actor: Actor,
        reason: str,
    ) -> Booking:
        """The only path that may change a locked booking amount."""
        if amount <= 0:
            raise ValidationError(f"Booking amount must be positive, got {amount}")
        if not reason:
            raise ValidationError("An amount correction requires a reason")

        async with self._unit(booking_id, "booking", booking_id) as db:
            booking = await self._load_booking(db, booking_id, for_update=True)
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))

            old_amount = booking.amount
            with booking.amount_correction():
                booking.amount = amount
            booking.amount_locked_at = _now()

            await self.audit.record_transition(
                db,
                "booking",
                booking.id,
                booking.state,
                booking.state,
                actor,
                reason=reason,
                flags=[self.audit.AMOUNT_CORRECTION],
                details={"old_amount": _money(old_amount), "new_amount": _money(amount)},
            )
            await self._commit(db)

        logger.warning(f"Booking {booking_id} amount corrected {old_amount} → {amount} by {actor}: {reason}")
        return booking

    async def apply_external_signal(
        self,
        source_type: EntityType,
        source_state: str,
        booking_id: uuid.UUID,
        target: str | BookingState,
        actor: Actor,
    ) -> Booking:
        """Apply a signal from another entity to a booking.

        The authority matrix is checked before anything is loaded, so video
        signals are refused whatever state the booking is in.
        """
        target = parse_booking_state(target)
        assert_authority(source_type, source_state, EntityType.BOOKING, target)

        async with self._unit(booking_id, "booking", booking_id) as db:
            booking = await self._load_booking(db, booking_id, for_update=True)
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))
            validate_transition(EntityType.BOOKING, booking.state, target)

            from_state = booking.state
            booking.state = target
            booking.state_changed_at = _now()
            await self.audit.record_transition(
                db,
                "booking",
                booking.id,
                from_state,
                booking.state,
                actor,
                reason=f"{EntityType(source_type).value}:{source_state} signal",
            )
            await self._commit(db)

        self.notifier.notify_transition(booking.id, booking.state)
        return booking

    # ==================== PAYMENTS ====================

    async def initiate_payment(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        phone_number: str | None = None,
        gateway: str | GatewayType = GatewayType.MPESA,
        amount: Decimal | None = None,
    ) -> Payment:
        """Start (or retry) collection for an approved booking.

        Locks the booking amount if it is not yet locked, sends the gateway
        request, creates the payment (``pending → initiated``) and moves the
        booking to ``payment_pending``. A failed payment is retried in place
        until ``max_payment_attempts`` is reached.
        """
        async with self._unit(booking_id, "booking", booking_id) as db:
            booking = await self._load_booking(db, booking_id, for_update=True)
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))

            booking_target = derive_target_state(EntityType.PAYMENT, PaymentState.INITIATED, EntityType.BOOKING)
            if booking.state != booking_target:
                validate_transition(EntityType.BOOKING, booking.state, booking_target)

            open_payments = (
                await db.execute(
                    select(Payment)
                    .where(
                        Payment.booking_id == booking.id,
                        Payment.state.in_([s.value for s in PAYMENT_OPEN_STATES]),
                    )
                    .with_for_update()
                )
            ).scalars().all()

            retry = None
            for existing in open_payments:
                if existing.state != PaymentState.FAILED:
                    raise ValidationError(
                        f"Booking {booking.booking_number} already has payment {existing.id} in state {existing.state}"
                    )
                retry = existing
            if retry is not None and retry.attempt_count >= self.max_payment_attempts:
                raise ValidationError(
                    f"Payment {retry.id} has exhausted {self.max_payment_attempts} attempts"
                )

            if amount is not None and amount <= 0:
                raise ValidationError(f"Payment amount must be positive, got {amount}")
            if booking.amount is None:
                if amount is None:
                    raise ValidationError("Booking has no locked amount; provide one")
                booking.lock_amount(amount)

            result = await self.gateways.create_payment(
                gateway,
                amount=booking.amount,
                currency=booking.currency,
                reference_id=booking.booking_number,
                phone_number=phone_number,
                description=f"Booking {booking.booking_number}",
            )
            if not result.success or not result.correlation_id:
                raise PaymentError(result.error_message or "Payment request was rejected by the gateway")

            correlation_id = result.correlation_id
            if retry is None:
                payment = Payment(
                    id=uuid.uuid4(),
                    booking_id=booking.id,
                    correlation_id=correlation_id,
                    amount=booking.amount,
                    currency=booking.currency,
                    phone_number=phone_number,
                    gateway=GatewayType(gateway).value,
                    state=PaymentState.PENDING,
                )
                db.add(payment)
                await self.audit.record_transition(
                    db, "payment", payment.id, None, payment.state, actor, correlation_id=correlation_id
                )
            else:
                payment = retry
                payment.correlation_id = correlation_id
                payment.attempt_count += 1
                payment.failure_reason = None
                if phone_number:
                    payment.phone_number = phone_number

            from_state = payment.state
            payment.state = PaymentState.INITIATED
            payment.state_changed_at = _now()
            await self.audit.record_transition(
                db,
                "payment",
                payment.id,
                from_state,
                payment.state,
                actor,
                reason=f"attempt {payment.attempt_count}",
                correlation_id=correlation_id,
            )

            db.add(
                PaymentAttempt(
                    payment_id=payment.id,
                    correlation_id=correlation_id,
                    kind=ATTEMPT_INITIATED,
                    amount=payment.amount,
                )
            )

            booking.payment_reference = correlation_id
            if booking.state != booking_target:
                assert_authority(EntityType.PAYMENT, payment.state, EntityType.BOOKING, booking_target)
                booking_from = booking.state
                booking.state = booking_target
                booking.state_changed_at = _now()
                await self.audit.record_transition(
                    db,
                    "booking",
                    booking.id,
                    booking_from,
                    booking.state,
                    actor,
                    reason="payment initiated",
                    correlation_id=correlation_id,
                )

            await self._commit(db)

        logger.info(
            f"Payment {payment.id} initiated for booking {booking.booking_number} "
            f"(correlation_id={correlation_id}, attempt={payment.attempt_count})"
        )
        return payment

    async def record_attempt(
        self,
        db: AsyncSession,
        payment: Payment,
        outcome: PaymentOutcome,
        label: str,
        result: dict[str, Any],
    ) -> PaymentAttempt:
        """Append the outcome row for ``outcome.correlation_id``.

        The (correlation_id, kind) index makes this idempotent: a repeated
        correlation id raises ``DuplicateEvent`` carrying the stored result.
        """
        existing = await self._find_attempt(db, outcome.correlation_id, ATTEMPT_OUTCOME)
        if existing is not None:
            raise DuplicateEvent(outcome.correlation_id, existing.result or {})

        attempt = PaymentAttempt(
            payment_id=payment.id,
            correlation_id=outcome.correlation_id,
            kind=ATTEMPT_OUTCOME,
            result_code=outcome.result_code,
            result_description=outcome.result_description,
            external_transaction_id=outcome.external_transaction_id,
            amount=outcome.amount,
            outcome=label,
            result=result,
        )
        db.add(attempt)
        return attempt

    async def apply_payment_outcome(
        self,
        outcome: PaymentOutcome,
        actor: Actor = GATEWAY_ACTOR,
    ) -> dict[str, Any]:
        """Apply a gateway outcome to the payment and its booking atomically.

        Returns the result snapshot; every duplicate of the same correlation
        id gets an identical snapshot back without re-validation or writes.

        Raises:
            UnresolvedReference: No payment (or booking) matches the outcome
            InvalidTransition: The payment or booking cannot take the change
            AmountDiscrepancy: Amount beyond tolerance; payment held for review
            PersistenceFailure: Commit failed or timed out; safe to retry
        """
        cache_key = f"outcome:{outcome.correlation_id}"
        cached = await self.idempotency.get(cache_key)
        if cached is not None:
            logger.info(f"Duplicate outcome {outcome.correlation_id} served from idempotency cache")
            return self._finish(cached)

        async with self.session_factory() as db:
            initiated = await self._find_attempt(db, outcome.correlation_id, ATTEMPT_INITIATED)
            payment = await self._load_payment(db, initiated.payment_id) if initiated else None
        if payment is None:
            logger.warning(f"Outcome for unknown correlation id {outcome.correlation_id}")
            raise UnresolvedReference("payment", outcome.correlation_id)

        try:
            result = await self._apply_outcome(outcome, payment.id, payment.booking_id, actor)
        except DuplicateEvent as dup:
            logger.info(f"Duplicate outcome {outcome.correlation_id} served from attempts index")
            result = dup.result

        await self.idempotency.set(cache_key, result)
        return self._finish(result)

    def _finish(self, result: dict[str, Any]) -> dict[str, Any]:
        if result.get("outcome") == OUTCOME_HELD:
            raise AmountDiscrepancy(
                Decimal(result["expected_amount"]),
                Decimal(result["received_amount"]),
                self.amount_tolerance,
                result=dict(result),
            )
        return dict(result)

    async def _apply_outcome(
        self,
        outcome: PaymentOutcome,
        payment_id: uuid.UUID,
        booking_id: uuid.UUID,
        actor: Actor,
    ) -> dict[str, Any]:
        booking_changed = False

        async with self._unit(booking_id, "payment", payment_id) as db:
            payment = await self._load_payment(db, payment_id, for_update=True)
            booking = await self._load_booking(db, booking_id, for_update=True)
            # Looked up under the row locks: another worker may have applied it meanwhile
            existing = await self._find_attempt(db, outcome.correlation_id, ATTEMPT_OUTCOME)
            if existing is not None:
                raise DuplicateEvent(outcome.correlation_id, existing.result or {})
            if booking is None:
                logger.warning(f"Payment {payment_id} references missing booking {booking_id}")
                raise UnresolvedReference("booking", str(booking_id))

            payment_target = PaymentState.CONFIRMED if outcome.succeeded else PaymentState.FAILED
            validate_transition(EntityType.PAYMENT, payment.state, payment_target)

            expected = booking.amount if booking.amount is not None else payment.amount
            flags: list[str] = []
            if outcome.succeeded and outcome.amount is not None and outcome.amount != expected:
                difference = abs(expected - outcome.amount)
                if difference > self.amount_tolerance:
                    result = await self._hold_for_review(db, payment, booking, outcome, expected, actor)
                    await self._commit(db)
                    logger.warning(
                        f"Payment {payment.id} held for review: received {outcome.amount}, "
                        f"expected {expected} (tolerance {self.amount_tolerance})"
                    )
                    return result
                flags.append(self.audit.AMOUNT_DISCREPANCY)
                payment.amount_flagged = True

            booking_from = booking.state
            booking_target = self._booking_target(payment_target, booking)
            if booking_target is not None:
                assert_authority(EntityType.PAYMENT, payment_target, EntityType.BOOKING, booking_target)
                validate_transition(EntityType.BOOKING, booking.state, booking_target)

            now = _now()
            payment_from = payment.state
            payment.state = payment_target
            payment.state_changed_at = now
            payment.received_amount = outcome.amount
            if outcome.external_transaction_id:
                payment.external_transaction_id = outcome.external_transaction_id
            if outcome.succeeded:
                payment.confirmed_at = now
                payment.failure_reason = None
            else:
                payment.failure_reason = f"{outcome.result_code}: {outcome.result_description or 'failed'}"

            if booking_target is not None:
                booking.state = booking_target
                booking.state_changed_at = now
                booking_changed = True

            label = OUTCOME_CONFIRMED if outcome.succeeded else OUTCOME_FAILED
            result = self._outcome_result(outcome, label, payment, booking, expected, now)
            await self.record_attempt(db, payment, outcome, label, result)

            details = {
                "result_code": outcome.result_code,
                "expected_amount": _money(expected),
                "received_amount": _money(outcome.amount),
            }
            await self.audit.record_transition(
                db,
                "payment",
                payment.id,
                payment_from,
                payment.state,
                actor,
                reason=outcome.result_description,
                correlation_id=outcome.correlation_id,
                flags=flags,
                details=details,
            )
            if booking_changed:
                await self.audit.record_transition(
                    db,
                    "booking",
                    booking.id,
                    booking_from,
                    booking.state,
                    actor,
                    reason=f"payment {payment.state}",
                    correlation_id=outcome.correlation_id,
                    flags=flags,
                )
            await self._commit(db)

        logger.info(
            f"Outcome {outcome.correlation_id} applied: payment {payment_from} → {payment.state}, "
            f"booking {booking_from} → {booking.state}"
        )
        if booking_changed:
            self.notifier.notify_transition(booking.id, booking.state, payment_id=str(payment.id))
        return result

    def _booking_target(self, payment_state: PaymentState, booking: Booking) -> BookingState | None:
        """Booking state ``payment_state`` drives to, or None when already consistent."""
        target = derive_target_state(EntityType.PAYMENT, payment_state, EntityType.BOOKING)
        if target is None or booking.state in EXPECTED_BOOKING_STATES[PaymentState(payment_state)]:
            return None
        return BookingState(target)

    async def _hold_for_review(
        self,
        db: AsyncSession,
        payment: Payment,
        booking: Booking,
        outcome: PaymentOutcome,
        expected: Decimal,
        actor: Actor,
    ) -> dict[str, Any]:
        now = _now()
        payment.requires_review = True
        payment.received_amount = outcome.amount
        if outcome.external_transaction_id:
            payment.external_transaction_id = outcome.external_transaction_id

        result = self._outcome_result(outcome, OUTCOME_HELD, payment, booking, expected, now)
        await self.record_attempt(db, payment, outcome, OUTCOME_HELD, result)
        await self.audit.record_transition(
            db,
            "payment",
            payment.id,
            payment.state,
            payment.state,
            actor,
            reason="amount outside tolerance; routed to manual review",
            correlation_id=outcome.correlation_id,
            flags=[self.audit.AMOUNT_DISCREPANCY, self.audit.HELD_FOR_REVIEW],
            details={
                "expected_amount": _money(expected),
                "received_amount": _money(outcome.amount),
                "tolerance": _money(self.amount_tolerance),
            },
        )
        return result

    def _outcome_result(
        self,
        outcome: PaymentOutcome,
        label: str,
        payment: Payment,
        booking: Booking,
        expected: Decimal,
        processed_at: datetime,
    ) -> dict[str, Any]:
        return {
            "correlation_id": outcome.correlation_id,
            "outcome": label,
            "payment_id": str(payment.id),
            "payment_state": payment.state,
            "booking_id": str(booking.id),
            "booking_state": booking.state,
            "amount_flagged": bool(payment.amount_flagged),
            "expected_amount": _money(expected),
            "received_amount": _money(outcome.amount),
            "processed_at": processed_at.isoformat(),
        }

    async def request_payment_transition(
        self,
        payment_id: uuid.UUID,
        target: str | PaymentState,
        actor: Actor,
        reason: str | None = None,
    ) -> Payment:
        """Staff override (refund, cancel); the booking follows via the matrix."""
        target = parse_payment_state(target)
        assert_authority(EntityType.PAYMENT, None, EntityType.PAYMENT, target)
        booking_id = await self._booking_id_for_payment(payment_id)

        async with self._unit(booking_id, "payment", payment_id) as db:
            payment = await self._load_payment(db, payment_id, for_update=True)
            booking = await self._load_booking(db, booking_id, for_update=True)
            validate_transition(EntityType.PAYMENT, payment.state, target)

            booking_target = self._booking_target(target, booking) if booking else None
            if booking_target is not None:
                assert_authority(EntityType.PAYMENT, target, EntityType.BOOKING, booking_target)
                validate_transition(EntityType.BOOKING, booking.state, booking_target)

            now = _now()
            payment_from = payment.state
            payment.state = target
            payment.state_changed_at = now
            if target == PaymentState.CONFIRMED:
                payment.confirmed_at = now
            await self.audit.record_transition(
                db, "payment", payment.id, payment_from, payment.state, actor, reason=reason
            )

            if booking_target is not None:
                booking_from = booking.state
                booking.state = booking_target
                booking.state_changed_at = now
                if booking_target == BookingState.CANCELLED:
                    booking.cancellation_reason = reason or f"payment {target.value}"
                await self.audit.record_transition(
                    db,
                    "booking",
                    booking.id,
                    booking_from,
                    booking.state,
                    actor,
                    reason=f"payment {payment.state}: {reason or ''}".strip(": "),
                )
            await self._commit(db)

        logger.info(f"Payment {payment_id}: {payment_from} → {payment.state} by {actor}")
        if booking_target is not None:
            self.notifier.notify_transition(booking.id, booking.state, payment_id=str(payment.id))
        return payment

    async def resolve_review(
        self,
        payment_id: uuid.UUID,
        approve: bool,
        actor: Actor,
        reason: str,
    ) -> Payment:
        """Staff decision on a payment held for an amount discrepancy.

        Approving confirms the payment (and pays the booking); rejecting
        fails it so the client can retry.
        """
        booking_id = await self._booking_id_for_payment(payment_id)

        async with self._unit(booking_id, "payment", payment_id) as db:
            payment = await self._load_payment(db, payment_id, for_update=True)
            if not payment.requires_review:
                raise ValidationError(f"Payment {payment_id} is not held for review")
            booking = await self._load_booking(db, booking_id, for_update=True)

            target = PaymentState.CONFIRMED if approve else PaymentState.FAILED
            validate_transition(EntityType.PAYMENT, payment.state, target)
            booking_target = self._booking_target(target, booking) if booking else None
            if booking_target is not None:
                assert_authority(EntityType.PAYMENT, target, EntityType.BOOKING, booking_target)
                validate_transition(EntityType.BOOKING, booking.state, booking_target)

            now = _now()
            payment_from = payment.state
            payment.state = target
            payment.state_changed_at = now
            payment.requires_review = False
            if approve:
                payment.confirmed_at = now
                payment.amount_flagged = True
            else:
                payment.failure_reason = f"rejected in review: {reason}"

            await self.audit.record_transition(
                db,
                "payment",
                payment.id,
                payment_from,
                payment.state,
                actor,
                reason=reason,
                correlation_id=payment.correlation_id,
                flags=[self.audit.REVIEW_RESOLVED],
                details={"approved": approve},
            )
            if booking_target is not None:
                booking_from = booking.state
                booking.state = booking_target
                booking.state_changed_at = now
                await self.audit.record_transition(
                    db,
                    "booking",
                    booking.id,
                    booking_from,
                    booking.state,
                    actor,
                    reason=f"payment {payment.state} after review",
                    correlation_id=payment.correlation_id,
                )
            await self._commit(db)

        logger.info(f"Review of payment {payment_id} resolved ({'approved' if approve else 'rejected'}) by {actor}")
        if booking_target is not None:
            self.notifier.notify_transition(booking.id, booking.state, payment_id=str(payment.id))
        return payment

    async def sync_booking_to_payment(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        reason: str = "reconciliation repair",
    ) -> Booking:
        """Bring a booking back in line with its latest payment.

        Goes through the same validator and authority checks as every other
        change; terminal bookings cannot be resurrected.
        """
        async with self._unit(booking_id, "booking", booking_id) as db:
            booking = await self._load_booking(db, booking_id, for_update=True)
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))

            payment = (
                await db.execute(
                    select(Payment)
                    .where(Payment.booking_id == booking.id)
                    .order_by(Payment.created_at.desc())
                    .limit(1)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if payment is None:
                raise ValidationError(f"Booking {booking.booking_number} has no payment to sync from")
            if payment.requires_review:
                raise ValidationError(f"Payment {payment.id} is held for review; resolve it first")

            payment_state = PaymentState(payment.state)
            if booking.state in EXPECTED_BOOKING_STATES[payment_state]:
                logger.info(f"Booking {booking_id} already consistent with payment {payment.id}")
                return booking

            target = derive_target_state(EntityType.PAYMENT, payment_state, EntityType.BOOKING)
            if target is None:
                raise ValidationError(
                    f"No automatic repair for booking {booking.state} with payment {payment.state}"
                )
            assert_authority(EntityType.PAYMENT, payment_state, EntityType.BOOKING, target)
            validate_transition(EntityType.BOOKING, booking.state, target)

            booking_from = booking.state
            booking.state = target
            booking.state_changed_at = _now()
            await self.audit.record_transition(
                db,
                "booking",
                booking.id,
                booking_from,
                booking.state,
                actor,
                reason=reason,
                correlation_id=payment.correlation_id,
                flags=[self.audit.REPAIR],
            )
            await self._commit(db)

        logger.warning(f"Booking {booking_id} repaired {booking_from} → {booking.state} by {actor}")
        self.notifier.notify_transition(booking.id, booking.state)
        return booking
