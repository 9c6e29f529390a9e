"""Payment ↔ booking reconciliation (read-mostly).

Re-derives every booking/payment pairing over a window and classifies it.
Reconciliation only proposes; repairs go through the transaction manager.
"""

import csv
import io
import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.config import settings
from paysync.core.exceptions import NotFoundError, ValidationError
from paysync.core.security import SYSTEM_ACTOR, Actor
from paysync.domain.authority import EXPECTED_BOOKING_STATES, derive_target_state, is_consistent
from paysync.domain.payment_state import PaymentState
from paysync.domain.stuck_state import check_stuck, state_age_minutes
from paysync.domain.transitions import EntityType, allowed_targets
from paysync.models.audit import UnresolvedEvent
from paysync.models.booking import Booking
from paysync.models.payment import Payment, PaymentAttempt
from paysync.services.audit_service import AuditService, audit_service

logger = logging.getLogger(__name__)

AWAITING_OUTCOME = frozenset({PaymentState.PENDING, PaymentState.INITIATED})


class Classification:
    MATCHED = "matched"
    DISCREPANCY = "discrepancy"
    UNMATCHED = "unmatched"
    PENDING_VERIFICATION = "pending_verification"
    ORPHANED = "orphaned"

    ALL = (MATCHED, DISCREPANCY, UNMATCHED, PENDING_VERIFICATION, ORPHANED)


class Severity:
    HIGH = "high"
    MEDIUM = "medium"
    INFO = "info"


@dataclass(frozen=True)
class Issue:
    """One human-readable finding on a pairing."""

    field: str
    expected: str | None
    actual: str | None
    severity: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "expected": self.expected,
            "actual": self.actual,
            "severity": self.severity,
            "message": self.message,
        }


@dataclass
class PairingResult:
    """Classification of one booking/payment pairing."""

    classification: str
    booking_id: uuid.UUID | None = None
    booking_number: str | None = None
    booking_state: str | None = None
    payment_id: uuid.UUID | None = None
    correlation_id: str | None = None
    payment_state: str | None = None
    expected_amount: Decimal | None = None
    actual_amount: Decimal | None = None
    external_transaction_id: str | None = None
    issues: list[Issue] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        value = self.expected_amount if self.expected_amount is not None else self.actual_amount
        return value or Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification,
            "booking_id": str(self.booking_id) if self.booking_id else None,
            "booking_number": self.booking_number,
            "booking_state": self.booking_state,
            "payment_id": str(self.payment_id) if self.payment_id else None,
            "correlation_id": self.correlation_id,
            "payment_state": self.payment_state,
            "expected_amount": str(self.expected_amount) if self.expected_amount is not None else None,
            "actual_amount": str(self.actual_amount) if self.actual_amount is not None else None,
            "external_transaction_id": self.external_transaction_id,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass
class ReconciliationReport:
    start: datetime
    end: datetime
    generated_at: datetime
    results: list[PairingResult]

    @property
    def summary(self) -> dict[str, Any]:
        counts = Counter(r.classification for r in self.results)
        amounts: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for r in self.results:
            amounts[r.classification] += r.amount
        return {
            "total": len(self.results),
            "counts": {c: counts.get(c, 0) for c in Classification.ALL},
            "amounts": {c: str(amounts[c]) for c in Classification.ALL},
        }

    def by_classification(self, classification: str) -> list[PairingResult]:
        return [r for r in self.results if r.classification == classification]

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "generated_at": self.generated_at.isoformat(),
            "summary": self.summary,
            "results": [r.to_dict() for r in self.results],
        }


def _now() -> datetime:
    return datetime.now(UTC)


class ReconciliationEngine:
    """Classifies pairings and proposes repairs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        manager,
        audit: AuditService | None = None,
        amount_tolerance: Decimal | None = None,
        window_minutes: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.manager = manager
        self.audit = audit or audit_service
        self.amount_tolerance = (
            amount_tolerance if amount_tolerance is not None else settings.amount_tolerance
        )
        self.window_minutes = window_minutes or settings.pending_verification_window_minutes

    # ==================== RUN ====================

    async def run(self, start: datetime, end: datetime, now: datetime | None = None) -> ReconciliationReport:
        """Classify every pairing created in ``[start, end)``."""
        now = now or _now()
        async with self.session_factory() as db:
            payments = list(
                (
                    await db.execute(
                        select(Payment)
                        .where(Payment.created_at >= start, Payment.created_at < end)
                        .order_by(Payment.created_at)
                    )
                ).scalars().all()
            )
            booking_ids = {p.booking_id for p in payments}
            bookings = {
                b.id: b
                for b in (
                    await db.execute(select(Booking).where(Booking.id.in_(booking_ids)))
                ).scalars().all()
            } if booking_ids else {}

            # Bookings that claim a payment reference nothing in the window resolves
            referencing = (
                await db.execute(
                    select(Booking).where(
                        Booking.created_at >= start,
                        Booking.created_at < end,
                        Booking.payment_reference.isnot(None),
                    )
                )
            ).scalars().all()
            dangling = await self._dangling_bookings(db, [b for b in referencing if b.id not in booking_ids])

            events = await self._unresolved_events(db, start, end)

        results = self._classify_all(payments, bookings, now)
        results.extend(self._orphaned_booking(b) for b in dangling)
        results.extend(self._orphaned_event(e) for e in events)

        report = ReconciliationReport(start=start, end=end, generated_at=now, results=results)
        counts = report.summary["counts"]
        logger.info(f"Reconciliation {start.isoformat()} → {end.isoformat()}: {counts}")
        if counts[Classification.DISCREPANCY] or counts[Classification.UNMATCHED]:
            logger.warning(
                f"Reconciliation found {counts[Classification.DISCREPANCY]} discrepancies and "
                f"{counts[Classification.UNMATCHED]} unmatched pairings"
            )
        if counts[Classification.ORPHANED]:
            logger.warning(f"Reconciliation found {counts[Classification.ORPHANED]} orphaned pairings")
        return report

    async def _dangling_bookings(self, db: AsyncSession, bookings: list[Booking]) -> list[Booking]:
        dangling = []
        for booking in bookings:
            exists = (
                await db.execute(select(Payment.id).where(Payment.booking_id == booking.id).limit(1))
            ).scalar_one_or_none()
            if exists is None:
                dangling.append(booking)
        return dangling

    async def _unresolved_events(
        self,
        db: AsyncSession,
        start: datetime | None,
        end: datetime | None,
    ) -> list[UnresolvedEvent]:
        stmt = select(UnresolvedEvent).where(
            UnresolvedEvent.resolved.is_(False),
            UnresolvedEvent.reason == "unresolved_reference",
        )
        if start is not None:
            stmt = stmt.where(UnresolvedEvent.received_at >= start)
        if end is not None:
            stmt = stmt.where(UnresolvedEvent.received_at < end)
        return list((await db.execute(stmt.order_by(UnresolvedEvent.received_at))).scalars().all())

    def _classify_all(
        self,
        payments: list[Payment],
        bookings: dict[uuid.UUID, Booking],
        now: datetime,
    ) -> list[PairingResult]:
        by_booking: dict[uuid.UUID, list[Payment]] = defaultdict(list)
        for payment in payments:
            by_booking[payment.booking_id].append(payment)

        transaction_ids = Counter(
            p.external_transaction_id for p in payments if p.external_transaction_id
        )
        return [
            self.classify(payment, bookings.get(payment.booking_id), by_booking[payment.booking_id], transaction_ids, now)
            for payment in payments
        ]

    # ==================== CLASSIFICATION ====================

    def classify(
        self,
        payment: Payment,
        booking: Booking | None,
        siblings: list[Payment] | None = None,
        transaction_ids: Counter | None = None,
        now: datetime | None = None,
    ) -> PairingResult:
        """Classify one payment against its booking."""
        now = now or _now()
        result = PairingResult(
            classification=Classification.MATCHED,
            payment_id=payment.id,
            correlation_id=payment.correlation_id,
            payment_state=payment.state,
            actual_amount=payment.received_amount if payment.received_amount is not None else payment.amount,
            external_transaction_id=payment.external_transaction_id,
        )

        if booking is None:
            result.classification = Classification.ORPHANED
            result.expected_amount = payment.amount
            result.issues.append(
                Issue(
                    "booking_id",
                    str(payment.booking_id),
                    None,
                    Severity.HIGH,
                    f"Payment {payment.correlation_id} references booking {payment.booking_id} that does not exist",
                )
            )
            return result

        result.booking_id = booking.id
        result.booking_number = booking.booking_number
        result.booking_state = booking.state
        result.expected_amount = booking.amount if booking.amount is not None else payment.amount

        issues = result.issues
        issues.extend(self._amount_issues(result.expected_amount, result.actual_amount))

        if payment.requires_review:
            issues.append(
                Issue("requires_review", "false", "true", Severity.HIGH, "Payment is held for manual review")
            )

        payment_state = PaymentState(payment.state)
        # Superseded payments are judged by the latest one only
        latest = max(siblings or [payment], key=lambda p: p.created_at)
        if latest is payment and not is_consistent(payment_state, booking.booking_state):
            expected_states = sorted(s.value for s in EXPECTED_BOOKING_STATES[payment_state])
            issues.append(
                Issue(
                    "state",
                    ", ".join(expected_states),
                    booking.state,
                    Severity.HIGH,
                    f"state mismatch: Payment {payment.state} but Booking {booking.state}",
                )
            )

        open_payments = [
            p for p in siblings or [payment] if p.state in AWAITING_OUTCOME
        ]
        if len(open_payments) > 1:
            issues.append(
                Issue(
                    "payments",
                    "1",
                    str(len(open_payments)),
                    Severity.MEDIUM,
                    f"Booking has {len(open_payments)} payments awaiting an outcome",
                )
            )

        if payment.external_transaction_id and transaction_ids and transaction_ids[payment.external_transaction_id] > 1:
            issues.append(
                Issue(
                    "external_transaction_id",
                    "unique",
                    payment.external_transaction_id,
                    Severity.HIGH,
                    f"Transaction {payment.external_transaction_id} is recorded on "
                    f"{transaction_ids[payment.external_transaction_id]} payments",
                )
            )

        if any(issue.severity != Severity.INFO for issue in issues):
            result.classification = Classification.DISCREPANCY
            return result

        if payment_state in AWAITING_OUTCOME:
            age = state_age_minutes(payment.state_changed_at, now)
            if age <= self.window_minutes:
                result.classification = Classification.PENDING_VERIFICATION
                issues.append(
                    Issue(
                        "state",
                        "confirmed or failed",
                        payment.state,
                        Severity.INFO,
                        f"Awaiting gateway outcome for {age} minutes",
                    )
                )
            else:
                result.classification = Classification.UNMATCHED
                issues.append(
                    Issue(
                        "state",
                        "confirmed or failed",
                        payment.state,
                        Severity.MEDIUM,
                        f"No gateway outcome after {age} minutes (window {self.window_minutes})",
                    )
                )
            return result

        if payment_state == PaymentState.FAILED:
            stuck = check_stuck(EntityType.PAYMENT, payment_state, payment.state_changed_at, now)
            if stuck.is_stuck:
                result.classification = Classification.UNMATCHED
                issues.append(Issue("state", "initiated or cancelled", payment.state, Severity.MEDIUM, stuck.reason))

        return result

    def _amount_issues(self, expected: Decimal | None, actual: Decimal | None) -> list[Issue]:
        if expected is None or actual is None or expected == actual:
            return []
        difference = abs(expected - actual)
        if difference > self.amount_tolerance:
            return [
                Issue(
                    "amount",
                    str(expected),
                    str(actual),
                    Severity.HIGH,
                    f"amount mismatch: expected {expected}, received {actual} (difference {difference})",
                )
            ]
        return [
            Issue(
                "amount",
                str(expected),
                str(actual),
                Severity.INFO,
                f"amount differs by {difference}, within tolerance {self.amount_tolerance}",
            )
        ]

    def _orphaned_booking(self, booking: Booking) -> PairingResult:
        return PairingResult(
            classification=Classification.ORPHANED,
            booking_id=booking.id,
            booking_number=booking.booking_number,
            booking_state=booking.state,
            correlation_id=booking.payment_reference,
            expected_amount=booking.amount,
            issues=[
                Issue(
                    "payment_reference",
                    booking.payment_reference,
                    None,
                    Severity.HIGH,
                    f"Booking {booking.booking_number} references payment {booking.payment_reference} that does not exist",
                )
            ],
        )

    def _orphaned_event(self, event: UnresolvedEvent) -> PairingResult:
        return PairingResult(
            classification=Classification.ORPHANED,
            correlation_id=event.correlation_id,
            external_transaction_id=event.external_transaction_id,
            issues=[
                Issue(
                    "correlation_id",
                    "known payment",
                    event.correlation_id,
                    Severity.HIGH,
                    f"{event.source} callback could not be applied: {event.detail or event.reason}",
                )
            ],
        )

    # ==================== REPORTS ====================

    async def report(self, start: datetime, end: datetime) -> str:
        """Flat CSV export: summary block followed by one row per pairing."""
        report = await self.run(start, end)
        summary = report.summary

        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow(["RECONCILIATION REPORT SUMMARY"])
        writer.writerow(["Generated At", report.generated_at.isoformat()])
        writer.writerow(["Date Range", f"{start.isoformat()} to {end.isoformat()}"])
        writer.writerow(["Total Pairings", summary["total"]])
        for classification in Classification.ALL:
            writer.writerow([
                classification.replace("_", " ").title(),
                summary["counts"][classification],
                summary["amounts"][classification],
            ])
        writer.writerow([f"Total Amount ({settings.default_currency})", sum(r.amount for r in report.results)])
        writer.writerow([])

        writer.writerow(["TRANSACTION DETAILS"])
        writer.writerow([
            "Booking Number",
            "Booking ID",
            "Payment ID",
            "Correlation ID",
            "Transaction ID",
            "Booking State",
            "Payment State",
            "Expected Amount",
            "Actual Amount",
            "Classification",
            "Issues",
        ])
        for r in report.results:
            writer.writerow([
                r.booking_number or "",
                str(r.booking_id) if r.booking_id else "",
                str(r.payment_id) if r.payment_id else "",
                r.correlation_id or "",
                r.external_transaction_id or "",
                r.booking_state or "",
                r.payment_state or "",
                r.expected_amount if r.expected_amount is not None else "",
                r.actual_amount if r.actual_amount is not None else "",
                r.classification,
                "; ".join(issue.message for issue in r.issues),
            ])

        return output.getvalue()

    async def orphaned(self, start: datetime | None = None, end: datetime | None = None) -> list[PairingResult]:
        """Every pairing whose reference does not resolve, optionally windowed."""
        async with self.session_factory() as db:
            stmt = select(Payment).where(~Payment.booking_id.in_(select(Booking.id)))
            if start is not None:
                stmt = stmt.where(Payment.created_at >= start)
            if end is not None:
                stmt = stmt.where(Payment.created_at < end)
            payments = (await db.execute(stmt.order_by(Payment.created_at))).scalars().all()

            booking_stmt = select(Booking).where(
                Booking.payment_reference.isnot(None),
                ~Booking.id.in_(select(Payment.booking_id)),
            )
            if start is not None:
                booking_stmt = booking_stmt.where(Booking.created_at >= start)
            if end is not None:
                booking_stmt = booking_stmt.where(Booking.created_at < end)
            bookings = (await db.execute(booking_stmt)).scalars().all()

            events = await self._unresolved_events(db, start, end)

        results = [self.classify(p, None) for p in payments]
        results.extend(self._orphaned_booking(b) for b in bookings)
        results.extend(self._orphaned_event(e) for e in events)
        return results

    async def detail(self, booking_id: uuid.UUID, verify: bool = False) -> dict[str, Any]:
        """Full pairing detail for one booking: classification, attempts and audit trail.

        With ``verify`` the latest payment is also checked against its gateway.
        """
        async with self.session_factory() as db:
            booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))

            payments = list(
                (
                    await db.execute(
                        select(Payment).where(Payment.booking_id == booking.id).order_by(Payment.created_at)
                    )
                ).scalars().all()
            )
            payment_ids = [p.id for p in payments]
            attempts = (
                (
                    await db.execute(
                        select(PaymentAttempt)
                        .where(PaymentAttempt.payment_id.in_(payment_ids))
                        .order_by(PaymentAttempt.recorded_at)
                    )
                ).scalars().all()
                if payment_ids
                else []
            )

            trail = list(await self.audit.trail(db, "booking", booking.id))
            for payment in payments:
                trail.extend(await self.audit.trail(db, "payment", payment.id))

        transaction_ids = Counter(p.external_transaction_id for p in payments if p.external_transaction_id)
        if payments:
            pairings = [self.classify(p, booking, payments, transaction_ids) for p in payments]
        elif booking.payment_reference:
            pairings = [self._orphaned_booking(booking)]
        else:
            pairings = []

        result = {
            "booking": {
                "id": str(booking.id),
                "booking_number": booking.booking_number,
                "state": booking.state,
                "amount": str(booking.amount) if booking.amount is not None else None,
                "currency": booking.currency,
                "payment_reference": booking.payment_reference,
                "state_changed_at": booking.state_changed_at.isoformat(),
            },
            "pairings": [p.to_dict() for p in pairings],
            "attempts": [
                {
                    "payment_id": str(a.payment_id),
                    "correlation_id": a.correlation_id,
                    "kind": a.kind,
                    "result_code": a.result_code,
                    "outcome": a.outcome,
                    "amount": str(a.amount) if a.amount is not None else None,
                    "recorded_at": a.recorded_at.isoformat(),
                }
                for a in attempts
            ],
            "audit_trail": [
                {
                    "entity_type": r.entity_type,
                    "entity_id": str(r.entity_id),
                    "sequence": r.sequence,
                    "from_state": r.from_state,
                    "to_state": r.to_state,
                    "actor": r.actor,
                    "reason": r.reason,
                    "correlation_id": r.correlation_id,
                    "flags": r.flags or [],
                    "created_at": r.created_at.isoformat(),
                }
                for r in sorted(trail, key=lambda r: r.created_at)
            ],
        }
        if verify and payments:
            result["verification"] = await self.verify(booking.id)
        return result

    # ==================== VERIFICATION ====================

    async def verify(self, booking_id: uuid.UUID) -> dict[str, Any]:
        """Compare the booking's latest payment with what its gateway reports now.

        Nothing is changed; a mismatch is reported for staff to act on.
        ``match`` is None when the gateway has no outcome for a payment that
        already has one.
        """
        async with self.session_factory() as db:
            booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
            if booking is None:
                raise NotFoundError("Booking", str(booking_id))
            payment = (
                await db.execute(
                    select(Payment)
                    .where(Payment.booking_id == booking.id)
                    .order_by(Payment.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if payment is None:
                raise ValidationError(f"Booking {booking.booking_number} has no payment to verify")
            outcome = (
                await db.execute(
                    select(PaymentAttempt).where(
                        PaymentAttempt.correlation_id == payment.correlation_id,
                        PaymentAttempt.kind == "outcome",
                    )
                )
            ).scalar_one_or_none()

        status = await self.manager.gateways.verify_payment(payment.gateway, payment.correlation_id)
        payment_state = PaymentState(payment.state)
        if not status.settled:
            match = True if payment_state in AWAITING_OUTCOME else None
        elif status.succeeded:
            match = payment_state in (PaymentState.CONFIRMED, PaymentState.REFUNDED)
        else:
            match = payment_state in (PaymentState.FAILED, PaymentState.CANCELLED)

        verification = {
            "booking_id": str(booking.id),
            "payment_id": str(payment.id),
            "correlation_id": payment.correlation_id,
            "gateway": payment.gateway,
            "stored_state": payment.state,
            "stored_result_code": outcome.result_code if outcome else None,
            "gateway_settled": status.settled,
            "gateway_result_code": status.result_code,
            "gateway_result_description": status.result_description,
            "match": match,
            "verified_at": _now().isoformat(),
        }
        if match is False:
            logger.warning(
                f"Gateway disagrees on payment {payment.id}: stored {payment.state}, "
                f"gateway result {status.result_code} ({status.result_description})"
            )
        else:
            logger.info(f"Verified payment {payment.id} against {payment.gateway}: match={match}")
        return verification

    # ==================== REPAIRS ====================

    async def propose_repairs(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Proposed fixes for state mismatches. Nothing is changed."""
        report = await self.run(start, end)
        proposals = []
        for r in report.by_classification(Classification.DISCREPANCY):
            if not any(issue.field == "state" for issue in r.issues):
                continue
            target = derive_target_state(EntityType.PAYMENT, r.payment_state, EntityType.BOOKING)
            held = any(issue.field == "requires_review" for issue in r.issues)
            automatic = (
                target is not None
                and not held
                and target in {s.value for s in allowed_targets(EntityType.BOOKING, r.booking_state)}
            )
            proposals.append({
                "booking_id": str(r.booking_id),
                "booking_number": r.booking_number,
                "payment_id": str(r.payment_id),
                "from_state": r.booking_state,
                "to_state": target,
                "action": "sync_booking" if automatic else "manual_review",
                "reason": next(i.message for i in r.issues if i.field == "state"),
            })
        return proposals

    async def repair(self, booking_id: uuid.UUID, actor: Actor = SYSTEM_ACTOR) -> Booking:
        """Apply the sync repair through the transaction manager."""
        logger.info(f"Reconciliation repair of booking {booking_id} requested by {actor}")
        return await self.manager.sync_booking_to_payment(booking_id, actor, reason="reconciliation repair")
