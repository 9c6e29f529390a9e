"""Tests for the reconciliation engine."""

import csv
import io
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from conftest import PROVIDER_ID, REQUESTER_ID, outcome_for

from paysync.core.exceptions import AmountDiscrepancy, NotFoundError, ValidationError
from paysync.gateways.base import GatewayType, PaymentStatus
from paysync.gateways.manual import ManualGateway
from paysync.models.audit import UnresolvedEvent
from paysync.models.booking import Booking
from paysync.models.payment import Payment
from paysync.services.reconciliation_service import Classification, Severity


def _window() -> tuple[datetime, datetime]:
    now = datetime.now(UTC)
    return now - timedelta(days=1), now + timedelta(hours=1)


async def _seed(session_factory, booking_state: str | None, payment_state: str, **overrides) -> tuple[uuid.UUID, uuid.UUID]:
    """Insert a booking/payment pair directly, bypassing the manager."""
    booking_id = overrides.get("booking_id", uuid.uuid4())
    correlation_id = overrides.get("correlation_id", f"manual_{uuid.uuid4().hex}")
    payment_id = uuid.uuid4()
    async with session_factory() as db:
        if booking_state is not None:
            db.add(
                Booking(
                    id=booking_id,
                    booking_number=f"PS-{uuid.uuid4().hex[:6].upper()}",
                    requester_id=REQUESTER_ID,
                    provider_id=PROVIDER_ID,
                    scheduled_at=datetime.now(UTC) + timedelta(days=1),
                    amount=overrides.get("booking_amount", Decimal("2000.00")),
                    state=booking_state,
                    payment_reference=correlation_id,
                )
            )
        db.add(
            Payment(
                id=payment_id,
                booking_id=booking_id,
                correlation_id=correlation_id,
                amount=overrides.get("payment_amount", Decimal("2000.00")),
                gateway="manual",
                state=payment_state,
                external_transaction_id=overrides.get("external_transaction_id"),
            )
        )
        await db.commit()
    return booking_id, payment_id


class TestClassification:
    async def test_confirmed_payment_on_cancelled_booking_is_discrepancy(self, session_factory, reconciliation) -> None:
        booking_id, _ = await _seed(session_factory, "cancelled", "confirmed")

        report = await reconciliation.run(*_window())

        [result] = report.results
        assert result.classification == Classification.DISCREPANCY
        assert result.booking_id == booking_id
        state_issue = next(i for i in result.issues if i.field == "state")
        assert state_issue.message == "state mismatch: Payment confirmed but Booking cancelled"
        assert state_issue.severity == Severity.HIGH

    async def test_payment_for_missing_booking_is_orphaned(self, session_factory, reconciliation) -> None:
        missing = uuid.uuid4()
        _, payment_id = await _seed(session_factory, None, "confirmed", booking_id=missing, correlation_id="X")

        report = await reconciliation.run(*_window())

        [result] = report.results
        assert result.classification == Classification.ORPHANED
        assert result.payment_id == payment_id
        assert result.correlation_id == "X"
        assert str(missing) in result.issues[0].message

        orphans = await reconciliation.orphaned()
        assert [o.payment_id for o in orphans] == [payment_id]

    @pytest.mark.parametrize("fail_first", [False, True])
    async def test_staff_cancelled_payment_stays_consistent(
        self, manager, reconciliation, initiated_payment, staff_actor, fail_first: bool
    ) -> None:
        booking, payment = await initiated_payment()
        if fail_first:
            await manager.apply_payment_outcome(outcome_for(payment, result_code=1032))

        await manager.request_payment_transition(payment.id, "cancelled", staff_actor, "client changed phone")

        report = await reconciliation.run(*_window())
        [result] = report.results
        assert result.payment_state == "cancelled"
        assert result.booking_state == "payment_pending"
        assert result.classification == Classification.MATCHED
        assert await reconciliation.propose_repairs(*_window()) == []

        retried = await manager.initiate_payment(booking.id, staff_actor, gateway="manual")
        assert retried.id != payment.id
        assert retried.state == "initiated"

    async def test_recent_initiated_payment_is_pending_verification(
        self, session_factory, reconciliation, initiated_payment
    ) -> None:
        booking, payment = await initiated_payment()
        start, end = _window()

        report = await reconciliation.run(start, end, now=datetime.now(UTC) + timedelta(minutes=10))

        [result] = report.results
        assert result.classification == Classification.PENDING_VERIFICATION
        assert result.booking_state == "payment_pending"
        assert all(i.severity == Severity.INFO for i in result.issues)

    async def test_initiated_payment_past_window_is_unmatched(self, reconciliation, initiated_payment) -> None:
        await initiated_payment()
        start, end = _window()

        report = await reconciliation.run(start, end, now=datetime.now(UTC) + timedelta(minutes=45))

        [result] = report.results
        assert result.classification == Classification.UNMATCHED

    async def test_consistent_pair_is_matched(self, manager, reconciliation, initiated_payment) -> None:
        _, payment = await initiated_payment()
        await manager.apply_payment_outcome(outcome_for(payment))

        report = await reconciliation.run(*_window())

        [result] = report.results
        assert result.classification == Classification.MATCHED
        assert result.issues == []
        assert report.summary["counts"][Classification.MATCHED] == 1
        assert report.summary["amounts"][Classification.MATCHED] == "2000.00"

    async def test_within_tolerance_stays_matched_with_info(self, manager, reconciliation, initiated_payment) -> None:
        _, payment = await initiated_payment(Decimal("2000.00"))
        await manager.apply_payment_outcome(outcome_for(payment, amount=Decimal("1999.50")))

        report = await reconciliation.run(*_window())

        [result] = report.results
        assert result.classification == Classification.MATCHED
        assert [(i.field, i.severity) for i in result.issues] == [("amount", Severity.INFO)]
        assert result.actual_amount == Decimal("1999.50")

    async def test_held_payment_is_discrepancy(self, manager, reconciliation, initiated_payment) -> None:
        _, payment = await initiated_payment(Decimal("2000.00"))
        with pytest.raises(AmountDiscrepancy):
            await manager.apply_payment_outcome(outcome_for(payment, amount=Decimal("1900.00")))

        report = await reconciliation.run(*_window())

        [result] = report.results
        assert result.classification == Classification.DISCREPANCY
        assert {i.field for i in result.issues} >= {"amount", "requires_review"}

    async def test_duplicate_transaction_id_is_flagged(self, session_factory, reconciliation) -> None:
        await _seed(session_factory, "paid", "confirmed", external_transaction_id="QKX12ABC")
        await _seed(session_factory, "paid", "confirmed", external_transaction_id="QKX12ABC")

        report = await reconciliation.run(*_window())

        assert [r.classification for r in report.results] == [Classification.DISCREPANCY] * 2
        assert all(any(i.field == "external_transaction_id" for i in r.issues) for r in report.results)

    async def test_superseded_payment_is_not_state_checked(self, session_factory, reconciliation) -> None:
        booking_id, _ = await _seed(session_factory, "paid", "cancelled")
        async with session_factory() as db:
            db.add(
                Payment(
                    id=uuid.uuid4(),
                    booking_id=booking_id,
                    correlation_id=f"manual_{uuid.uuid4().hex}",
                    amount=Decimal("2000.00"),
                    gateway="manual",
                    state="confirmed",
                    created_at=datetime.now(UTC) + timedelta(seconds=1),
                )
            )
            await db.commit()

        report = await reconciliation.run(*_window())

        assert {r.classification for r in report.results} == {Classification.MATCHED}

    async def test_booking_with_dangling_reference_is_orphaned(self, session_factory, reconciliation) -> None:
        async with session_factory() as db:
            db.add(
                Booking(
                    id=uuid.uuid4(),
                    booking_number="PS-DANGLE",
                    requester_id=REQUESTER_ID,
                    provider_id=PROVIDER_ID,
                    scheduled_at=datetime.now(UTC),
                    amount=Decimal("2000.00"),
                    state="payment_pending",
                    payment_reference="ws_CO_lost",
                )
            )
            await db.commit()

        report = await reconciliation.run(*_window())

        [result] = report.results
        assert result.classification == Classification.ORPHANED
        assert result.booking_number == "PS-DANGLE"
        assert result.issues[0].field == "payment_reference"

    async def test_unresolved_callback_is_orphaned(self, session_factory, reconciliation) -> None:
        async with session_factory() as db:
            db.add(
                UnresolvedEvent(
                    source="mpesa",
                    reason="unresolved_reference",
                    correlation_id="ws_CO_unknown",
                    detail="No payment matches reference 'ws_CO_unknown'",
                )
            )
            await db.commit()

        orphans = await reconciliation.orphaned()

        [result] = orphans
        assert result.classification == Classification.ORPHANED
        assert result.correlation_id == "ws_CO_unknown"


class TestReports:
    async def test_csv_has_summary_and_details(self, session_factory, reconciliation) -> None:
        await _seed(session_factory, "cancelled", "confirmed")
        await _seed(session_factory, "paid", "confirmed")

        csv_data = await reconciliation.report(*_window())

        rows = list(csv.reader(io.StringIO(csv_data)))
        assert rows[0] == ["RECONCILIATION REPORT SUMMARY"]
        assert rows[3] == ["Total Pairings", "2"]
        assert ["Matched", "1", "2000.00"] in rows
        assert ["Discrepancy", "1", "2000.00"] in rows
        header_index = rows.index(["TRANSACTION DETAILS"]) + 1
        assert rows[header_index][0] == "Booking Number"
        details = rows[header_index + 1 :]
        assert len(details) == 2
        assert any("state mismatch: Payment confirmed but Booking cancelled" in row[-1] for row in details)

    async def test_detail_includes_attempts_and_trail(self, manager, reconciliation, initiated_payment) -> None:
        booking, payment = await initiated_payment()
        await manager.apply_payment_outcome(outcome_for(payment))

        detail = await reconciliation.detail(booking.id)

        assert detail["booking"]["state"] == "paid"
        assert [p["classification"] for p in detail["pairings"]] == [Classification.MATCHED]
        assert [a["kind"] for a in detail["attempts"]] == ["initiated", "outcome"]
        booking_states = [r["to_state"] for r in detail["audit_trail"] if r["entity_type"] == "booking"]
        assert booking_states == ["requested", "approved", "payment_pending", "paid"]

    async def test_detail_of_unknown_booking(self, reconciliation) -> None:
        with pytest.raises(NotFoundError):
            await reconciliation.detail(uuid.uuid4())


class TestRepairs:
    async def test_proposals_distinguish_sync_from_manual_review(self, session_factory, reconciliation) -> None:
        drifted_id, _ = await _seed(session_factory, "payment_pending", "confirmed")
        cancelled_id, _ = await _seed(session_factory, "cancelled", "confirmed")

        proposals = {p["booking_id"]: p for p in await reconciliation.propose_repairs(*_window())}

        assert proposals[str(drifted_id)]["action"] == "sync_booking"
        assert proposals[str(drifted_id)]["to_state"] == "paid"
        assert proposals[str(cancelled_id)]["action"] == "manual_review"

    async def test_repair_goes_through_manager(self, session_factory, reconciliation, staff_actor) -> None:
        drifted_id, _ = await _seed(session_factory, "payment_pending", "confirmed")

        repaired = await reconciliation.repair(drifted_id, staff_actor)

        assert repaired.state == "paid"
        report = await reconciliation.run(*_window())
        assert report.results[0].classification == Classification.MATCHED


class SettledGateway(ManualGateway):
    """Manual gateway that reports a fixed outcome for every query."""

    def __init__(self, result_code: int) -> None:
        self.result_code = result_code

    async def verify_payment(self, correlation_id: str) -> PaymentStatus:
        return PaymentStatus(correlation_id, self.result_code, "reported by gateway")


class TestVerification:
    async def test_open_payment_awaiting_gateway(self, reconciliation, initiated_payment) -> None:
        booking, payment = await initiated_payment()

        verification = await reconciliation.verify(booking.id)

        assert verification["payment_id"] == str(payment.id)
        assert verification["gateway_settled"] is False
        assert verification["match"] is True

    async def test_gateway_disagreeing_with_stored_outcome(
        self, manager, gateways, reconciliation, initiated_payment
    ) -> None:
        booking, payment = await initiated_payment()
        await manager.apply_payment_outcome(outcome_for(payment))
        gateways._gateways[GatewayType.MANUAL] = SettledGateway(result_code=1032)

        detail = await reconciliation.detail(booking.id, verify=True)

        verification = detail["verification"]
        assert verification["stored_state"] == "confirmed"
        assert verification["stored_result_code"] == 0
        assert verification["gateway_result_code"] == 1032
        assert verification["match"] is False

    async def test_gateway_agreeing_with_stored_outcome(
        self, manager, gateways, reconciliation, initiated_payment
    ) -> None:
        booking, payment = await initiated_payment()
        await manager.apply_payment_outcome(outcome_for(payment))
        gateways._gateways[GatewayType.MANUAL] = SettledGateway(result_code=0)

        assert (await reconciliation.verify(booking.id))["match"] is True

    async def test_booking_without_payment(self, reconciliation, approved_booking) -> None:
        booking = await approved_booking()

        with pytest.raises(ValidationError):
            await reconciliation.verify(booking.id)

        assert "verification" not in await reconciliation.detail(booking.id, verify=True)
