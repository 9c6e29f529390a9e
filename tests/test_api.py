"""HTTP tests for the booking, payment, webhook and reconciliation routes."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from conftest import CALLBACK_TOKEN, PROVIDER_ID, REQUESTER_ID, auth_headers
from sqlalchemy import event, func, select
from sqlalchemy.exc import SQLAlchemyError

from paysync.core.exceptions import COARSE_MESSAGE
from paysync.models.audit import UnresolvedEvent
from paysync.models.booking import Booking
from paysync.models.payment import PaymentAttempt

API = "/api/v1"
ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


async def _create_booking(api_client, client_actor, amount: str = "2000.00") -> dict:
    response = await api_client.post(
        f"{API}/bookings",
        json={
            "provider_id": str(PROVIDER_ID),
            "scheduled_at": (datetime.now(UTC) + timedelta(days=2)).isoformat(),
            "amount": amount,
        },
        headers=auth_headers(client_actor),
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _approved_and_initiated(api_client, client_actor, provider_actor) -> tuple[dict, dict]:
    booking = await _create_booking(api_client, client_actor)
    response = await api_client.post(
        f"{API}/bookings/{booking['id']}/approve", headers=auth_headers(provider_actor)
    )
    assert response.status_code == 200, response.text

    response = await api_client.post(
        f"{API}/payments/initiate",
        json={"booking_id": booking["id"], "gateway": "manual"},
        headers=auth_headers(client_actor),
    )
    assert response.status_code == 201, response.text
    return booking, response.json()


def _callback(correlation_id: str, amount: str = "2000.00", result_code: int = 0) -> dict:
    return {
        "correlation_id": correlation_id,
        "result_code": result_code,
        "result_description": "Processed",
        "transaction_id": f"TX{uuid.uuid4().hex[:8].upper()}",
        "amount": amount,
    }


async def _post_callback(api_client, payload: dict, token: str | None = CALLBACK_TOKEN):
    headers = {"X-Callback-Token": token} if token else {}
    return await api_client.post(f"{API}/webhooks/callback", json=payload, headers=headers)


class TestHealth:
    async def test_health_check(self, api_client) -> None:
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers


class TestBookingRoutes:
    async def test_create_and_get_booking(self, api_client, client_actor) -> None:
        booking = await _create_booking(api_client, client_actor)

        assert booking["state"] == "requested"
        assert booking["requester_id"] == str(REQUESTER_ID)
        assert Decimal(booking["amount"]) == Decimal("2000.00")

        response = await api_client.get(f"{API}/bookings/{booking['id']}", headers=auth_headers(client_actor))
        assert response.status_code == 200
        assert response.json()["booking_number"] == booking["booking_number"]

    async def test_other_clients_cannot_see_booking(self, api_client, client_actor) -> None:
        booking = await _create_booking(api_client, client_actor)
        stranger = type(client_actor)(id=str(uuid.uuid4()), role="client")

        response = await api_client.get(f"{API}/bookings/{booking['id']}", headers=auth_headers(stranger))

        assert response.status_code == 404

    async def test_list_accepts_legacy_state_label(self, api_client, client_actor) -> None:
        await _create_booking(api_client, client_actor)

        response = await api_client.get(
            f"{API}/bookings", params={"state": "Pending Approval"}, headers=auth_headers(client_actor)
        )

        assert response.status_code == 200
        assert response.json()["total"] == 1

    async def test_client_cannot_approve(self, api_client, client_actor) -> None:
        booking = await _create_booking(api_client, client_actor)

        response = await api_client.post(f"{API}/bookings/{booking['id']}/approve", headers=auth_headers(client_actor))

        assert response.status_code == 403

    async def test_unknown_action_is_not_found(self, api_client, client_actor, staff_actor) -> None:
        booking = await _create_booking(api_client, client_actor)

        response = await api_client.post(f"{API}/bookings/{booking['id']}/archive", headers=auth_headers(staff_actor))

        assert response.status_code == 404

    async def test_video_event_is_refused(self, api_client, client_actor, provider_actor) -> None:
        booking, _ = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await api_client.post(
            f"{API}/bookings/{booking['id']}/video-events",
            json={"event": "ended", "target_state": "completed"},
            headers=auth_headers(provider_actor),
        )

        assert response.status_code == 403
        assert response.json() == {"detail": COARSE_MESSAGE, "code": "authority_violation"}

    async def test_video_access_follows_booking_state(self, api_client, client_actor, provider_actor) -> None:
        booking, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await api_client.get(
            f"{API}/bookings/{booking['id']}/video-access", headers=auth_headers(client_actor)
        )
        assert response.json()["can_join"] is False

        await _post_callback(api_client, _callback(payment["correlation_id"]))
        await api_client.post(f"{API}/bookings/{booking['id']}/mark-ready", headers=auth_headers(provider_actor))

        response = await api_client.get(
            f"{API}/bookings/{booking['id']}/video-access", headers=auth_headers(client_actor)
        )
        assert response.json()["can_join"] is True


class TestErrorRendering:
    async def test_client_gets_coarse_message(self, api_client, client_actor, provider_actor) -> None:
        booking = await _create_booking(api_client, client_actor)
        await api_client.post(f"{API}/bookings/{booking['id']}/cancel", headers=auth_headers(client_actor))

        response = await api_client.post(f"{API}/bookings/{booking['id']}/cancel", headers=auth_headers(client_actor))

        assert response.status_code == 409
        assert response.json() == {"detail": COARSE_MESSAGE, "code": "invalid_transition"}

    async def test_staff_gets_full_diagnostic(self, api_client, client_actor, staff_actor) -> None:
        booking = await _create_booking(api_client, client_actor)
        await api_client.post(f"{API}/bookings/{booking['id']}/cancel", headers=auth_headers(staff_actor))

        response = await api_client.post(f"{API}/bookings/{booking['id']}/approve", headers=auth_headers(staff_actor))

        assert response.status_code == 409
        body = response.json()
        assert "cancelled → approved" in body["detail"]
        assert body["diagnostic"]["current_state"] == "cancelled"
        assert body["diagnostic"]["requested_state"] == "approved"
        assert body["diagnostic"]["allowed"] == []


class TestWebhooks:
    async def test_callback_pays_booking(self, api_client, client_actor, provider_actor) -> None:
        booking, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await _post_callback(api_client, _callback(payment["correlation_id"]))

        assert response.status_code == 200
        assert response.json() == ACK
        booking_response = await api_client.get(f"{API}/bookings/{booking['id']}", headers=auth_headers(client_actor))
        assert booking_response.json()["state"] == "paid"

    async def test_duplicate_callback_is_acknowledged_once(
        self, api_client, session_factory, client_actor, provider_actor
    ) -> None:
        _, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)
        payload = _callback(payment["correlation_id"])

        first = await _post_callback(api_client, payload)
        second = await _post_callback(api_client, payload)

        assert first.content == second.content
        async with session_factory() as db:
            count = (
                await db.execute(
                    select(func.count()).select_from(PaymentAttempt).where(PaymentAttempt.kind == "outcome")
                )
            ).scalar_one()
        assert count == 1

    async def test_unknown_reference_is_acknowledged_and_queued(self, api_client, session_factory) -> None:
        response = await _post_callback(api_client, _callback("manual_does_not_exist"))

        assert response.status_code == 200
        assert response.json() == ACK
        async with session_factory() as db:
            events = (await db.execute(select(UnresolvedEvent))).scalars().all()
        assert [(e.reason, e.correlation_id) for e in events] == [("unresolved_reference", "manual_does_not_exist")]

    async def test_amount_hold_is_acknowledged(self, api_client, client_actor, provider_actor, staff_actor) -> None:
        _, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await _post_callback(api_client, _callback(payment["correlation_id"], amount="1900.00"))

        assert response.status_code == 200
        payment_response = await api_client.get(
            f"{API}/payments/{payment['payment_id']}", headers=auth_headers(staff_actor)
        )
        assert payment_response.json()["requires_review"] is True
        assert payment_response.json()["state"] == "initiated"

    async def test_persistence_failure_asks_gateway_to_retry(self, api_client, client_actor, provider_actor) -> None:
        _, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)

        def _fail(mapper, connection, target):
            raise SQLAlchemyError("injected")

        event.listen(Booking, "before_update", _fail)
        try:
            response = await _post_callback(api_client, _callback(payment["correlation_id"]))
        finally:
            event.remove(Booking, "before_update", _fail)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert response.json()["ResultCode"] == 1

        retry = await _post_callback(api_client, _callback(payment["correlation_id"]))
        assert retry.json() == ACK

    async def test_bad_token_is_rejected(self, api_client) -> None:
        response = await _post_callback(api_client, _callback("manual_x"), token="wrong")

        assert response.status_code == 401

    async def test_malformed_payload_is_rejected(self, api_client) -> None:
        response = await _post_callback(api_client, {"result_code": 0})

        assert response.status_code == 422


class TestPaymentRoutes:
    async def test_client_cannot_pay_for_someone_else(self, api_client, client_actor, provider_actor) -> None:
        booking = await _create_booking(api_client, client_actor)
        await api_client.post(f"{API}/bookings/{booking['id']}/approve", headers=auth_headers(provider_actor))
        stranger = type(client_actor)(id=str(uuid.uuid4()), role="client")

        response = await api_client.post(
            f"{API}/payments/initiate",
            json={"booking_id": booking["id"], "gateway": "manual"},
            headers=auth_headers(stranger),
        )

        assert response.status_code == 422

    async def test_refund_is_idempotent_per_key(self, api_client, client_actor, provider_actor, staff_actor) -> None:
        booking, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)
        await _post_callback(api_client, _callback(payment["correlation_id"]))
        headers = {**auth_headers(staff_actor), "Idempotency-Key": "refund-1"}

        first = await api_client.post(
            f"{API}/payments/{payment['payment_id']}/refund", json={"reason": "provider unavailable"}, headers=headers
        )
        second = await api_client.post(
            f"{API}/payments/{payment['payment_id']}/refund", json={"reason": "provider unavailable"}, headers=headers
        )

        assert first.status_code == 200
        assert first.json() == second.json()
        assert first.json()["state"] == "refunded"
        booking_response = await api_client.get(f"{API}/bookings/{booking['id']}", headers=auth_headers(staff_actor))
        assert booking_response.json()["state"] == "cancelled"

    async def test_client_cannot_refund(self, api_client, client_actor, provider_actor) -> None:
        _, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await api_client.post(
            f"{API}/payments/{payment['payment_id']}/refund",
            json={"reason": "changed my mind"},
            headers=auth_headers(client_actor),
        )

        assert response.status_code == 403

    async def test_review_approval(self, api_client, client_actor, provider_actor, staff_actor) -> None:
        booking, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)
        await _post_callback(api_client, _callback(payment["correlation_id"], amount="1900.00"))

        response = await api_client.post(
            f"{API}/payments/{payment['payment_id']}/review",
            json={"approve": True, "reason": "balance paid at reception"},
            headers=auth_headers(staff_actor),
        )

        assert response.status_code == 200
        assert response.json()["state"] == "confirmed"


class TestReconciliationRoutes:
    async def test_run_requires_staff(self, api_client, client_actor) -> None:
        response = await api_client.get(f"{API}/reconciliation/run", headers=auth_headers(client_actor))

        assert response.status_code == 403

    async def test_run_and_report(self, api_client, client_actor, provider_actor, staff_actor) -> None:
        _, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)
        await _post_callback(api_client, _callback(payment["correlation_id"]))

        response = await api_client.get(f"{API}/reconciliation/run", headers=auth_headers(staff_actor))

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["total"] == 1
        assert summary["counts"]["matched"] == 1

        report = await api_client.get(f"{API}/reconciliation/report", headers=auth_headers(staff_actor))
        assert report.status_code == 200
        assert report.headers["content-type"].startswith("text/csv")
        assert report.text.startswith("RECONCILIATION REPORT SUMMARY")

    async def test_invalid_window(self, api_client, staff_actor) -> None:
        now = datetime.now(UTC)

        response = await api_client.get(
            f"{API}/reconciliation/run",
            params={"start": now.isoformat(), "end": (now - timedelta(hours=1)).isoformat()},
            headers=auth_headers(staff_actor),
        )

        assert response.status_code == 422

    async def test_unknown_callback_shows_as_orphaned(self, api_client, staff_actor) -> None:
        await _post_callback(api_client, _callback("manual_ghost"))

        response = await api_client.get(f"{API}/reconciliation/orphaned", headers=auth_headers(staff_actor))

        assert response.status_code == 200
        assert [o["correlation_id"] for o in response.json()] == ["manual_ghost"]

    async def test_pairing_detail(self, api_client, client_actor, provider_actor, staff_actor) -> None:
        booking, _ = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await api_client.get(
            f"{API}/reconciliation/bookings/{booking['id']}", headers=auth_headers(staff_actor)
        )

        assert response.status_code == 200
        assert response.json()["booking"]["state"] == "payment_pending"
        assert len(response.json()["attempts"]) == 1

    async def test_verify_pairing_against_gateway(self, api_client, client_actor, provider_actor, staff_actor) -> None:
        booking, payment = await _approved_and_initiated(api_client, client_actor, provider_actor)

        response = await api_client.post(
            f"{API}/reconciliation/bookings/{booking['id']}/verify", headers=auth_headers(staff_actor)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["correlation_id"] == payment["correlation_id"]
        assert body["gateway_settled"] is False
        assert body["match"] is True

        forbidden = await api_client.post(
            f"{API}/reconciliation/bookings/{booking['id']}/verify", headers=auth_headers(client_actor)
        )
        assert forbidden.status_code == 403
