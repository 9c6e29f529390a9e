#!/usr/bin/env python3
"""
Complete booking and payment flow script.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the backend.

Tokens are minted locally with the shared JWT secret (JWT_SECRET_KEY must
match the server's).

Usage:
    python scripts/flow_book_and_pay.py --amount 2000
    python scripts/flow_book_and_pay.py --amount 2000 --callback-amount 1999.50 --skip-complete

Flow:
    1. Client requests booking (amount locked)
    2. Provider approves
    3. Client initiates payment (manual gateway)
    4. Gateway callback confirms payment
    5. Provider marks ready, in progress, completed
    6. Staff runs reconciliation for the booking
"""

import argparse
import json
import sys
import uuid
from datetime import UTC, datetime, timedelta

import httpx

from paysync.core.security import create_access_token

BASE_URL = "http://localhost:8000"


def api_request(token: str | None, method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make (optionally authenticated) API request."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    url = f"{BASE_URL}{endpoint}"

    if method == "GET":
        response = httpx.get(url, headers=headers, timeout=10.0, follow_redirects=True)
    elif method == "POST":
        response = httpx.post(url, headers=headers, json=data or {}, timeout=10.0, follow_redirects=True)
    else:
        raise ValueError(f"Unknown method: {method}")

    return {"status": response.status_code, "data": response.json() if response.text else {}}


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_result(result: dict, fields: list[str] | None = None):
    """Print result, optionally filtering fields."""
    if result["status"] >= 400:
        print(f"ERROR ({result['status']}): {json.dumps(result['data'], indent=2)}")
        return False

    print(f"Status: {result['status']}")
    if fields:
        filtered = {k: result["data"].get(k) for k in fields if k in result["data"]}
        print(json.dumps(filtered, indent=2))
    else:
        print(json.dumps(result["data"], indent=2))
    return True


def main():
    parser = argparse.ArgumentParser(description="Complete booking and payment flow")
    parser.add_argument("--amount", default="2000.00", help="Booking amount (KES)")
    parser.add_argument("--callback-amount", default=None, help="Amount the callback reports (defaults to --amount)")
    parser.add_argument("--skip-complete", action="store_true", help="Stop after payment confirmation")
    args = parser.parse_args()

    client_id = str(uuid.uuid4())
    provider_id = str(uuid.uuid4())
    client_token = create_access_token(client_id, "client")
    provider_token = create_access_token(provider_id, "provider")
    staff_token = create_access_token("ops", "staff")

    # Step 1: Request booking
    print_step(1, "Request booking (as client)")
    booking_result = api_request(client_token, "POST", "/api/v1/bookings", {
        "provider_id": provider_id,
        "scheduled_at": (datetime.now(UTC) + timedelta(days=2)).isoformat(),
        "amount": args.amount,
    })
    if not print_result(booking_result, ["id", "booking_number", "amount", "state"]):
        sys.exit(1)

    booking_id = booking_result["data"]["id"]
    booking_number = booking_result["data"]["booking_number"]
    print(f"\nBooking requested: {booking_number}")

    # Step 2: Approve
    print_step(2, "Approve booking (as provider)")
    if not print_result(api_request(provider_token, "POST", f"/api/v1/bookings/{booking_id}/approve"), ["state"]):
        sys.exit(1)

    # Step 3: Initiate payment
    print_step(3, "Initiate payment")
    payment_result = api_request(client_token, "POST", "/api/v1/payments/initiate", {
        "booking_id": booking_id,
        "gateway": "manual",
    })
    if not print_result(payment_result, ["payment_id", "correlation_id", "state"]):
        sys.exit(1)

    payment_id = payment_result["data"]["payment_id"]
    correlation_id = payment_result["data"]["correlation_id"]

    # Step 4: Simulate the gateway callback
    print_step(4, "Gateway callback")
    callback_result = api_request(None, "POST", "/api/v1/webhooks/callback", {
        "correlation_id": correlation_id,
        "result_code": 0,
        "result_description": "The service request is processed successfully.",
        "transaction_id": f"SIM{uuid.uuid4().hex[:7].upper()}",
        "amount": args.callback_amount or args.amount,
    })
    if not print_result(callback_result):
        sys.exit(1)

    payment = api_request(client_token, "GET", f"/api/v1/payments/{payment_id}")
    print_result(payment, ["state", "amount", "received_amount", "amount_flagged", "requires_review"])

    if not args.skip_complete:
        # Step 5: Run the session
        for step, action in enumerate(("mark-ready", "mark-in-progress", "mark-completed"), start=5):
            print_step(step, f"{action} (as provider)")
            if not print_result(api_request(provider_token, "POST", f"/api/v1/bookings/{booking_id}/{action}"), ["state"]):
                sys.exit(1)

    # Final: reconciliation detail
    print_step(8, "Reconciliation detail (as staff)")
    detail = api_request(staff_token, "GET", f"/api/v1/reconciliation/bookings/{booking_id}")
    if not print_result(detail, ["pairings"]):
        sys.exit(1)

    print("\n" + "="*60)
    print("FLOW COMPLETE")
    print("="*60)
    print(f"Booking:        {booking_number}")
    print(f"Correlation ID: {correlation_id}")


if __name__ == "__main__":
    main()
