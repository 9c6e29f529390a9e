"""M-Pesa (Daraja) STK push gateway adapter."""

import base64
import logging
import re
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation

import httpx

from paysync.config import settings
from paysync.core.exceptions import PaymentError, ValidationError
from paysync.gateways.base import (
    GatewayCallback,
    GatewayType,
    PaymentGateway,
    PaymentResult,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

# Cached OAuth tokens live for an hour; refresh a little early
TOKEN_TTL_SECONDS = 50 * 60

# result code -> (type, retryable)
RESULT_CODES: dict[int, tuple[str, bool]] = {
    0: ("success", False),
    1: ("insufficient_funds", True),
    1032: ("cancelled_by_user", True),
    1037: ("timeout", True),
    2001: ("invalid_phone", True),
    2006: ("wrong_pin", True),
    2058: ("account_inactive", False),
}


def describe_result_code(code: int) -> tuple[str, bool]:
    return RESULT_CODES.get(code, ("transaction_failed", True))


def format_phone_number(phone: str) -> str:
    """Normalise a Kenyan phone number to 2547XXXXXXXX."""
    cleaned = re.sub(r"[\s\-\(\)]", "", phone).lstrip("+")
    if cleaned.startswith(("07", "01")):
        return "254" + cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    return "254" + cleaned


class MpesaGateway(PaymentGateway):
    """Lipa Na M-Pesa Online (STK push)."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.base_url = SANDBOX_URL if settings.mpesa_sandbox else PRODUCTION_URL
        self._http_client = http_client
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.MPESA

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=30.0)
        return self._http_client

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not settings.mpesa_consumer_key or not settings.mpesa_consumer_secret:
            raise PaymentError("M-Pesa credentials are not configured")

        response = await self.http_client.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(settings.mpesa_consumer_key, settings.mpesa_consumer_secret),
        )
        response.raise_for_status()
        self._token = response.json()["access_token"]
        self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS
        return self._token

    def _password(self, timestamp: str) -> str:
        raw = f"{settings.mpesa_shortcode}{settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        reference_id: str,
        phone_number: str | None,
        description: str,
    ) -> PaymentResult:
        if not phone_number:
            raise ValidationError("M-Pesa payments require a phone number")

        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        phone = format_phone_number(phone_number)
        payload = {
            "BusinessShortCode": settings.mpesa_shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount.to_integral_value()),
            "PartyA": phone,
            "PartyB": settings.mpesa_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": settings.mpesa_callback_url,
            "AccountReference": reference_id,
            "TransactionDesc": description[:13],
        }

        try:
            token = await self._access_token()
            response = await self.http_client.post(
                "/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa STK push failed for {reference_id}: {e}")
            return PaymentResult(success=False, error_message=str(e))

        if str(data.get("ResponseCode")) != "0":
            logger.warning(f"M-Pesa STK push rejected for {reference_id}: {data.get('ResponseDescription')}")
            return PaymentResult(
                success=False,
                error_message=data.get("ResponseDescription") or "STK push failed",
                raw_response=data,
            )

        return PaymentResult(
            success=True,
            correlation_id=data["CheckoutRequestID"],
            raw_response=data,
        )

    def parse_callback(self, payload: dict) -> GatewayCallback:
        """Parse ``Body.stkCallback``.

        CallbackMetadata items (Amount, MpesaReceiptNumber, PhoneNumber) are
        only present on success.
        """
        try:
            callback = payload["Body"]["stkCallback"]
            correlation_id = str(callback["CheckoutRequestID"])
            result_code = int(callback["ResultCode"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed M-Pesa callback: missing {e}") from None

        items = {
            item.get("Name"): item.get("Value")
            for item in (callback.get("CallbackMetadata") or {}).get("Item", [])
            if isinstance(item, dict)
        }

        amount = None
        if items.get("Amount") is not None:
            try:
                amount = Decimal(str(items["Amount"]))
            except InvalidOperation:
                raise ValidationError(f"Malformed M-Pesa callback amount: {items['Amount']!r}") from None

        phone = items.get("PhoneNumber")
        return GatewayCallback(
            correlation_id=correlation_id,
            result_code=result_code,
            result_description=callback.get("ResultDesc"),
            external_transaction_id=items.get("MpesaReceiptNumber"),
            amount=amount,
            payer_reference=str(phone) if phone is not None else None,
        )

    async def verify_payment(self, correlation_id: str) -> PaymentStatus:
        """STK push query for one checkout request.

        Daraja answers a request that is still being processed with an HTTP
        error carrying ``errorCode``; that is reported as unsettled.
        """
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": settings.mpesa_shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_id,
        }

        try:
            token = await self._access_token()
            response = await self.http_client.post(
                "/mpesa/stkpushquery/v1/query",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"M-Pesa STK query failed for {correlation_id}: {e}")
            return PaymentStatus(correlation_id=correlation_id, result_description=f"query failed: {e}")

        if response.is_error or "ResultCode" not in data:
            description = data.get("errorMessage") or data.get("ResponseDescription") or response.reason_phrase
            logger.info(f"M-Pesa STK query for {correlation_id} unsettled: {description}")
            return PaymentStatus(correlation_id=correlation_id, result_description=description, raw_response=data)

        return PaymentStatus(
            correlation_id=correlation_id,
            result_code=int(data["ResultCode"]),
            result_description=data.get("ResultDesc"),
            raw_response=data,
        )
