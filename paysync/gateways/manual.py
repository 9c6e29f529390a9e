"""Manual payment gateway adapter (till/bank transfers verified by staff)."""

import uuid
from decimal import Decimal, InvalidOperation

from paysync.core.exceptions import ValidationError
from paysync.gateways.base import (
    GatewayCallback,
    GatewayType,
    PaymentGateway,
    PaymentResult,
    PaymentStatus,
)


class ManualGateway(PaymentGateway):
    """Manual payment gateway.

    Payment requests always succeed; the outcome arrives later through the
    generic callback endpoint once staff verify the transfer.
    """

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.MANUAL

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        reference_id: str,
        phone_number: str | None,
        description: str,
    ) -> PaymentResult:
        """Create manual payment request (always succeeds)."""
        return PaymentResult(
            success=True,
            correlation_id=f"manual_{uuid.uuid4().hex}",
            raw_response={
                "type": "manual_transfer",
                "status": "pending_verification",
                "reference": reference_id,
                "instructions": "Pay via till/bank transfer and submit the transaction code",
            },
        )

    def parse_callback(self, payload: dict) -> GatewayCallback:
        """Parse the flat callback shape::

            {"correlation_id": ..., "result_code": 0, "result_description": ...,
             "transaction_id": ..., "amount": "2000.00", "payer_reference": ...}
        """
        try:
            correlation_id = str(payload["correlation_id"])
            result_code = int(payload["result_code"])
            amount = Decimal(str(payload["amount"])) if payload.get("amount") is not None else None
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"Malformed callback: {e}") from None

        return GatewayCallback(
            correlation_id=correlation_id,
            result_code=result_code,
            result_description=payload.get("result_description"),
            external_transaction_id=payload.get("transaction_id"),
            amount=amount,
            payer_reference=payload.get("payer_reference"),
        )

    async def verify_payment(self, correlation_id: str) -> PaymentStatus:
        """Manual transfers have no gateway to ask; staff verify them."""
        return PaymentStatus(
            correlation_id=correlation_id,
            result_description="Manual verification required by staff",
        )
