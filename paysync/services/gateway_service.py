"""Payment gateway service.

Routes payment operations to the appropriate gateway adapter.
No business logic here - only gateway coordination.
"""

from paysync.config import settings
from paysync.gateways.base import (
    GatewayCallback,
    GatewayType,
    PaymentGateway,
    PaymentResult,
    PaymentStatus,
)
from paysync.gateways.manual import ManualGateway
from paysync.gateways.mpesa import MpesaGateway


def _is_production() -> bool:
    """Check if running in production environment."""
    return settings.environment == "production"


def _assert_live_gateway_allowed(gateway_type: GatewayType) -> None:
    """Block live M-Pesa requests outside production unless sandboxed.

    Raises:
        RuntimeError: If attempting a live gateway operation outside production
    """
    if gateway_type == GatewayType.MPESA and not settings.mpesa_sandbox and not _is_production():
        raise RuntimeError(
            f"Cannot execute live {gateway_type.value} gateway operations "
            f"in {settings.environment} environment. Set ENVIRONMENT=production or MPESA_SANDBOX=true."
        )


class GatewayService:
    """Service for managing payment gateway operations."""

    def __init__(self, gateways: dict[GatewayType, PaymentGateway] | None = None):
        self._gateways: dict[GatewayType, PaymentGateway] = dict(gateways or {})

    def get_gateway(self, gateway_type: str | GatewayType) -> PaymentGateway:
        """Get or create gateway instance."""
        if isinstance(gateway_type, str):
            try:
                gateway_type = GatewayType(gateway_type)
            except ValueError:
                gateway_type = GatewayType.MANUAL

        if gateway_type not in self._gateways:
            if gateway_type == GatewayType.MPESA:
                self._gateways[gateway_type] = MpesaGateway()
            else:
                self._gateways[gateway_type] = ManualGateway()

        return self._gateways[gateway_type]

    async def create_payment(
        self,
        gateway_type: str | GatewayType,
        amount,
        currency: str,
        reference_id: str,
        phone_number: str | None,
        description: str,
    ) -> PaymentResult:
        """Request a payment via the specified gateway."""
        gateway = self.get_gateway(gateway_type)
        _assert_live_gateway_allowed(gateway.gateway_type)
        return await gateway.create_payment(
            amount=amount,
            currency=currency,
            reference_id=reference_id,
            phone_number=phone_number,
            description=description,
        )

    async def verify_payment(self, gateway_type: str | GatewayType, correlation_id: str) -> PaymentStatus:
        """Query the gateway for the current status of a payment request."""
        gateway = self.get_gateway(gateway_type)
        _assert_live_gateway_allowed(gateway.gateway_type)
        return await gateway.verify_payment(correlation_id)

    def parse_callback(self, gateway_type: str | GatewayType, payload: dict) -> GatewayCallback:
        """Translate a raw callback body from the given gateway."""
        return self.get_gateway(gateway_type).parse_callback(payload)


# Singleton instance
gateway_service = GatewayService()
