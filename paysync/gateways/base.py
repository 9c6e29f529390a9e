"""Base payment gateway interface.

All gateway adapters must implement this interface.
Business logic should NOT live in adapters - only gateway communication
and translating callbacks into :class:`GatewayCallback`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment gateways."""

    MPESA = "mpesa"
    MANUAL = "manual"


@dataclass
class PaymentResult:
    """Result of a payment request."""

    success: bool
    correlation_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class GatewayCallback:
    """The fields of a gateway callback the engine depends on."""

    correlation_id: str
    result_code: int
    result_description: str | None = None
    external_transaction_id: str | None = None
    amount: Decimal | None = None
    payer_reference: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass
class PaymentStatus:
    """What the gateway currently reports for one payment request.

    ``result_code`` is None while the gateway has no final outcome.
    """

    correlation_id: str
    result_code: int | None = None
    result_description: str | None = None
    raw_response: dict | None = None

    @property
    def settled(self) -> bool:
        return self.result_code is not None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""
        pass

    @abstractmethod
    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        reference_id: str,
        phone_number: str | None,
        description: str,
    ) -> PaymentResult:
        """Send a payment request to the payer.

        Args:
            amount: Amount in major currency units (KES)
            currency: Currency code
            reference_id: Internal reference (booking number)
            phone_number: Payer phone/account reference
            description: Payment description

        Returns:
            PaymentResult carrying the correlation id the callback will echo
        """
        pass

    @abstractmethod
    def parse_callback(self, payload: dict) -> GatewayCallback:
        """Translate a raw callback body.

        Raises:
            ValidationError: If the payload is missing required fields
        """
        pass

    @abstractmethod
    async def verify_payment(self, correlation_id: str) -> PaymentStatus:
        """Ask the gateway for the current status of a payment request.

        Args:
            correlation_id: Id returned by :meth:`create_payment`

        Returns:
            PaymentStatus; unsettled when the gateway has no outcome yet
        """
        pass
