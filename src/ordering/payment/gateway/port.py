"""Payment gateway port (abstract interface).

The ordering engine talks to the payment provider only through this contract:
it asks for a payment intent at checkout, asks for a refund when a paid order
is cancelled, and asks the provider to vouch for incoming webhook payloads.
Payment outcomes arrive later, out of band, through the webhook.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class PaymentIntent:
    """Result of asking the gateway to start collecting a payment."""

    success: bool
    transaction_id: str | None = None
    client_secret: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request."""

    success: bool
    refund_id: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        order_reference: str,
        idempotency_key: str,
    ) -> PaymentIntent:
        """Open a payment intent for ``amount`` minor units."""
        ...

    @abstractmethod
    def request_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: str,
    ) -> RefundResult:
        """Refund a captured payment."""
        ...

    @abstractmethod
    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> bool:
        """Verify that a webhook payload is authentically from the gateway."""
        ...
