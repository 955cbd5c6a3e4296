"""Configurable fake payment gateway for development and testing.

Simulates the provider without any external calls. It can be switched to
fail at runtime, and it records every call so tests can assert on what the
engine asked for. Intents are idempotent per idempotency key, like the real
providers.
"""

from uuid import uuid4

from ordering.payment.gateway.port import PaymentGateway, PaymentIntent, RefundResult


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Gateway unavailable"
        self.calls: list[dict] = []
        self._intents: dict[str, PaymentIntent] = {}

    def configure(self, should_succeed: bool, failure_reason: str = "Gateway unavailable") -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def calls_to(self, method: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method]

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        order_reference: str,
        idempotency_key: str,
    ) -> PaymentIntent:
        self.calls.append(
            {
                "method": "create_payment_intent",
                "amount": amount,
                "currency": currency,
                "order_reference": order_reference,
                "idempotency_key": idempotency_key,
            }
        )

        if idempotency_key in self._intents:
            return self._intents[idempotency_key]
        if not self.should_succeed:
            return PaymentIntent(success=False, failure_reason=self.failure_reason)

        token = uuid4().hex[:12]
        intent = PaymentIntent(
            success=True,
            transaction_id=f"fake_txn_{token}",
            client_secret=f"fake_secret_{token}",
        )
        self._intents[idempotency_key] = intent
        return intent

    def request_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: str,
    ) -> RefundResult:
        self.calls.append(
            {
                "method": "request_refund",
                "transaction_id": transaction_id,
                "amount": amount,
                "reason": reason,
            }
        )

        if self.should_succeed:
            return RefundResult(success=True, refund_id=f"fake_ref_{uuid4().hex[:12]}")
        return RefundResult(success=False, failure_reason=self.failure_reason)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:  # noqa: ARG002
        return signature == "test-signature"
