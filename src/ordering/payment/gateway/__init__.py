"""Payment gateway port and adapters."""

from ordering.payment.gateway.fake_adapter import FakeGateway
from ordering.payment.gateway.port import PaymentGateway, PaymentIntent, RefundResult

__all__ = ["FakeGateway", "PaymentGateway", "PaymentIntent", "RefundResult"]
