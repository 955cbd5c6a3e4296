"""Payment initiation and payment retry.

For prepaid orders, checkout asks the gateway for a payment intent and stores
its transaction id on the order. A failed initiation is not fatal: the order
stays ``pending``/``awaiting_payment`` and the customer can retry payment.
"""

from dataclasses import dataclass

import structlog
from protean import handle
from protean.fields import Identifier, String

from ordering.actor import Actor
from ordering.domain import ordering
from ordering.errors import InvalidRequest, InvalidTransition
from ordering.order.order import Order, OrderStatus
from ordering.order.repository import OrderRepository
from ordering.payment.gateway import PaymentGateway
from ordering.services import get_services
from ordering.utils.logging import order_context

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InitiationResult:
    order: Order
    transaction_id: str | None = None
    client_secret: str | None = None
    failure_reason: str | None = None

    @property
    def success(self) -> bool:
        return self.transaction_id is not None


class PaymentInitiator:
    def __init__(self, orders: OrderRepository, gateway: PaymentGateway) -> None:
        self._orders = orders
        self._gateway = gateway

    def initiate(self, order: Order) -> InitiationResult:
        """Open a payment intent for ``order`` and remember its transaction id."""
        if order.is_cod:
            return InitiationResult(order=order)

        attempt = (order.payment_attempts or 0) + 1
        try:
            intent = self._gateway.create_payment_intent(
                amount=order.pricing.total,
                currency=order.currency,
                order_reference=order.order_number,
                idempotency_key=f"{order.id}:{attempt}",
            )
        except Exception as exc:
            logger.exception("Payment initiation raised", order_id=str(order.id), error=str(exc))
            return InitiationResult(order=order, failure_reason=str(exc))

        if not intent.success:
            logger.warning(
                "Payment initiation failed, order left awaiting payment",
                order_id=str(order.id),
                reason=intent.failure_reason,
            )
            return InitiationResult(order=order, failure_reason=intent.failure_reason)

        def attach(fresh):
            fresh.attach_payment_intent(intent.transaction_id)
            return True

        try:
            order, _ = self._orders.update(str(order.id), attach)
        except InvalidTransition:
            # The order moved on (cancelled) while the intent was being created
            logger.warning(
                "Order no longer awaits payment, intent not attached",
                order_id=str(order.id),
                transaction_id=intent.transaction_id,
            )
            return InitiationResult(order=self._orders.get(str(order.id)), failure_reason="Order no longer awaits payment")

        logger.info(
            "Payment intent created",
            order_id=str(order.id),
            transaction_id=intent.transaction_id,
            amount=order.pricing.total,
        )
        return InitiationResult(
            order=order,
            transaction_id=intent.transaction_id,
            client_secret=intent.client_secret,
        )

    def retry(self, order_id: str, actor: Actor) -> InitiationResult:
        """Start a fresh payment attempt for a failed or never-initiated payment."""
        order = self._orders.get(order_id)
        actor.ensure_can_access(order)
        if order.is_cod:
            raise InvalidRequest("Cash on delivery orders do not take online payment", order_id=order_id)

        def reopen(fresh):
            status = OrderStatus(fresh.status)
            if status == OrderStatus.PAYMENT_FAILED:
                fresh.reopen_for_payment(actor=actor.user_id)
                return True
            if status == OrderStatus.PENDING and fresh.payment_transaction_id is None:
                return False
            raise InvalidTransition(status.value, OrderStatus.PENDING.value, "payment cannot be retried")

        order, _ = self._orders.update(order_id, reopen)
        logger.info("Retrying payment", order_id=order_id, attempt=(order.payment_attempts or 0) + 1)
        return self.initiate(order)


@ordering.command(part_of="Order")
class RetryPayment:
    order_id = Identifier(required=True)
    actor_id = String(required=True, max_length=255)
    actor_role = String(required=True, max_length=50)


@ordering.command_handler(part_of=Order)
class RetryPaymentHandler:
    @handle(RetryPayment)
    def retry_payment(self, command):
        actor = Actor(user_id=command.actor_id, role=command.actor_role)
        with order_context(order_id=str(command.order_id)):
            return get_services().payments.retry(str(command.order_id), actor)
