"""Order cancellation: command, handler and compensation.

Cancelling is a compare-and-set status change followed by up to three
compensations, each claimed through its own flag on the order before it runs:

1. release reserved stock (``stock_released``)
2. roll back coupon usage (``coupon_released``)
3. request a gateway refund for a paid order (``refund_requested``)

Cancelling an already cancelled order is a success that finishes whatever
compensation is still outstanding, so a retried cancel call is always safe.
A stock or coupon compensation that fails gives its claim back before the
error propagates, leaving the work for the next cancel.
"""

import structlog
from protean import handle
from protean.fields import Identifier, String

from ordering.actor import Actor
from ordering.coupon.ledger import CouponUsageLedger
from ordering.domain import ordering
from ordering.inventory.ledger import InventoryLedger
from ordering.order.order import Order
from ordering.order.repository import OrderRepository
from ordering.payment.gateway import PaymentGateway
from ordering.services import get_services
from ordering.utils.logging import order_context

logger = structlog.get_logger(__name__)


class CancellationService:
    def __init__(
        self,
        orders: OrderRepository,
        inventory: InventoryLedger,
        coupon_ledger: CouponUsageLedger,
        gateway: PaymentGateway,
    ) -> None:
        self._orders = orders
        self._inventory = inventory
        self._coupon_ledger = coupon_ledger
        self._gateway = gateway

    def cancel(self, order_id: str, actor: Actor, reason: str | None = None) -> Order:
        order = self._orders.get(order_id)
        actor.ensure_can_access(order)

        order, cancelled = self._orders.update(order_id, lambda o: o.cancel(actor=actor.user_id, reason=reason))
        if cancelled:
            logger.info("Order cancelled", order_id=order_id, actor=actor.user_id, reason=reason)
        else:
            logger.info("Order already cancelled", order_id=order_id)

        self.compensate(order_id)
        return self._orders.get(order_id)

    def compensate(self, order_id: str) -> None:
        """Run every compensation the cancelled order has not claimed yet."""
        self._inventory.release(order_id)

        order, claimed = self._orders.update(order_id, lambda o: o.claim_coupon_release())
        if claimed:
            try:
                self._coupon_ledger.rollback_usage(order.coupon_code, str(order.user_id), order_id)
            except Exception:
                logger.error("Coupon rollback failed, giving back the claim", order_id=order_id)
                self._orders.update(order_id, lambda o: o.abandon_coupon_release())
                raise

        order, claimed = self._orders.update(order_id, lambda o: o.claim_refund())
        if claimed:
            self._request_refund(order)

    def _request_refund(self, order: Order) -> None:
        if not order.payment_transaction_id:
            logger.error("Paid order has no transaction to refund", order_id=str(order.id))
            return
        result = self._gateway.request_refund(
            transaction_id=order.payment_transaction_id,
            amount=order.pricing.total,
            reason=order.cancellation_reason or "Order cancelled",
        )
        if result.success:
            logger.info(
                "Refund requested",
                order_id=str(order.id),
                refund_id=result.refund_id,
                amount=order.pricing.total,
            )
        else:
            logger.error(
                "Refund request failed, manual refund required",
                order_id=str(order.id),
                transaction_id=order.payment_transaction_id,
                amount=order.pricing.total,
                reason=result.failure_reason,
            )


@ordering.command(part_of="Order")
class CancelOrder:
    order_id = Identifier(required=True)
    reason = String(max_length=500)
    actor_id = String(required=True, max_length=255)
    actor_role = String(required=True, max_length=50)


@ordering.command_handler(part_of=Order)
class CancelOrderHandler:
    @handle(CancelOrder)
    def cancel_order(self, command):
        actor = Actor(user_id=command.actor_id, role=command.actor_role)
        with order_context(order_id=str(command.order_id)):
            order = get_services().cancellation.cancel(str(command.order_id), actor, reason=command.reason)
        return str(order.id)
