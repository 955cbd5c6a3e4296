"""Staff-driven status updates.

Staff move an order along ``confirmed → processing → shipped → delivered``
one step at a time; each step requires the exact prior state. A request to
set ``cancelled`` goes through cancellation so its compensation runs.
"""

import structlog
from protean import handle
from protean.fields import Identifier, String

from ordering.actor import Actor
from ordering.domain import ordering
from ordering.errors import InvalidRequest
from ordering.order.cancellation import CancellationService
from ordering.order.order import Order, OrderStatus
from ordering.order.repository import OrderRepository
from ordering.services import get_services
from ordering.utils.logging import order_context

logger = structlog.get_logger(__name__)

_STAFF_TARGETS = {
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
}


class StatusService:
    def __init__(self, orders: OrderRepository, cancellation: CancellationService) -> None:
        self._orders = orders
        self._cancellation = cancellation

    def update_status(
        self,
        order_id: str,
        actor: Actor,
        status: str,
        note: str | None = None,
        tracking_number: str | None = None,
    ) -> Order:
        actor.ensure_staff()
        try:
            target = OrderStatus(status)
        except ValueError as exc:
            raise InvalidRequest(f"Unknown order status {status}", status=status) from exc
        if target not in _STAFF_TARGETS:
            raise InvalidRequest(f"Status {status} is set by the payment gateway only", status=status)

        if target == OrderStatus.CANCELLED:
            return self._cancellation.cancel(order_id, actor, reason=note)

        def advance(order):
            if target == OrderStatus.CONFIRMED:
                order.confirm(actor=actor.user_id, note=note)
            elif target == OrderStatus.PROCESSING:
                order.start_processing(actor=actor.user_id, note=note)
            elif target == OrderStatus.SHIPPED:
                order.ship(actor=actor.user_id, tracking_number=tracking_number, note=note)
            else:
                order.deliver(actor=actor.user_id, note=note)
            return True

        order, _ = self._orders.update(order_id, advance)
        logger.info(
            "Order status updated",
            order_id=order_id,
            status=order.status,
            actor=actor.user_id,
            tracking_number=order.tracking_number,
        )
        return order


@ordering.command(part_of="Order")
class UpdateOrderStatus:
    order_id = Identifier(required=True)
    status = String(required=True, max_length=50)
    note = String(max_length=500)
    tracking_number = String(max_length=255)
    actor_id = String(required=True, max_length=255)
    actor_role = String(required=True, max_length=50)


@ordering.command_handler(part_of=Order)
class UpdateOrderStatusHandler:
    @handle(UpdateOrderStatus)
    def update_status(self, command):
        actor = Actor(user_id=command.actor_id, role=command.actor_role)
        with order_context(order_id=str(command.order_id)):
            order = get_services().status.update_status(
                str(command.order_id),
                actor,
                command.status,
                note=command.note,
                tracking_number=command.tracking_number,
            )
        return str(order.id)
