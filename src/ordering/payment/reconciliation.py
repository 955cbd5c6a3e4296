"""Payment reconciliation: gateway callbacks driving the order state machine.

Gateways deliver callbacks at least once, in any order, and retry on error
responses. Every callback is therefore acknowledged with one of:

- ``processed``: the order moved (confirmed, payment_failed, or re-opened and
  confirmed)
- ``duplicate``: the order already reflects this outcome
- ``ignored``: the callback contradicts the order (unknown order, stale
  transaction, late success after cancellation, failure after payment). These
  are logged as gateway anomalies and never raised back to the gateway.

The decision is taken inside a compare-and-set update of the order, so a
callback racing a staff cancellation re-reads the order and re-decides.
"""

from dataclasses import dataclass, field
from enum import Enum

import structlog
from protean import handle
from protean.fields import Dict, Identifier, String

from ordering.actor import PAYMENT_GATEWAY
from ordering.domain import ordering
from ordering.errors import InvalidRequest, OrderNotFound
from ordering.order.order import Order, OrderStatus, PaymentStatus
from ordering.order.repository import OrderRepository
from ordering.services import get_services
from ordering.utils.logging import order_context

logger = structlog.get_logger(__name__)


class PaymentOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AckStatus(Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CallbackAck:
    status: AckStatus
    order_id: str | None = None
    order_status: str | None = None
    reason: str | None = None
    refund_required: bool = False
    metadata: dict = field(default_factory=dict)


class PaymentReconciler:
    def __init__(self, orders: OrderRepository) -> None:
        self._orders = orders

    def _resolve(self, transaction_id, order_id):
        if order_id:
            try:
                return self._orders.get(order_id)
            except OrderNotFound:
                return None
        if transaction_id:
            return self._orders.find_by_transaction(transaction_id)
        return None

    def handle_callback(
        self,
        transaction_id: str | None,
        outcome: str,
        order_id: str | None = None,
        failure_reason: str | None = None,
        metadata: dict | None = None,
    ) -> CallbackAck:
        """Apply one gateway callback to its order."""
        if outcome not in {o.value for o in PaymentOutcome}:
            raise InvalidRequest(f"Unknown payment outcome {outcome}", outcome=outcome)
        if not transaction_id and not order_id:
            raise InvalidRequest("Callback must reference a transaction or an order")
        metadata = metadata or {}

        order = self._resolve(transaction_id, order_id)
        if order is None:
            logger.warning(
                "Gateway anomaly: callback for unknown order",
                transaction_id=transaction_id,
                order_id=order_id,
                outcome=outcome,
            )
            return CallbackAck(status=AckStatus.IGNORED, order_id=order_id, reason="unknown order", metadata=metadata)

        decisions = []

        def reconcile(fresh):
            ack, changed = self._decide(fresh, PaymentOutcome(outcome), transaction_id, failure_reason)
            decisions.append(ack)
            return changed

        order, _ = self._orders.update(str(order.id), reconcile)
        ack = decisions[-1]
        ack = CallbackAck(
            status=ack.status,
            order_id=str(order.id),
            order_status=order.status,
            reason=ack.reason,
            refund_required=ack.refund_required,
            metadata=metadata,
        )

        if ack.status == AckStatus.IGNORED:
            log, message = logger.warning, "Gateway anomaly: payment callback ignored"
        else:
            log, message = logger.info, "Payment callback handled"
        log(
            message,
            order_id=ack.order_id,
            transaction_id=transaction_id,
            outcome=outcome,
            ack=ack.status.value,
            reason=ack.reason,
            order_status=ack.order_status,
            refund_required=ack.refund_required,
        )
        return ack

    def _decide(self, order, outcome, transaction_id, failure_reason):
        """Return ``(ack, changed)`` for ``outcome`` against the current order."""
        status = OrderStatus(order.status)
        actor = PAYMENT_GATEWAY.user_id

        if transaction_id and order.payment_transaction_id and transaction_id != order.payment_transaction_id:
            return CallbackAck(status=AckStatus.IGNORED, reason="transaction does not match order"), False
        if order.is_cod:
            return CallbackAck(status=AckStatus.IGNORED, reason="cash on delivery order"), False

        if outcome == PaymentOutcome.SUCCESS:
            if status == OrderStatus.CANCELLED:
                return CallbackAck(
                    status=AckStatus.IGNORED,
                    reason="payment succeeded after cancellation",
                    refund_required=True,
                ), False
            if order.payment_status == PaymentStatus.PAID.value:
                return CallbackAck(status=AckStatus.DUPLICATE), False
            if status == OrderStatus.PAYMENT_FAILED:
                order.reopen_for_payment(actor=actor, note="Payment succeeded after an earlier failure")
                order.record_payment_success(transaction_id, actor=actor)
                return CallbackAck(status=AckStatus.PROCESSED), True
            if status == OrderStatus.PENDING:
                order.record_payment_success(transaction_id, actor=actor)
                return CallbackAck(status=AckStatus.PROCESSED), True
            return CallbackAck(status=AckStatus.IGNORED, reason=f"order is {status.value}"), False

        if status == OrderStatus.PAYMENT_FAILED:
            return CallbackAck(status=AckStatus.DUPLICATE), False
        if order.payment_status == PaymentStatus.PAID.value:
            return CallbackAck(status=AckStatus.IGNORED, reason="payment failure after payment succeeded"), False
        if status == OrderStatus.PENDING:
            order.record_payment_failure(reason=failure_reason, actor=actor)
            return CallbackAck(status=AckStatus.PROCESSED), True
        return CallbackAck(status=AckStatus.IGNORED, reason=f"order is {status.value}"), False


@ordering.command(part_of="Order")
class HandlePaymentCallback:
    transaction_id = String(max_length=255)
    order_id = Identifier()
    outcome = String(required=True, choices=PaymentOutcome)
    failure_reason = String(max_length=500)
    metadata = Dict()


@ordering.command_handler(part_of=Order)
class PaymentCallbackHandler:
    @handle(HandlePaymentCallback)
    def handle_callback(self, command):
        order_id = str(command.order_id) if command.order_id else None
        with order_context(order_id=order_id, transaction_id=command.transaction_id):
            return get_services().reconciler.handle_callback(
                transaction_id=command.transaction_id,
                outcome=command.outcome,
                order_id=order_id,
                failure_reason=command.failure_reason,
                metadata=command.metadata,
            )
