"""Order persistence with compare-and-set writes.

Orders are stored one document per order. ``save`` replaces the document only
if it is still at the revision the order was loaded from; ``update`` wraps a
load-mutate-save cycle in a bounded retry so a losing racer re-reads the fresh
order and re-evaluates its change against it.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from ordering.config import RetryPolicy
from ordering.errors import Conflict, Internal, OrderNotFound
from ordering.order.order import (
    Order,
    OrderLine,
    OrderPricing,
    ShippingAddress,
    StatusChange,
    generate_order_number,
)
from ordering.store import DocumentStore, DuplicateDocument, RevisionMismatch
from ordering.utils.retry import retry_with_backoff

logger = structlog.get_logger(__name__)

ORDERS = "orders"
ORDER_NUMBERS = "order_numbers"

_ORDER_NUMBER_ATTEMPTS = 5


def _to_iso(value):
    return value.isoformat() if value else None


def _from_iso(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def order_to_document(order: Order) -> dict:
    address = order.shipping_address
    return {
        "order_number": order.order_number,
        "user_id": str(order.user_id),
        "items": [
            {
                "id": str(line.id),
                "product_id": str(line.product_id),
                "name": line.name,
                "unit_price": line.unit_price,
                "quantity": line.quantity,
                "line_total": line.line_total,
            }
            for line in order.items
        ],
        "pricing": {
            "subtotal": order.pricing.subtotal,
            "discount": order.pricing.discount,
            "shipping_cost": order.pricing.shipping_cost,
            "tax": order.pricing.tax,
            "processing_fee": order.pricing.processing_fee,
            "total": order.pricing.total,
        },
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "currency": order.currency,
        "coupon_code": order.coupon_code,
        "status_history": [
            {
                "id": str(entry.id),
                "status": entry.status,
                "timestamp": _to_iso(entry.timestamp),
                "note": entry.note,
                "actor": entry.actor,
            }
            for entry in order.status_history
        ],
        "shipping_address": {
            "name": address.name,
            "phone": address.phone,
            "line1": address.line1,
            "city": address.city,
            "state": address.state,
            "postal_code": address.postal_code,
        }
        if address
        else None,
        "tracking_number": order.tracking_number,
        "notes": order.notes,
        "estimated_delivery": _to_iso(order.estimated_delivery),
        "cancellation_reason": order.cancellation_reason,
        "payment_transaction_id": order.payment_transaction_id,
        "payment_attempts": order.payment_attempts or 0,
        "stock_released": bool(order.stock_released),
        "restored_product_ids": list(order.restored_product_ids or []),
        "coupon_released": bool(order.coupon_released),
        "refund_requested": bool(order.refund_requested),
        "created_at": _to_iso(order.created_at),
        "updated_at": _to_iso(order.updated_at),
    }


def order_from_document(key: str, data: dict, revision: int) -> Order:
    address = data.get("shipping_address")
    return Order(
        id=key,
        order_number=data["order_number"],
        user_id=data["user_id"],
        items=[OrderLine(**line) for line in data["items"]],
        pricing=OrderPricing(**data["pricing"]),
        status=data["status"],
        payment_status=data["payment_status"],
        payment_method=data["payment_method"],
        currency=data.get("currency"),
        coupon_code=data.get("coupon_code"),
        status_history=[
            StatusChange(
                id=entry["id"],
                status=entry["status"],
                timestamp=_from_iso(entry["timestamp"]),
                note=entry.get("note"),
                actor=entry.get("actor"),
            )
            for entry in data.get("status_history", [])
        ],
        shipping_address=ShippingAddress(**address) if address else None,
        tracking_number=data.get("tracking_number"),
        notes=data.get("notes"),
        estimated_delivery=_from_iso(data.get("estimated_delivery")),
        cancellation_reason=data.get("cancellation_reason"),
        payment_transaction_id=data.get("payment_transaction_id"),
        payment_attempts=data.get("payment_attempts", 0),
        stock_released=data.get("stock_released", False),
        restored_product_ids=data.get("restored_product_ids", []),
        coupon_released=data.get("coupon_released", False),
        refund_requested=data.get("refund_requested", False),
        created_at=_from_iso(data.get("created_at")),
        updated_at=_from_iso(data.get("updated_at")),
        revision=revision,
    )


class OrderRepository:
    def __init__(self, store: DocumentStore, retry_policy: RetryPolicy) -> None:
        self._store = store
        self._retry_policy = retry_policy

    def reserve_order_number(self, order_id: str) -> str:
        """Claim a globally unique order number for ``order_id``."""
        for _ in range(_ORDER_NUMBER_ATTEMPTS):
            number = generate_order_number()
            try:
                self._store.create(ORDER_NUMBERS, number, {"order_id": order_id})
            except DuplicateDocument:
                logger.warning("Order number collision, generating another", order_number=number)
                continue
            return number
        raise Internal("Could not allocate a unique order number")

    def add(self, order: Order) -> Order:
        document = self._store.create(ORDERS, str(order.id), order_to_document(order))
        order.revision = document.revision
        return order

    def get(self, order_id: str) -> Order:
        document = self._store.get(ORDERS, str(order_id))
        if document is None:
            raise OrderNotFound(str(order_id))
        return order_from_document(document.key, document.data, document.revision)

    def save(self, order: Order) -> Order:
        """Compare-and-set write. Raises RevisionMismatch if someone else wrote first."""
        document = self._store.replace(ORDERS, str(order.id), order_to_document(order), order.revision)
        order.revision = document.revision
        return order

    def update(self, order_id: str, mutate: Callable[[Order], Any]) -> tuple[Order, Any]:
        """Load, mutate and save ``order_id``, re-reading on lost races.

        ``mutate`` returns a truthy value when it changed the order; a falsy
        result means there is nothing to write. Domain errors raised by
        ``mutate`` propagate immediately.
        """

        def attempt():
            order = self.get(order_id)
            outcome = mutate(order)
            if outcome:
                self.save(order)
            return order, outcome

        try:
            return retry_with_backoff(attempt, self._retry_policy, (RevisionMismatch,), f"update order {order_id}")
        except RevisionMismatch as exc:
            raise Conflict(f"Order {order_id} was modified concurrently, please retry", order_id=order_id) from exc

    def find_all(self, status: str | None = None, user_id: str | None = None) -> list[Order]:
        """Orders matching the given filters, newest first."""
        filters = {}
        if user_id:
            filters["user_id"] = str(user_id)
        if status:
            filters["status"] = status
        orders = [order_from_document(d.key, d.data, d.revision) for d in self._store.query(ORDERS, **filters)]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def find_by_user(self, user_id: str, status: str | None = None) -> list[Order]:
        return self.find_all(status=status, user_id=user_id)

    def find_by_transaction(self, transaction_id: str) -> Order | None:
        documents = self._store.query(ORDERS, payment_transaction_id=transaction_id)
        if not documents:
            return None
        document = documents[0]
        return order_from_document(document.key, document.data, document.revision)
