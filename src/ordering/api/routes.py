"""FastAPI routes for the Ordering domain: orders, payments and coupons.

The caller's identity arrives in ``X-User-Id`` / ``X-User-Role`` headers set
by the identity-aware gateway in front of this service; it is trusted as is.
"""

import json
import math

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from protean.utils.globals import current_domain
from starlette.concurrency import run_in_threadpool

from ordering.actor import STAFF_ROLES, Actor
from ordering.api.schemas import (
    CancelOrderRequest,
    CouponPreviewResponse,
    CouponStatsResponse,
    OrderListResponse,
    OrderResponse,
    OrderSummary,
    PaymentRetryResponse,
    PaymentStatusResponse,
    PaymentWebhookRequest,
    PlaceOrderRequest,
    PlaceOrderResponse,
    TrackingResponse,
    UpdateStatusRequest,
    ValidateCouponRequest,
    WebhookAckResponse,
)
from ordering.errors import Forbidden, InvalidRequest, NotFound
from ordering.order.cancellation import CancelOrder
from ordering.order.checkout import PlaceOrder
from ordering.order.order import Order, OrderStatus
from ordering.order.status import UpdateOrderStatus
from ordering.payment.initiation import RetryPayment
from ordering.payment.reconciliation import HandlePaymentCallback
from ordering.services import get_services

_ACCEPTED_ROLES = STAFF_ROLES | {"customer"}


def current_actor(
    x_user_id: str = Header(default=""),
    x_user_role: str = Header(default="customer"),
) -> Actor:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    if x_user_role not in _ACCEPTED_ROLES:
        raise Forbidden("Unknown role", role=x_user_role)
    return Actor(user_id=x_user_id, role=x_user_role)


def _history(order: Order) -> list[dict]:
    return [
        {"status": entry.status, "timestamp": entry.timestamp, "note": entry.note, "actor": entry.actor}
        for entry in order.status_history
    ]


def _order_response(order: Order) -> OrderResponse:
    address = order.shipping_address
    return OrderResponse(
        order_id=str(order.id),
        order_number=order.order_number,
        user_id=str(order.user_id),
        items=[
            {
                "product_id": str(line.product_id),
                "name": line.name,
                "unit_price": line.unit_price,
                "quantity": line.quantity,
                "line_total": line.line_total,
            }
            for line in order.items
        ],
        pricing={
            "subtotal": order.pricing.subtotal,
            "discount": order.pricing.discount,
            "shipping_cost": order.pricing.shipping_cost,
            "tax": order.pricing.tax,
            "processing_fee": order.pricing.processing_fee,
            "total": order.pricing.total,
        },
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        currency=order.currency,
        coupon_code=order.coupon_code,
        shipping_address=(
            {
                "name": address.name,
                "phone": address.phone,
                "line1": address.line1,
                "city": address.city,
                "state": address.state,
                "postal_code": address.postal_code,
            }
            if address
            else None
        ),
        tracking_number=order.tracking_number,
        notes=order.notes,
        estimated_delivery=order.estimated_delivery,
        cancellation_reason=order.cancellation_reason,
        status_history=_history(order),
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _accessible_order(order_id: str, actor: Actor) -> Order:
    order = get_services().orders.get(order_id)
    actor.ensure_can_access(order)
    return order


def _order_page(orders: list[Order], page: int, limit: int) -> OrderListResponse:
    start = (page - 1) * limit
    return OrderListResponse(
        orders=[
            OrderSummary(
                order_id=str(order.id),
                order_number=order.order_number,
                user_id=str(order.user_id),
                total=order.pricing.total,
                status=order.status,
                payment_status=order.payment_status,
                item_count=sum(line.quantity for line in order.items),
                created_at=order.created_at,
            )
            for order in orders[start : start + limit]
        ],
        page=page,
        limit=limit,
        total=len(orders),
        pages=math.ceil(len(orders) / limit),
    )


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post("", status_code=201, response_model=PlaceOrderResponse)
def place_order(body: PlaceOrderRequest, actor: Actor = Depends(current_actor)) -> PlaceOrderResponse:
    command = PlaceOrder(
        user_id=actor.user_id,
        user_role=actor.role,
        items=json.dumps([item.model_dump() for item in body.items]),
        shipping_address=json.dumps(body.shipping_address.model_dump()),
        payment_method=body.payment_method,
        coupon_code=body.coupon_code,
        notes=body.notes,
    )
    result = current_domain.process(command, asynchronous=False)
    order = result.order
    return PlaceOrderResponse(
        order_id=str(order.id),
        order_number=order.order_number,
        total=order.pricing.total,
        status=order.status,
        payment_status=order.payment_status,
        transaction_id=result.transaction_id,
        client_secret=result.client_secret,
    )


@order_router.get("", response_model=OrderListResponse)
def list_orders(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    actor: Actor = Depends(current_actor),
) -> OrderListResponse:
    """The caller's own orders, newest first."""
    return _order_page(get_services().orders.find_by_user(actor.user_id, status=status), page, limit)


@order_router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, actor: Actor = Depends(current_actor)) -> OrderResponse:
    return _order_response(_accessible_order(order_id, actor))


@order_router.get("/{order_id}/tracking", response_model=TrackingResponse)
def track_order(order_id: str, actor: Actor = Depends(current_actor)) -> TrackingResponse:
    order = _accessible_order(order_id, actor)
    return TrackingResponse(
        order_id=str(order.id),
        order_number=order.order_number,
        status=order.status,
        tracking_number=order.tracking_number,
        estimated_delivery=order.estimated_delivery,
        status_history=_history(order),
    )


@order_router.post("/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(
    order_id: str,
    body: CancelOrderRequest | None = None,
    actor: Actor = Depends(current_actor),
) -> OrderResponse:
    command = CancelOrder(
        order_id=order_id,
        reason=body.reason if body else None,
        actor_id=actor.user_id,
        actor_role=actor.role,
    )
    current_domain.process(command, asynchronous=False)
    return _order_response(get_services().orders.get(order_id))


@order_router.put("/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: str,
    body: UpdateStatusRequest,
    actor: Actor = Depends(current_actor),
) -> OrderResponse:
    """Staff only."""
    actor.ensure_staff()
    command = UpdateOrderStatus(
        order_id=order_id,
        status=body.status,
        note=body.note,
        tracking_number=body.tracking_number,
        actor_id=actor.user_id,
        actor_role=actor.role,
    )
    current_domain.process(command, asynchronous=False)
    return _order_response(get_services().orders.get(order_id))


@order_router.post("/{order_id}/payment/retry", response_model=PaymentRetryResponse)
def retry_payment(order_id: str, actor: Actor = Depends(current_actor)) -> PaymentRetryResponse:
    command = RetryPayment(order_id=order_id, actor_id=actor.user_id, actor_role=actor.role)
    result = current_domain.process(command, asynchronous=False)
    return PaymentRetryResponse(
        order_id=str(result.order.id),
        status=result.order.status,
        payment_status=result.order.payment_status,
        transaction_id=result.transaction_id,
        client_secret=result.client_secret,
        failure_reason=result.failure_reason,
    )


# ---------------------------------------------------------------------------
# Payment Router
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    body: PaymentWebhookRequest,
    x_gateway_signature: str = Header(default=""),
) -> WebhookAckResponse:
    """Gateway callback. Always 200 once the payload is accepted, so the gateway stops retrying.

    Async only to read the raw body for the signature check; the engine call
    runs in the threadpool like every other route.
    """
    payload = await request.body()
    if not get_services().gateway.verify_webhook_signature(payload, x_gateway_signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    command = HandlePaymentCallback(
        transaction_id=body.transaction_id,
        order_id=body.order_id,
        outcome=body.outcome,
        failure_reason=body.failure_reason,
        metadata=body.metadata,
    )
    ack = await run_in_threadpool(current_domain.process, command, asynchronous=False)
    return WebhookAckResponse(status=ack.status.value, order_id=ack.order_id, reason=ack.reason)


@payment_router.get("/status/{transaction_id}", response_model=PaymentStatusResponse)
def payment_status(transaction_id: str, actor: Actor = Depends(current_actor)) -> PaymentStatusResponse:
    """Where a payment stands, looked up by the gateway transaction id."""
    order = get_services().orders.find_by_transaction(transaction_id)
    if order is None:
        raise NotFound("Payment transaction not found", transaction_id=transaction_id)
    actor.ensure_can_access(order)
    return PaymentStatusResponse(
        transaction_id=transaction_id,
        order_id=str(order.id),
        order_number=order.order_number,
        amount=order.pricing.total,
        currency=order.currency,
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        order_status=order.status,
        payment_attempts=order.payment_attempts or 0,
        updated_at=order.updated_at,
    )


# ---------------------------------------------------------------------------
# Coupon Router
# ---------------------------------------------------------------------------
coupon_router = APIRouter(prefix="/coupons", tags=["coupons"])


@coupon_router.post("/validate", response_model=CouponPreviewResponse)
def validate_coupon(body: ValidateCouponRequest, actor: Actor = Depends(current_actor)) -> CouponPreviewResponse:
    """Check a coupon against an order total without using it up."""
    preview = get_services().pricing.preview_coupon(body.code, body.order_total, user_id=actor.user_id)
    return CouponPreviewResponse(
        code=preview.code,
        coupon_type=preview.coupon_type,
        discount=preview.discount,
        final_amount=preview.final_amount,
        description=preview.description,
    )


@coupon_router.get("/{code}/stats", response_model=CouponStatsResponse)
def coupon_stats(code: str, actor: Actor = Depends(current_actor)) -> CouponStatsResponse:
    actor.ensure_staff()
    stats = get_services().coupon_ledger.stats(code)
    return CouponStatsResponse(
        code=stats.code,
        used_count=stats.used_count,
        usage_limit=stats.usage_limit,
        unique_users=stats.unique_users,
        total_orders=stats.total_orders,
        total_discount=stats.total_discount,
        average_discount=stats.average_discount,
    )


# ---------------------------------------------------------------------------
# Admin Router
# ---------------------------------------------------------------------------
admin_router = APIRouter(prefix="/admin/orders", tags=["admin"])


@admin_router.get("", response_model=OrderListResponse)
def list_all_orders(
    status: str | None = None,
    user_id: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(current_actor),
) -> OrderListResponse:
    """Every customer's orders, newest first. Staff only."""
    actor.ensure_staff()
    if status and status not in {s.value for s in OrderStatus}:
        raise InvalidRequest(f"Unknown order status {status}", status=status)
    return _order_page(get_services().orders.find_all(status=status, user_id=user_id), page, limit)
