"""Checkout saga: cart to pending order.

The store offers no multi-document transaction, so placing an order is a
sequence of steps, each with a compensation that runs when a later step fails:

Flow:
    1. Price the cart against the live catalogue and coupon rules
    2. Reserve stock for every line            ↩ restore stock
    3. Persist the order as ``pending``        ↩ cancel the order (releases stock)
    4. Record coupon usage (if any)          ↩ cancel the order on any failure
    5. Open a payment intent (prepaid only)    failure is logged, order stays pending

Nothing is reserved until pricing has passed, so a bad coupon or an inactive
product never touches stock. A reservation lost to a concurrent checkout is
retried from step 1 a bounded number of times before surfacing ``Conflict``.
"""

import json
import time
from dataclasses import dataclass
from uuid import uuid4

import structlog
from protean import handle
from protean.fields import Identifier, String, Text

from ordering.actor import SYSTEM, Actor
from ordering.config import RetryPolicy
from ordering.coupon.ledger import CouponUsageLedger
from ordering.domain import ordering
from ordering.errors import Conflict, CouponLimitExceeded, InsufficientStock, InvalidRequest
from ordering.inventory.ledger import InventoryLedger, Reservation
from ordering.order.cancellation import CancellationService
from ordering.order.order import Order, ShippingAddress
from ordering.order.repository import OrderRepository
from ordering.payment.initiation import PaymentInitiator
from ordering.pricing.evaluator import CartLine, PricingEvaluator, PricingResult
from ordering.services import get_services
from ordering.utils.retry import calculate_backoff

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    pricing: PricingResult
    transaction_id: str | None = None
    client_secret: str | None = None


class CheckoutService:
    def __init__(
        self,
        pricing: PricingEvaluator,
        inventory: InventoryLedger,
        orders: OrderRepository,
        coupon_ledger: CouponUsageLedger,
        payments: PaymentInitiator,
        cancellation: CancellationService,
        retry_policy: RetryPolicy,
    ) -> None:
        self._pricing = pricing
        self._inventory = inventory
        self._orders = orders
        self._coupon_ledger = coupon_ledger
        self._payments = payments
        self._cancellation = cancellation
        self._retry_policy = retry_policy

    def place_order(
        self,
        actor: Actor,
        items: list[CartLine],
        payment_method: str,
        shipping_address: dict,
        coupon_code: str | None = None,
        notes: str | None = None,
    ) -> CheckoutResult:
        if not shipping_address:
            raise InvalidRequest("Shipping address is required")
        # Validated before anything is reserved
        ShippingAddress(**shipping_address)

        pricing, reservation = self._price_and_reserve(actor, items, payment_method, coupon_code)
        order = self._persist(actor, pricing, reservation, payment_method, shipping_address, notes)

        if pricing.coupon_code:
            self._record_coupon_usage(order, pricing)

        logger.info(
            "Order placed",
            order_id=str(order.id),
            order_number=order.order_number,
            user_id=actor.user_id,
            total=pricing.total,
            coupon_code=pricing.coupon_code,
            payment_method=payment_method,
        )

        initiation = self._payments.initiate(order)
        return CheckoutResult(
            order=initiation.order,
            pricing=pricing,
            transaction_id=initiation.transaction_id,
            client_secret=initiation.client_secret,
        )

    def _price_and_reserve(self, actor, items, payment_method, coupon_code) -> tuple[PricingResult, Reservation]:
        attempt = 1
        while True:
            pricing = self._pricing.price(items, payment_method, user_id=actor.user_id, coupon_code=coupon_code)
            try:
                return pricing, self._inventory.reserve(pricing.lines)
            except InsufficientStock as exc:
                if attempt >= self._retry_policy.max_attempts:
                    logger.warning("Stock reservation kept losing races", user_id=actor.user_id, attempts=attempt)
                    raise Conflict(
                        "Stock changed while placing the order, please retry",
                        product_id=exc.product_id,
                    ) from exc
                time.sleep(calculate_backoff(attempt, self._retry_policy))
                attempt += 1

    def _persist(self, actor, pricing, reservation, payment_method, shipping_address, notes) -> Order:
        order_id = str(uuid4())
        try:
            order_number = self._orders.reserve_order_number(order_id)
            order = Order.place(
                order_id=order_id,
                user_id=actor.user_id,
                order_number=order_number,
                lines=[line.to_dict() for line in pricing.lines],
                pricing=pricing.pricing_fields(),
                payment_method=payment_method,
                shipping_address=shipping_address,
                currency=pricing.currency,
                coupon_code=pricing.coupon_code,
                notes=notes,
                delivery_days=self._pricing.policy.delivery_days,
            )
            return self._orders.add(order)
        except Exception:
            logger.exception("Order could not be persisted, restoring reserved stock", order_id=order_id)
            self._inventory.restore(reservation.lines)
            raise

    def _record_coupon_usage(self, order: Order, pricing: PricingResult) -> None:
        try:
            self._coupon_ledger.record_usage(
                pricing.coupon_code,
                str(order.user_id),
                str(order.id),
                pricing.discount,
            )
        except Exception as exc:
            reason = (
                "Coupon usage limit reached"
                if isinstance(exc, CouponLimitExceeded)
                else "Coupon usage could not be recorded"
            )
            logger.warning(
                "Coupon could not be redeemed, cancelling order",
                order_id=str(order.id),
                coupon_code=pricing.coupon_code,
                reason=reason,
            )
            try:
                self._cancellation.cancel(str(order.id), SYSTEM, reason=reason)
            except Exception:
                logger.exception("Order left pending after failed coupon redemption", order_id=str(order.id))
            raise


@ordering.command(part_of="Order")
class PlaceOrder:
    user_id = Identifier(required=True)
    user_role = String(max_length=50, default="customer")
    items = Text(required=True)  # JSON: list of {product_id, quantity}
    shipping_address = Text(required=True)  # JSON: address dict
    payment_method = String(required=True, max_length=20)
    coupon_code = String(max_length=50)
    notes = String(max_length=1000)


@ordering.command_handler(part_of=Order)
class PlaceOrderHandler:
    @handle(PlaceOrder)
    def place_order(self, command):
        items = json.loads(command.items) if isinstance(command.items, str) else command.items
        shipping_address = (
            json.loads(command.shipping_address)
            if isinstance(command.shipping_address, str)
            else command.shipping_address
        )
        result = get_services().checkout.place_order(
            Actor(user_id=str(command.user_id), role=command.user_role),
            [CartLine(product_id=item["product_id"], quantity=item["quantity"]) for item in items],
            command.payment_method,
            shipping_address,
            coupon_code=command.coupon_code,
            notes=command.notes,
        )
        return result
