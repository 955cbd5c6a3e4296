"""Order aggregate: the canonical order document and its state machine.

The order is a standard (non event-sourced) aggregate persisted as a single
document. Every write goes through a revision-checked compare-and-set in the
order repository, so concurrent staff actions and gateway callbacks can never
overwrite each other's transitions.

State Machine (7 states):
    PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED
    PENDING → PAYMENT_FAILED → PENDING (payment retried)
    PENDING | CONFIRMED | PROCESSING | PAYMENT_FAILED → CANCELLED

DELIVERED and CANCELLED are terminal. Each transition appends exactly one
entry to ``status_history``; entries are never edited or removed.

Compensation after cancellation (stock release, coupon rollback, refund) is
claimed through one flag each, so it runs at most once per order no matter how
many times cancellation is retried.
"""

import random
import string
from datetime import UTC, datetime, timedelta
from enum import Enum

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import (
    Boolean,
    DateTime,
    HasMany,
    Identifier,
    Integer,
    List,
    String,
    ValueObject,
)

from ordering.domain import ordering
from ordering.errors import InvalidTransition, OrderNotCancellable


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class PaymentStatus(Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING_COD = "pending_cod"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentMethod(Enum):
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    COD = "cod"


# State machine transition map
_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.PAYMENT_FAILED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.PAYMENT_FAILED: {OrderStatus.PENDING, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}

# States from which cancellation is allowed
_CANCELLABLE_STATES = {
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PAYMENT_FAILED,
}

_BASE36 = string.digits + string.ascii_uppercase


def generate_order_number(now=None):
    """Human-readable order number: ``ORD-<epoch ms>-<6 base36 chars>``."""
    now = now or datetime.now(UTC)
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"ORD-{int(now.timestamp() * 1000)}-{suffix}"


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@ordering.value_object(part_of="Order")
class ShippingAddress:
    """Where the order ships to, captured at checkout and never changed afterwards."""

    name = String(required=True, max_length=100)
    phone = String(required=True, max_length=20)
    line1 = String(required=True, max_length=255)
    city = String(required=True, max_length=100)
    state = String(required=True, max_length=100)
    postal_code = String(required=True, max_length=20)


@ordering.value_object(part_of="Order")
class OrderPricing:
    """Price breakdown locked at checkout. All amounts are minor currency units."""

    subtotal = Integer(required=True, min_value=0)
    discount = Integer(default=0, min_value=0)
    shipping_cost = Integer(default=0, min_value=0)
    tax = Integer(default=0, min_value=0)
    processing_fee = Integer(default=0, min_value=0)
    total = Integer(required=True, min_value=0)

    @invariant.post
    def total_reproduces_from_components(self):
        expected = self.subtotal - self.discount + self.shipping_cost + self.tax + self.processing_fee
        if self.total != expected:
            raise ValidationError({"total": [f"Total {self.total} does not match its components ({expected})"]})

    @invariant.post
    def discount_cannot_exceed_subtotal(self):
        if self.discount > self.subtotal:
            raise ValidationError({"discount": ["Discount cannot exceed the subtotal"]})


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@ordering.entity(part_of="Order")
class OrderLine:
    """A priced line captured at checkout. Lines never change after creation."""

    product_id = Identifier(required=True)
    name = String(required=True, max_length=255)
    unit_price = Integer(required=True, min_value=0)
    quantity = Integer(required=True, min_value=1)
    line_total = Integer(required=True, min_value=0)

    @invariant.post
    def line_total_matches_price_and_quantity(self):
        if self.line_total != self.unit_price * self.quantity:
            raise ValidationError({"line_total": ["Line total must equal unit price times quantity"]})


@ordering.entity(part_of="Order")
class StatusChange:
    status = String(choices=OrderStatus, required=True)
    timestamp = DateTime(required=True)
    note = String(max_length=500)
    actor = String(max_length=255)


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@ordering.aggregate
class Order:
    order_number = String(required=True, max_length=50)
    user_id = Identifier(required=True)
    items = HasMany(OrderLine)
    pricing = ValueObject(OrderPricing)
    status = String(choices=OrderStatus, default=OrderStatus.PENDING.value)
    payment_status = String(choices=PaymentStatus, default=PaymentStatus.AWAITING_PAYMENT.value)
    payment_method = String(choices=PaymentMethod, required=True)
    currency = String(max_length=3, default="INR")
    coupon_code = String(max_length=50)
    status_history = HasMany(StatusChange)
    shipping_address = ValueObject(ShippingAddress)
    tracking_number = String(max_length=255)
    notes = String(max_length=1000)
    estimated_delivery = DateTime()
    cancellation_reason = String(max_length=500)
    payment_transaction_id = String(max_length=255)
    payment_attempts = Integer(default=0, min_value=0)
    stock_released = Boolean(default=False)
    restored_product_ids = List(content_type=String)
    coupon_released = Boolean(default=False)
    refund_requested = Boolean(default=False)
    created_at = DateTime()
    updated_at = DateTime()
    revision = Integer(default=0)

    @invariant.post
    def subtotal_matches_line_totals(self):
        if self.pricing is None or not self.items:
            return
        if self.pricing.subtotal != sum(line.line_total for line in self.items):
            raise ValidationError({"pricing": ["Subtotal must equal the sum of line totals"]})

    @invariant.post
    def order_must_have_items(self):
        if not self.items:
            raise ValidationError({"items": ["An order must contain at least one item"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def place(
        cls,
        user_id,
        order_number,
        lines,
        pricing,
        payment_method,
        shipping_address,
        currency="INR",
        coupon_code=None,
        notes=None,
        delivery_days=7,
        now=None,
        order_id=None,
    ):
        """Create a new ``pending`` order from priced checkout data.

        Args:
            lines: List of dicts with product_id, name, unit_price, quantity, line_total.
            pricing: Dict with subtotal, discount, shipping_cost, tax, processing_fee, total.
            shipping_address: Dict with name, phone, line1, city, state, postal_code.
        """
        now = now or datetime.now(UTC)
        is_cod = payment_method == PaymentMethod.COD.value
        identity = {"id": order_id} if order_id else {}
        return cls(
            **identity,
            order_number=order_number,
            user_id=user_id,
            items=[OrderLine(**line) for line in lines],
            pricing=OrderPricing(**pricing),
            status=OrderStatus.PENDING.value,
            payment_status=(PaymentStatus.PENDING_COD.value if is_cod else PaymentStatus.AWAITING_PAYMENT.value),
            payment_method=payment_method,
            currency=currency,
            coupon_code=coupon_code,
            shipping_address=ShippingAddress(**shipping_address),
            notes=notes,
            status_history=[
                StatusChange(
                    status=OrderStatus.PENDING.value,
                    timestamp=now,
                    note="Order placed",
                    actor=str(user_id),
                )
            ],
            estimated_delivery=now + timedelta(days=delivery_days),
            created_at=now,
            updated_at=now,
        )

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def is_cod(self):
        return self.payment_method == PaymentMethod.COD.value

    @property
    def is_terminal(self):
        return not _VALID_TRANSITIONS[OrderStatus(self.status)]

    def is_owned_by(self, user_id):
        return str(self.user_id) == str(user_id)

    def can_transition_to(self, target_status):
        return target_status in _VALID_TRANSITIONS[OrderStatus(self.status)]

    # -------------------------------------------------------------------
    # State transition helper
    # -------------------------------------------------------------------
    def _transition(self, target_status, note=None, actor=None, **changes):
        """Move to ``target_status``, apply ``changes`` and append one history entry."""
        current = OrderStatus(self.status)
        if target_status not in _VALID_TRANSITIONS[current]:
            raise InvalidTransition(current.value, target_status.value)

        now = datetime.now(UTC)
        with atomic_change(self):
            self.status = target_status.value
            for field_name, value in changes.items():
                setattr(self, field_name, value)
            self.add_status_history(
                StatusChange(
                    status=target_status.value,
                    timestamp=now,
                    note=note,
                    actor=actor,
                )
            )
            self.updated_at = now

    # -------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------
    def attach_payment_intent(self, transaction_id):
        """Remember the gateway transaction created for this payment attempt."""
        if OrderStatus(self.status) != OrderStatus.PENDING or self.is_cod:
            raise InvalidTransition(self.status, OrderStatus.PENDING.value, "no payment is awaited")
        with atomic_change(self):
            self.payment_transaction_id = transaction_id
            self.payment_attempts = (self.payment_attempts or 0) + 1
            self.updated_at = datetime.now(UTC)

    def record_payment_success(self, transaction_id=None, actor="payment-gateway"):
        self._transition(
            OrderStatus.CONFIRMED,
            note="Payment received",
            actor=actor,
            payment_status=PaymentStatus.PAID.value,
            payment_transaction_id=transaction_id or self.payment_transaction_id,
        )

    def record_payment_failure(self, reason=None, actor="payment-gateway"):
        """Payment failed. Stock stays reserved so the customer can retry."""
        self._transition(
            OrderStatus.PAYMENT_FAILED,
            note=f"Payment failed: {reason}" if reason else "Payment failed",
            actor=actor,
            payment_status=PaymentStatus.FAILED.value,
        )

    def reopen_for_payment(self, actor, note="Payment retried"):
        self._transition(
            OrderStatus.PENDING,
            note=note,
            actor=actor,
            payment_status=PaymentStatus.AWAITING_PAYMENT.value,
        )

    # -------------------------------------------------------------------
    # Staff lifecycle transitions
    # -------------------------------------------------------------------
    def confirm(self, actor, note=None):
        """Staff confirmation of a pending order that is COD or already paid."""
        if OrderStatus(self.status) == OrderStatus.PENDING and self.payment_status not in (
            PaymentStatus.PENDING_COD.value,
            PaymentStatus.PAID.value,
        ):
            raise InvalidTransition(self.status, OrderStatus.CONFIRMED.value, "payment has not been received")
        self._transition(OrderStatus.CONFIRMED, note=note or "Order confirmed", actor=actor)

    def start_processing(self, actor, note=None):
        self._transition(OrderStatus.PROCESSING, note=note or "Order is being processed", actor=actor)

    def ship(self, actor, tracking_number=None, note=None):
        changes = {"tracking_number": tracking_number} if tracking_number else {}
        self._transition(OrderStatus.SHIPPED, note=note or "Order shipped", actor=actor, **changes)

    def deliver(self, actor, note=None):
        changes = {}
        if self.payment_status == PaymentStatus.PENDING_COD.value:
            # Cash collected on delivery
            changes["payment_status"] = PaymentStatus.PAID.value
        self._transition(OrderStatus.DELIVERED, note=note or "Order delivered", actor=actor, **changes)

    # -------------------------------------------------------------------
    # Cancellation and compensation claims
    # -------------------------------------------------------------------
    def cancel(self, actor, reason=None):
        """Cancel the order.

        Returns False when the order was already cancelled. Raises
        OrderNotCancellable from ``shipped`` or ``delivered``.
        """
        current = OrderStatus(self.status)
        if current == OrderStatus.CANCELLED:
            return False
        if current not in _CANCELLABLE_STATES:
            raise OrderNotCancellable(str(self.id), current.value)

        was_paid = self.payment_status == PaymentStatus.PAID.value
        self._transition(
            OrderStatus.CANCELLED,
            note=reason or "Order cancelled",
            actor=actor,
            payment_status=(PaymentStatus.REFUNDED.value if was_paid else PaymentStatus.CANCELLED.value),
            cancellation_reason=reason,
        )
        return True

    def _ensure_cancelled(self, action):
        if OrderStatus(self.status) != OrderStatus.CANCELLED:
            raise ValidationError({"status": [f"Cannot {action} for an order that is not cancelled"]})

    def claim_stock_release(self):
        """Mark stock as released. Returns True only for the first claimant."""
        self._ensure_cancelled("release stock")
        if self.stock_released:
            return False
        self.stock_released = True
        return True

    def abandon_stock_release(self, restored_product_ids=()):
        """Give back a stock release claim whose work failed part way.

        Products already put back are remembered so the next claimant skips
        them. Returns False when there was no claim to give back.
        """
        if not self.stock_released:
            return False
        self.restored_product_ids = sorted(set(self.restored_product_ids or []) | set(restored_product_ids))
        self.stock_released = False
        return True

    def claim_coupon_release(self):
        self._ensure_cancelled("roll back coupon usage")
        if not self.coupon_code or self.coupon_released:
            return False
        self.coupon_released = True
        return True

    def abandon_coupon_release(self):
        if not self.coupon_released:
            return False
        self.coupon_released = False
        return True

    def claim_refund(self):
        self._ensure_cancelled("request a refund")
        if self.payment_status != PaymentStatus.REFUNDED.value or self.refund_requested:
            return False
        self.refund_requested = True
        return True

    @property
    def compensation_pending(self):
        return (
            OrderStatus(self.status) == OrderStatus.CANCELLED
            and (
                not self.stock_released
                or (self.coupon_code and not self.coupon_released)
                or (self.payment_status == PaymentStatus.REFUNDED.value and not self.refund_requested)
            )
        )
