"""Pricing and coupon evaluation.

Prices a cart against the live catalogue: client-supplied prices are never
trusted. The result carries every pricing component so that

    total == subtotal - discount + shipping_cost + tax + processing_fee

can be checked against the stored order at any later time.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog

from ordering.catalogue.product import ProductRepository
from ordering.config import CheckoutPolicy
from ordering.coupon.coupon import Coupon, normalize_code
from ordering.coupon.repository import CouponRepository, CouponUsageRepository
from ordering.errors import InvalidRequest, OutOfStock, ProductUnavailable
from ordering.order.order import PaymentMethod

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    name: str
    unit_price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "line_total": self.line_total,
        }


@dataclass(frozen=True)
class PricingResult:
    lines: tuple[PricedLine, ...]
    subtotal: int
    discount: int
    shipping_cost: int
    tax: int
    processing_fee: int
    total: int
    currency: str
    coupon_code: str | None = None

    def pricing_fields(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "shipping_cost": self.shipping_cost,
            "tax": self.tax,
            "processing_fee": self.processing_fee,
            "total": self.total,
        }


@dataclass(frozen=True)
class CouponPreview:
    code: str
    discount: int
    final_amount: int
    coupon_type: str
    description: str | None = None


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def merge_lines(items: Iterable[CartLine]) -> list[CartLine]:
    """Collapse repeated products into one line, keeping first-seen order."""
    quantities: dict[str, int] = {}
    for item in items:
        if item.quantity is None or item.quantity < 1:
            raise InvalidRequest("Quantity must be at least 1", product_id=item.product_id)
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return [CartLine(product_id=pid, quantity=qty) for pid, qty in quantities.items()]


class PricingEvaluator:
    def __init__(
        self,
        products: ProductRepository,
        coupons: CouponRepository,
        usages: CouponUsageRepository,
        policy: CheckoutPolicy,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._products = products
        self._coupons = coupons
        self._usages = usages
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def policy(self) -> CheckoutPolicy:
        return self._policy

    def price(
        self,
        items: Iterable[CartLine],
        payment_method: str,
        user_id: str | None = None,
        coupon_code: str | None = None,
    ) -> PricingResult:
        """Price ``items`` with the current catalogue and an optional coupon.

        Raises ProductNotFound, ProductUnavailable or OutOfStock for a bad line,
        and the matching coupon error for the first coupon rule that fails.
        """
        lines = merge_lines(items)
        if not lines:
            raise InvalidRequest("Order must contain at least one item")
        if payment_method not in {m.value for m in PaymentMethod}:
            raise InvalidRequest(f"Unsupported payment method {payment_method}", payment_method=payment_method)

        priced = []
        for line in lines:
            product = self._products.get(line.product_id)
            if not product.is_active:
                raise ProductUnavailable(product.id)
            if product.stock < line.quantity:
                raise OutOfStock(product.id, product.stock, line.quantity)
            priced.append(
                PricedLine(
                    product_id=product.id,
                    name=product.name,
                    unit_price=product.price,
                    quantity=line.quantity,
                )
            )

        subtotal = sum(line.line_total for line in priced)

        discount = 0
        code = None
        if coupon_code:
            coupon = self._eligible_coupon(coupon_code, subtotal, user_id)
            discount = coupon.discount_for(subtotal)
            code = coupon.code

        shipping_cost = self._policy.shipping_for(payment_method, subtotal)
        processing_fee = self._policy.processing_fee_for(payment_method)
        tax = round_half_up((Decimal(subtotal - discount) * Decimal(str(self._policy.tax_rate))))
        total = subtotal - discount + shipping_cost + tax + processing_fee

        return PricingResult(
            lines=tuple(priced),
            subtotal=subtotal,
            discount=discount,
            shipping_cost=shipping_cost,
            tax=tax,
            processing_fee=processing_fee,
            total=total,
            currency=self._policy.currency,
            coupon_code=code,
        )

    def _eligible_coupon(self, coupon_code: str, subtotal: int, user_id: str | None) -> Coupon:
        coupon = self._coupons.get(normalize_code(coupon_code))
        user_usage = self._usages.usage_count(coupon.code, user_id) if user_id else 0
        coupon.ensure_redeemable(subtotal, self._clock(), user_usage)
        return coupon

    def preview_coupon(self, coupon_code: str, order_total: int, user_id: str | None = None) -> CouponPreview:
        """Run the eligibility rules against ``order_total`` without consuming usage."""
        if order_total is None or order_total < 0:
            raise InvalidRequest("Order total must be a non-negative amount")
        coupon = self._eligible_coupon(coupon_code, order_total, user_id)
        discount = coupon.discount_for(order_total)
        logger.debug("Previewed coupon", coupon_code=coupon.code, discount=discount)
        return CouponPreview(
            code=coupon.code,
            discount=discount,
            final_amount=order_total - discount,
            coupon_type=coupon.coupon_type,
            description=coupon.description,
        )
