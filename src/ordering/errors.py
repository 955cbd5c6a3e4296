"""Error taxonomy for the ordering engine.

Every engine failure is an ``OrderingError`` carrying a ``kind`` (how the caller
should react) and a stable ``code`` (why it failed). The HTTP layer is the only
place these are turned into a transport envelope.
"""

from enum import Enum


class ErrorKind(Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    GATEWAY_ANOMALY = "gateway_anomaly"
    INTERNAL = "internal"


class OrderingError(Exception):
    kind = ErrorKind.INTERNAL
    code = "INTERNAL"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class Internal(OrderingError):
    """Unexpected store or collaborator failure. Never retried by the engine."""


class Conflict(OrderingError):
    """A race could not be resolved within the retry budget."""

    kind = ErrorKind.CONFLICT
    code = "CONFLICT"


class Forbidden(OrderingError):
    kind = ErrorKind.FORBIDDEN
    code = "FORBIDDEN"


class NotFound(OrderingError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"


class InvalidRequest(OrderingError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Catalogue and stock
# ---------------------------------------------------------------------------
class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class ProductUnavailable(InvalidRequest):
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} is not available", product_id=product_id)
        self.product_id = product_id


class OutOfStock(Conflict):
    code = "OUT_OF_STOCK"

    def __init__(self, product_id: str, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: {available} available, {requested} requested",
            product_id=product_id,
            available=available,
            requested=requested,
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class InsufficientStock(OutOfStock):
    """Raised by the inventory ledger when a conditional decrement loses a race."""

    code = "INSUFFICIENT_STOCK"


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------
class CouponNotFound(NotFound):
    code = "COUPON_NOT_FOUND"

    def __init__(self, code: str) -> None:
        super().__init__(f"Invalid coupon code {code}", coupon_code=code)


class CouponInactive(InvalidRequest):
    code = "COUPON_INACTIVE"

    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon {code} is no longer active", coupon_code=code)


class CouponExpired(InvalidRequest):
    code = "COUPON_EXPIRED"

    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon {code} has expired", coupon_code=code)


class CouponMinimumNotMet(InvalidRequest):
    code = "COUPON_MINIMUM_NOT_MET"

    def __init__(self, code: str, min_order_value: int, subtotal: int) -> None:
        super().__init__(
            f"Minimum order value of {min_order_value} required for coupon {code}",
            coupon_code=code,
            min_order_value=min_order_value,
            subtotal=subtotal,
        )


class CouponLimitExceeded(Conflict):
    code = "COUPON_LIMIT_EXCEEDED"

    def __init__(self, code: str, limit: int, message: str | None = None) -> None:
        super().__init__(message or f"Coupon {code} usage limit exceeded", coupon_code=code, limit=limit)


class CouponUserLimitExceeded(CouponLimitExceeded):
    code = "COUPON_USER_LIMIT_EXCEEDED"

    def __init__(self, code: str, limit: int) -> None:
        super().__init__(code, limit, message=f"You have reached the usage limit for coupon {code}")


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class InvalidTransition(Conflict):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Cannot transition from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current=current, target=target)
        self.current = current
        self.target = target


class OrderNotCancellable(Conflict):
    code = "ORDER_NOT_CANCELLABLE"

    def __init__(self, order_id: str, status: str) -> None:
        super().__init__(f"Order {order_id} cannot be cancelled in {status} state", order_id=order_id, status=status)
        self.status = status
