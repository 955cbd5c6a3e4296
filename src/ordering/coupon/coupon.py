"""Coupon aggregate: discount rules and eligibility checks.

A coupon is keyed by its upper-cased code. Eligibility is checked in a fixed
order so the caller always gets the first rule that failed:

    exists -> active -> not expired -> minimum order value
           -> global usage limit -> per-user usage limit

``used_count`` is never mutated through the aggregate: it only moves by guarded
atomic increments in the coupon repository.
"""

from datetime import datetime
from enum import Enum

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Integer, String

from ordering.domain import ordering
from ordering.errors import (
    CouponExpired,
    CouponInactive,
    CouponLimitExceeded,
    CouponMinimumNotMet,
    CouponUserLimitExceeded,
)


class CouponType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def normalize_code(code: str) -> str:
    return code.strip().upper()


@ordering.aggregate
class Coupon:
    code = String(identifier=True, max_length=50)
    coupon_type = String(choices=CouponType, required=True)
    discount_value = Integer(required=True, min_value=0)
    min_order_value = Integer(default=0, min_value=0)
    max_discount = Integer(min_value=0)  # Percentage coupons only
    usage_limit = Integer(min_value=0)
    used_count = Integer(default=0, min_value=0)
    per_user_limit = Integer(min_value=0)
    expiry_date = DateTime(required=True)
    is_active = Boolean(default=True)
    description = String(max_length=500)

    @invariant.post
    def used_count_within_usage_limit(self):
        if self.usage_limit is not None and (self.used_count or 0) > self.usage_limit:
            raise ValidationError({"used_count": ["Coupon usage cannot exceed its usage limit"]})

    @invariant.post
    def percentage_cannot_exceed_hundred(self):
        if self.coupon_type == CouponType.PERCENTAGE.value and self.discount_value > 100:
            raise ValidationError({"discount_value": ["Percentage discount cannot exceed 100"]})

    @classmethod
    def create(cls, code, coupon_type, discount_value, expiry_date, **kwargs):
        return cls(
            code=normalize_code(code),
            coupon_type=coupon_type.value if isinstance(coupon_type, CouponType) else coupon_type,
            discount_value=discount_value,
            expiry_date=expiry_date,
            **kwargs,
        )

    def ensure_redeemable(self, subtotal: int, now: datetime, user_usage_count: int = 0) -> None:
        """Raise the first eligibility rule the coupon fails for this cart."""
        if not self.is_active:
            raise CouponInactive(self.code)
        if now > self.expiry_date:
            raise CouponExpired(self.code)
        if subtotal < (self.min_order_value or 0):
            raise CouponMinimumNotMet(self.code, self.min_order_value, subtotal)
        if self.usage_limit is not None and (self.used_count or 0) >= self.usage_limit:
            raise CouponLimitExceeded(self.code, self.usage_limit)
        if self.per_user_limit is not None and user_usage_count >= self.per_user_limit:
            raise CouponUserLimitExceeded(self.code, self.per_user_limit)

    def discount_for(self, subtotal: int) -> int:
        """Discount in minor units, clamped to ``[0, subtotal]``."""
        if self.coupon_type == CouponType.PERCENTAGE.value:
            # Round half up on integer amounts
            discount = (subtotal * self.discount_value + 50) // 100
            if self.max_discount is not None:
                discount = min(discount, self.max_discount)
        else:
            discount = self.discount_value
        return max(0, min(discount, subtotal))
