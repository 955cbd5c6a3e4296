"""Per-user coupon usage record.

One record per ``(coupon code, user)`` pair. Each redemption is tied to the
order that consumed it, which makes recording and rolling back idempotent per
order.
"""

from datetime import UTC, datetime

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, HasMany, Identifier, Integer, String

from ordering.domain import ordering
from ordering.errors import CouponUserLimitExceeded


def usage_key(coupon_code: str, user_id: str) -> str:
    return f"{coupon_code}:{user_id}"


@ordering.entity(part_of="CouponUsage")
class CouponRedemption:
    order_id = Identifier(required=True)
    discount_amount = Integer(default=0, min_value=0)
    used_at = DateTime()


@ordering.aggregate
class CouponUsage:
    coupon_code = String(required=True, max_length=50)
    user_id = Identifier(required=True)
    usage_count = Integer(default=0, min_value=0)
    redemptions = HasMany(CouponRedemption)
    first_used_at = DateTime()
    last_used_at = DateTime()
    revision = Integer(default=0)

    @invariant.post
    def usage_count_matches_redemptions(self):
        if self.usage_count != len(self.redemptions):
            raise ValidationError({"usage_count": ["Usage count must match the number of redemptions"]})

    @property
    def key(self) -> str:
        return usage_key(self.coupon_code, self.user_id)

    def find_redemption(self, order_id):
        return next((r for r in self.redemptions if str(r.order_id) == str(order_id)), None)

    def redeem(self, order_id, discount_amount, per_user_limit=None, used_at=None):
        """Add a redemption for ``order_id``.

        Returns False when the order was already recorded.
        """
        if self.find_redemption(order_id) is not None:
            return False
        if per_user_limit is not None and self.usage_count >= per_user_limit:
            raise CouponUserLimitExceeded(self.coupon_code, per_user_limit)

        now = used_at or datetime.now(UTC)
        with atomic_change(self):
            self.add_redemptions(
                CouponRedemption(order_id=order_id, discount_amount=discount_amount, used_at=now)
            )
            self.usage_count = len(self.redemptions)
            self.first_used_at = self.first_used_at or now
            self.last_used_at = now
        return True

    def revoke(self, order_id):
        """Remove the redemption for ``order_id``. Returns False if there was none."""
        redemption = self.find_redemption(order_id)
        if redemption is None:
            return False
        with atomic_change(self):
            self.remove_redemptions(redemption)
            self.usage_count = len(self.redemptions)
        return True
