"""Coupon usage ledger: global and per-user usage counters.

Recording a redemption touches two documents that the store cannot update in
one transaction:

1. the per-user record, written with compare-and-set and guarded by the
   coupon's per-user limit;
2. the coupon's global ``used_count``, moved by a single atomic increment
   guarded by its usage limit.

The per-user record goes first. If the global increment fails for any reason,
the per-user redemption is removed again before the error propagates, so a
failed redemption never leaves a counter raised.
"""

from dataclasses import dataclass

import structlog

from ordering.config import RetryPolicy
from ordering.coupon.coupon import normalize_code
from ordering.coupon.repository import CouponRepository, CouponUsageRepository
from ordering.errors import Conflict
from ordering.store import DuplicateDocument, RevisionMismatch, StoreError
from ordering.utils.retry import retry_with_backoff

logger = structlog.get_logger(__name__)

_STALE_WRITES = (RevisionMismatch, DuplicateDocument)


@dataclass(frozen=True)
class CouponStats:
    code: str
    used_count: int
    usage_limit: int | None
    unique_users: int
    total_orders: int
    total_discount: int
    average_discount: int


class CouponUsageLedger:
    def __init__(
        self,
        coupons: CouponRepository,
        usages: CouponUsageRepository,
        retry_policy: RetryPolicy,
    ) -> None:
        self._coupons = coupons
        self._usages = usages
        self._retry_policy = retry_policy

    def _with_cas_retry(self, operation, description):
        try:
            return retry_with_backoff(operation, self._retry_policy, _STALE_WRITES, description)
        except _STALE_WRITES as exc:
            raise Conflict(f"Could not {description} after concurrent updates") from exc

    def record_usage(self, coupon_code: str, user_id: str, order_id: str, discount_amount: int) -> bool:
        """Count one redemption of ``coupon_code`` by ``user_id`` for ``order_id``.

        Returns False when the order was already recorded. Raises
        CouponLimitExceeded (or CouponUserLimitExceeded) when a cap would be passed.
        """
        code = normalize_code(coupon_code)
        coupon = self._coupons.get(code)

        def claim_user_slot():
            usage = self._usages.get_or_new(code, user_id)
            if not usage.redeem(order_id, discount_amount, coupon.per_user_limit):
                return False
            self._usages.save(usage)
            return True

        if not self._with_cas_retry(claim_user_slot, "record per-user coupon usage"):
            logger.info("Coupon usage already recorded", coupon_code=code, order_id=order_id)
            return False

        try:
            used_count = self._coupons.increment_usage(code, coupon.usage_limit)
        except Exception as exc:
            logger.warning(
                "Coupon usage could not be counted, undoing per-user redemption",
                coupon_code=code,
                user_id=user_id,
                order_id=order_id,
                error=str(exc),
            )
            self._with_cas_retry(lambda: self._revoke(code, user_id, order_id), "undo per-user coupon usage")
            raise

        logger.info(
            "Recorded coupon usage",
            coupon_code=code,
            user_id=user_id,
            order_id=order_id,
            discount=discount_amount,
            used_count=used_count,
        )
        return True

    def _revoke(self, code, user_id, order_id):
        """Remove the redemption for ``order_id`` and return it, or None if absent."""
        usage = self._usages.get(code, user_id)
        if usage is None:
            return None
        redemption = usage.find_redemption(order_id)
        if redemption is None:
            return None
        removed = (redemption.discount_amount, redemption.used_at)
        usage.revoke(order_id)
        self._usages.save(usage)
        return removed

    def _reinstate(self, code, user_id, order_id, discount_amount, used_at):
        usage = self._usages.get_or_new(code, user_id)
        if not usage.redeem(order_id, discount_amount, used_at=used_at):
            return False
        self._usages.save(usage)
        return True

    def rollback_usage(self, coupon_code: str, user_id: str, order_id: str) -> bool:
        """Undo the redemption made for ``order_id``. A second call is a no-op.

        If the global count cannot be lowered, the per-user redemption is put
        back before the error propagates, so a later rollback starts over.
        """
        code = normalize_code(coupon_code)
        removed = self._with_cas_retry(lambda: self._revoke(code, user_id, order_id), "roll back coupon usage")
        if removed is None:
            logger.info("No coupon usage to roll back", coupon_code=code, order_id=order_id)
            return False

        try:
            retry_with_backoff(
                lambda: self._coupons.decrement_usage(code),
                self._retry_policy,
                (StoreError,),
                "decrement coupon used count",
            )
        except Exception:
            logger.error(
                "Coupon used count could not be lowered, restoring per-user redemption",
                coupon_code=code,
                order_id=order_id,
            )
            discount_amount, used_at = removed
            self._with_cas_retry(
                lambda: self._reinstate(code, user_id, order_id, discount_amount, used_at),
                "restore per-user coupon usage",
            )
            raise

        logger.info("Rolled back coupon usage", coupon_code=code, user_id=user_id, order_id=order_id)
        return True

    def stats(self, coupon_code: str) -> CouponStats:
        code = normalize_code(coupon_code)
        coupon = self._coupons.get(code)
        usages = self._usages.find_by_coupon(code)
        redemptions = [r for usage in usages for r in usage.redemptions]
        total_discount = sum(r.discount_amount for r in redemptions)
        return CouponStats(
            code=code,
            used_count=coupon.used_count,
            usage_limit=coupon.usage_limit,
            unique_users=sum(1 for usage in usages if usage.usage_count > 0),
            total_orders=len(redemptions),
            total_discount=total_discount,
            average_discount=round(total_discount / len(redemptions)) if redemptions else 0,
        )
