"""Coupon and coupon-usage persistence over the document store."""

from datetime import UTC, datetime

import structlog

from ordering.coupon.coupon import Coupon, normalize_code
from ordering.coupon.usage import CouponRedemption, CouponUsage, usage_key
from ordering.errors import CouponLimitExceeded, CouponNotFound
from ordering.store import BoundViolation, DocumentNotFound, DocumentStore

logger = structlog.get_logger(__name__)

COUPONS = "coupons"
COUPON_USAGE = "coupon_usage"


def _to_iso(value):
    return value.isoformat() if value else None


def _from_iso(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class CouponRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def _to_document(self, coupon: Coupon) -> dict:
        return {
            "coupon_type": coupon.coupon_type,
            "discount_value": coupon.discount_value,
            "min_order_value": coupon.min_order_value or 0,
            "max_discount": coupon.max_discount,
            "usage_limit": coupon.usage_limit,
            "used_count": coupon.used_count or 0,
            "per_user_limit": coupon.per_user_limit,
            "expiry_date": _to_iso(coupon.expiry_date),
            "is_active": coupon.is_active,
            "description": coupon.description,
        }

    def add(self, coupon: Coupon) -> Coupon:
        self._store.create(COUPONS, coupon.code, self._to_document(coupon))
        return coupon

    def get(self, code: str) -> Coupon:
        code = normalize_code(code)
        document = self._store.get(COUPONS, code)
        if document is None:
            raise CouponNotFound(code)
        data = document.data
        return Coupon(
            code=code,
            coupon_type=data["coupon_type"],
            discount_value=data["discount_value"],
            min_order_value=data.get("min_order_value") or 0,
            max_discount=data.get("max_discount"),
            usage_limit=data.get("usage_limit"),
            used_count=data.get("used_count") or 0,
            per_user_limit=data.get("per_user_limit"),
            expiry_date=_from_iso(data["expiry_date"]),
            is_active=data.get("is_active", True),
            description=data.get("description"),
        )

    def increment_usage(self, code: str, usage_limit: int | None) -> int:
        """Count one more use, refusing to pass ``usage_limit``. Returns the new count."""
        try:
            document = self._store.increment(COUPONS, code, "used_count", 1, maximum=usage_limit)
        except BoundViolation as exc:
            raise CouponLimitExceeded(code, usage_limit) from exc
        except DocumentNotFound as exc:
            raise CouponNotFound(code) from exc
        return document.data["used_count"]

    def decrement_usage(self, code: str) -> int:
        try:
            document = self._store.increment(COUPONS, code, "used_count", -1, minimum=0)
        except BoundViolation as exc:
            logger.warning("Coupon used count already at zero", coupon_code=code)
            return exc.current
        except DocumentNotFound as exc:
            raise CouponNotFound(code) from exc
        return document.data["used_count"]


class CouponUsageRepository:
    """Per-user usage records keyed ``CODE:userId``, written with compare-and-set."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def _to_document(self, usage: CouponUsage) -> dict:
        return {
            "coupon_code": usage.coupon_code,
            "user_id": str(usage.user_id),
            "usage_count": usage.usage_count,
            "redemptions": [
                {
                    "order_id": str(r.order_id),
                    "discount_amount": r.discount_amount,
                    "used_at": _to_iso(r.used_at),
                }
                for r in usage.redemptions
            ],
            "first_used_at": _to_iso(usage.first_used_at),
            "last_used_at": _to_iso(usage.last_used_at),
        }

    def _from_document(self, data: dict, revision: int) -> CouponUsage:
        return CouponUsage(
            coupon_code=data["coupon_code"],
            user_id=data["user_id"],
            usage_count=data["usage_count"],
            redemptions=[
                CouponRedemption(
                    order_id=r["order_id"],
                    discount_amount=r["discount_amount"],
                    used_at=_from_iso(r["used_at"]),
                )
                for r in data.get("redemptions", [])
            ],
            first_used_at=_from_iso(data.get("first_used_at")),
            last_used_at=_from_iso(data.get("last_used_at")),
            revision=revision,
        )

    def get(self, coupon_code: str, user_id: str) -> CouponUsage | None:
        document = self._store.get(COUPON_USAGE, usage_key(coupon_code, user_id))
        if document is None:
            return None
        return self._from_document(document.data, document.revision)

    def get_or_new(self, coupon_code: str, user_id: str) -> CouponUsage:
        return self.get(coupon_code, user_id) or CouponUsage(coupon_code=coupon_code, user_id=user_id)

    def usage_count(self, coupon_code: str, user_id: str) -> int:
        usage = self.get(coupon_code, user_id)
        return usage.usage_count if usage else 0

    def save(self, usage: CouponUsage) -> CouponUsage:
        """Create or compare-and-set the record.

        Raises DuplicateDocument or RevisionMismatch when a concurrent writer won.
        """
        data = self._to_document(usage)
        if not usage.revision:
            document = self._store.create(COUPON_USAGE, usage.key, data)
        else:
            document = self._store.replace(COUPON_USAGE, usage.key, data, usage.revision)
        usage.revision = document.revision
        return usage

    def find_by_coupon(self, coupon_code: str) -> list[CouponUsage]:
        return [
            self._from_document(document.data, document.revision)
            for document in self._store.query(COUPON_USAGE, coupon_code=coupon_code)
        ]
