"""Service container for the ordering engine.

Everything the engine needs (store, gateway, repositories, ledgers and the
application services built on them) is constructed once at process start,
installed with ``set_services()`` and reached through ``get_services()``.
Nothing is built implicitly. Tests install a fresh container per test and
drop it again with ``reset_services()``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from ordering.config import CheckoutPolicy, RetryPolicy
from ordering.errors import Internal
from ordering.payment.gateway import FakeGateway, PaymentGateway
from ordering.store import DocumentStore, InMemoryDocumentStore

if TYPE_CHECKING:
    from ordering.catalogue.product import ProductRepository
    from ordering.coupon.ledger import CouponUsageLedger
    from ordering.coupon.repository import CouponRepository, CouponUsageRepository
    from ordering.inventory.ledger import InventoryLedger
    from ordering.order.cancellation import CancellationService
    from ordering.order.checkout import CheckoutService
    from ordering.order.repository import OrderRepository
    from ordering.order.status import StatusService
    from ordering.payment.initiation import PaymentInitiator
    from ordering.payment.reconciliation import PaymentReconciler
    from ordering.pricing.evaluator import PricingEvaluator

logger = structlog.get_logger(__name__)


@dataclass
class OrderingServices:
    store: DocumentStore
    gateway: PaymentGateway
    policy: CheckoutPolicy
    retry_policy: RetryPolicy
    products: ProductRepository
    orders: OrderRepository
    coupons: CouponRepository
    coupon_usages: CouponUsageRepository
    pricing: PricingEvaluator
    inventory: InventoryLedger
    coupon_ledger: CouponUsageLedger
    payments: PaymentInitiator
    reconciler: PaymentReconciler
    cancellation: CancellationService
    checkout: CheckoutService
    status: StatusService

    @classmethod
    def build(
        cls,
        store: DocumentStore | None = None,
        gateway: PaymentGateway | None = None,
        policy: CheckoutPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> OrderingServices:
        from ordering.catalogue.product import ProductRepository
        from ordering.coupon.ledger import CouponUsageLedger
        from ordering.coupon.repository import CouponRepository, CouponUsageRepository
        from ordering.inventory.ledger import InventoryLedger
        from ordering.order.cancellation import CancellationService
        from ordering.order.checkout import CheckoutService
        from ordering.order.repository import OrderRepository
        from ordering.order.status import StatusService
        from ordering.payment.initiation import PaymentInitiator
        from ordering.payment.reconciliation import PaymentReconciler
        from ordering.pricing.evaluator import PricingEvaluator

        store = store or InMemoryDocumentStore()
        gateway = gateway or FakeGateway()
        policy = policy or CheckoutPolicy.from_env()
        retry_policy = retry_policy or RetryPolicy.from_env()

        products = ProductRepository(store)
        orders = OrderRepository(store, retry_policy)
        coupons = CouponRepository(store)
        coupon_usages = CouponUsageRepository(store)

        pricing = PricingEvaluator(products, coupons, coupon_usages, policy, clock=clock)
        inventory = InventoryLedger(products, orders, retry_policy)
        coupon_ledger = CouponUsageLedger(coupons, coupon_usages, retry_policy)
        payments = PaymentInitiator(orders, gateway)
        reconciler = PaymentReconciler(orders)
        cancellation = CancellationService(orders, inventory, coupon_ledger, gateway)
        checkout = CheckoutService(
            pricing=pricing,
            inventory=inventory,
            orders=orders,
            coupon_ledger=coupon_ledger,
            payments=payments,
            cancellation=cancellation,
            retry_policy=retry_policy,
        )
        status = StatusService(orders, cancellation)

        logger.info(
            "Ordering services ready",
            store=type(store).__name__,
            gateway=type(gateway).__name__,
            currency=policy.currency,
        )
        return cls(
            store=store,
            gateway=gateway,
            policy=policy,
            retry_policy=retry_policy,
            products=products,
            orders=orders,
            coupons=coupons,
            coupon_usages=coupon_usages,
            pricing=pricing,
            inventory=inventory,
            coupon_ledger=coupon_ledger,
            payments=payments,
            reconciler=reconciler,
            cancellation=cancellation,
            checkout=checkout,
            status=status,
        )


_current_services: OrderingServices | None = None


def get_services() -> OrderingServices:
    """Return the active services. Raises Internal if none were set at startup."""
    if _current_services is None:
        raise Internal("Ordering services are not configured; call set_services() at startup")
    return _current_services


def set_services(services: OrderingServices) -> None:
    """Install the services every command handler and route will use."""
    global _current_services
    _current_services = services


def reset_services() -> None:
    global _current_services
    _current_services = None
