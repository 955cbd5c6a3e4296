from datetime import UTC, datetime, timedelta

import pytest
from protean.integrations.pytest import DomainFixture


@pytest.fixture(scope="session")
def ordering_bed():
    from ordering.domain import ordering

    bed = DomainFixture(ordering)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(ordering_bed):
    with ordering_bed.domain_context():
        yield


@pytest.fixture()
def gateway():
    from ordering.payment.gateway import FakeGateway

    return FakeGateway()


@pytest.fixture()
def store():
    from ordering.store import InMemoryDocumentStore

    return InMemoryDocumentStore()


@pytest.fixture()
def services(store, gateway):
    """Fresh engine wired to an empty store, with default checkout policy and fast retries."""
    from ordering.config import CheckoutPolicy, RetryPolicy
    from ordering.services import OrderingServices, reset_services, set_services

    services = OrderingServices.build(
        store=store,
        gateway=gateway,
        policy=CheckoutPolicy(),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.005),
    )
    set_services(services)
    yield services
    reset_services()


@pytest.fixture()
def add_product(services):
    from ordering.catalogue.product import Product

    def _add(product_id="P1", price=2999, stock=5, name=None, is_active=True):
        return services.products.add(
            Product(id=product_id, name=name or f"Product {product_id}", price=price, stock=stock, is_active=is_active)
        )

    return _add


@pytest.fixture()
def add_coupon(services):
    from ordering.coupon.coupon import Coupon

    def _add(code="SAVE50", coupon_type="fixed", discount_value=50, expiry_date=None, **kwargs):
        coupon = Coupon.create(
            code=code,
            coupon_type=coupon_type,
            discount_value=discount_value,
            expiry_date=expiry_date or datetime.now(UTC) + timedelta(days=30),
            **kwargs,
        )
        return services.coupons.add(coupon)

    return _add


@pytest.fixture()
def address():
    return {
        "name": "Asha Rao",
        "phone": "9876543210",
        "line1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "postal_code": "560001",
    }


@pytest.fixture()
def customer():
    from ordering.actor import Actor

    return Actor(user_id="user-001", role="customer")


@pytest.fixture()
def staff():
    from ordering.actor import Actor

    return Actor(user_id="staff-001", role="staff")


@pytest.fixture()
def place_order(services, customer, address):
    """Run checkout for ``customer`` and return the CheckoutResult."""
    from ordering.pricing.evaluator import CartLine

    def _place(items=(("P1", 2),), payment_method="card", coupon_code=None, actor=None):
        return services.checkout.place_order(
            actor or customer,
            [CartLine(product_id=pid, quantity=qty) for pid, qty in items],
            payment_method,
            address,
            coupon_code=coupon_code,
        )

    return _place
