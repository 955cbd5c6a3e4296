"""Shared BDD fixtures and step definitions for the Ordering domain."""

from datetime import UTC, datetime, timedelta

import pytest
from ordering.errors import OrderingError
from ordering.pricing.evaluator import CartLine
from pytest_bdd import given, parsers, then


class Attempt:
    """Outcome of the last When step: its result, or the engine error it raised."""

    def __init__(self):
        self.result = None
        self.exc = None

    def run(self, action):
        try:
            self.result = action()
        except OrderingError as exc:
            self.exc = exc
        return self.result


@pytest.fixture()
def attempt():
    return Attempt()


@pytest.fixture()
def coupon_code():
    return None


# ---------------------------------------------------------------------------
# Given steps: catalogue and coupons
# ---------------------------------------------------------------------------
@given(parsers.cfparse('a product "{product_id}" priced {price:d} with {stock:d} in stock'))
def _(add_product, product_id, price, stock):
    add_product(product_id, price=price, stock=stock)


@given(parsers.cfparse('a fixed coupon "{code}" worth {value:d}'))
def _(add_coupon, code, value):
    add_coupon(code, coupon_type="fixed", discount_value=value)


@given(parsers.cfparse('a percentage coupon "{code}" worth {value:d} percent'))
def _(add_coupon, code, value):
    add_coupon(code, coupon_type="percentage", discount_value=value)


@given(parsers.cfparse('a fixed coupon "{code}" worth {value:d} limited to {limit:d} uses'))
def _(add_coupon, code, value, limit):
    add_coupon(code, coupon_type="fixed", discount_value=value, usage_limit=limit)


@given(parsers.cfparse('the customer applies coupon "{code}"'), target_fixture="coupon_code")
def _(code):
    return code


@given(parsers.cfparse('an expired coupon "{code}"'))
def _(add_coupon, code):
    add_coupon(code, expiry_date=datetime.now(UTC) - timedelta(days=1))


# ---------------------------------------------------------------------------
# Given steps: orders
# ---------------------------------------------------------------------------
@given(
    parsers.cfparse('the customer placed a "{method}" order for {quantity:d} of "{product_id}"'),
    target_fixture="placed",
)
def _(services, customer, address, coupon_code, method, quantity, product_id):
    return services.checkout.place_order(
        customer, [CartLine(product_id, quantity)], method, address, coupon_code=coupon_code
    )


@given("the payment succeeded")
def _(services, placed):
    services.reconciler.handle_callback(placed.transaction_id, "success")


@given(parsers.cfparse('staff moved the order to "{status}"'))
def _(services, staff, placed, status):
    services.status.update_status(str(placed.order.id), staff, status)


@given("the customer cancelled the order")
def _(services, customer, placed):
    services.cancellation.cancel(str(placed.order.id), customer)


# ---------------------------------------------------------------------------
# Then steps: shared, plain assertions
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the order status is "{status}"'))
def _(services, placed, status):
    assert services.orders.get(str(placed.order.id)).status == status


@then(parsers.cfparse('the payment status is "{status}"'))
def _(services, placed, status):
    assert services.orders.get(str(placed.order.id)).payment_status == status


@then(parsers.cfparse('product "{product_id}" has {stock:d} in stock'))
def _(services, product_id, stock):
    assert services.products.get(product_id).stock == stock


@then(parsers.cfparse('coupon "{code}" has been used {count:d} times'))
def _(services, code, count):
    assert services.coupons.get(code).used_count == count


@then(parsers.cfparse('the action fails with "{code}"'))
def _(attempt, code):
    assert attempt.exc is not None, "Expected the action to fail"
    assert attempt.exc.code == code


@then("no order was created")
def _(services):
    assert services.store.query("orders") == []
