"""BDD tests for checkout."""

from ordering.pricing.evaluator import CartLine
from pytest_bdd import parsers, scenarios, then, when

scenarios("features/checkout.feature")


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@when(parsers.cfparse('the customer checks out {quantity:d} of "{product_id}" by "{method}"'))
def _(services, customer, address, attempt, coupon_code, quantity, product_id, method):
    attempt.run(
        lambda: services.checkout.place_order(
            customer, [CartLine(product_id, quantity)], method, address, coupon_code=coupon_code
        )
    )


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then("the checkout succeeds", target_fixture="placed")
def _(attempt):
    assert attempt.exc is None, f"Checkout failed: {attempt.exc}"
    return attempt.result


@then(parsers.cfparse("the order {component} is {amount:d}"))
def _(placed, component, amount):
    assert getattr(placed.order.pricing, component) == amount
