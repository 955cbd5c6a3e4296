import pytest
from ordering.actor import Actor
from ordering.errors import Forbidden, Internal, OrderNotCancellable, OrderNotFound
from ordering.order.cancellation import CancelOrder
from ordering.order.order import OrderStatus, PaymentStatus
from ordering.store import StoreError
from protean import current_domain


def _stock(services, product_id="P1"):
    return services.products.get(product_id).stock


class TestCancelPendingOrder:
    def test_cancel_releases_stock_and_coupon(self, services, add_product, add_coupon, place_order, customer):
        add_product("P1", stock=5)
        add_coupon("SAVE50")
        order = place_order(coupon_code="SAVE50").order

        cancelled = services.cancellation.cancel(str(order.id), customer, reason="Changed my mind")

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.payment_status == PaymentStatus.CANCELLED.value
        assert cancelled.cancellation_reason == "Changed my mind"
        assert cancelled.stock_released is True
        assert cancelled.coupon_released is True
        assert cancelled.compensation_pending is False
        assert _stock(services) == 5
        assert services.coupons.get("SAVE50").used_count == 0
        assert services.coupon_usages.usage_count("SAVE50", customer.user_id) == 0

    def test_history_records_cancellation(self, services, add_product, place_order, customer):
        add_product("P1")
        order = place_order().order

        cancelled = services.cancellation.cancel(str(order.id), customer)

        last = cancelled.status_history[-1]
        assert last.status == OrderStatus.CANCELLED.value
        assert last.actor == customer.user_id

    def test_second_cancel_is_a_noop(self, services, add_product, place_order, customer):
        add_product("P1", stock=5)
        order = place_order().order

        services.cancellation.cancel(str(order.id), customer)
        again = services.cancellation.cancel(str(order.id), customer)

        assert again.status == OrderStatus.CANCELLED.value
        assert len([h for h in again.status_history if h.status == "cancelled"]) == 1
        assert _stock(services) == 5

    def test_cancel_finishes_outstanding_compensation(self, services, add_product, place_order, staff):
        add_product("P1", stock=5)
        order = place_order().order
        # Cancelled, but the process died before stock was released
        services.orders.update(str(order.id), lambda o: o.cancel(actor=staff.user_id))
        assert _stock(services) == 3

        services.cancellation.cancel(str(order.id), staff)

        assert _stock(services) == 5


class TestCancelPaidOrder:
    def test_paid_order_is_refunded(self, services, gateway, add_product, place_order, customer):
        add_product("P1", stock=5)
        result = place_order(payment_method="card")
        services.reconciler.handle_callback(result.transaction_id, "success")

        cancelled = services.cancellation.cancel(str(result.order.id), customer)

        assert cancelled.payment_status == PaymentStatus.REFUNDED.value
        assert cancelled.refund_requested is True
        refund = gateway.calls_to("request_refund")[0]
        assert refund["transaction_id"] == result.transaction_id
        assert refund["amount"] == cancelled.pricing.total

    def test_refund_requested_once(self, services, gateway, add_product, place_order, customer):
        add_product("P1", stock=5)
        result = place_order(payment_method="card")
        services.reconciler.handle_callback(result.transaction_id, "success")

        services.cancellation.cancel(str(result.order.id), customer)
        services.cancellation.cancel(str(result.order.id), customer)

        assert len(gateway.calls_to("request_refund")) == 1

    def test_failed_refund_does_not_undo_cancellation(self, services, gateway, add_product, place_order, customer):
        add_product("P1", stock=5)
        result = place_order(payment_method="card")
        services.reconciler.handle_callback(result.transaction_id, "success")
        gateway.configure(should_succeed=False)

        cancelled = services.cancellation.cancel(str(result.order.id), customer)

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert _stock(services) == 5


class TestCompensationFailure:
    def test_failed_stock_release_is_finished_by_next_cancel(
        self, services, store, add_product, place_order, customer, monkeypatch
    ):
        add_product("P1", stock=5)
        order = place_order(payment_method="cod").order
        original_increment = store.increment

        def products_unavailable(collection, key, field, delta, minimum=None, maximum=None):
            if collection == "products":
                raise StoreError("stock write timed out")
            return original_increment(collection, key, field, delta, minimum=minimum, maximum=maximum)

        monkeypatch.setattr(store, "increment", products_unavailable)
        with pytest.raises(Internal):
            services.cancellation.cancel(str(order.id), customer)

        monkeypatch.undo()
        first = services.orders.get(str(order.id))
        assert first.status == OrderStatus.CANCELLED.value
        assert first.stock_released is False
        assert first.compensation_pending
        assert _stock(services) == 3

        second = services.cancellation.cancel(str(order.id), customer)

        assert second.stock_released is True
        assert second.compensation_pending is False
        assert _stock(services) == 5

    def test_partially_released_stock_is_not_restored_twice(
        self, services, store, add_product, place_order, customer, monkeypatch
    ):
        add_product("P1", stock=5)
        add_product("P2", stock=5)
        order = place_order(items=(("P1", 2), ("P2", 1)), payment_method="cod").order
        original_increment = store.increment

        def p2_unavailable(collection, key, field, delta, minimum=None, maximum=None):
            if collection == "products" and key == "P2":
                raise StoreError("stock write timed out")
            return original_increment(collection, key, field, delta, minimum=minimum, maximum=maximum)

        monkeypatch.setattr(store, "increment", p2_unavailable)
        with pytest.raises(Internal):
            services.cancellation.cancel(str(order.id), customer)

        monkeypatch.undo()
        assert services.orders.get(str(order.id)).restored_product_ids == ["P1"]
        assert _stock(services, "P1") == 5
        assert _stock(services, "P2") == 4

        services.cancellation.cancel(str(order.id), customer)

        assert _stock(services, "P1") == 5
        assert _stock(services, "P2") == 5

    def test_failed_coupon_rollback_is_finished_by_next_cancel(
        self, services, store, add_product, add_coupon, place_order, customer, monkeypatch
    ):
        add_product("P1", stock=5)
        add_coupon("SAVE50")
        order = place_order(payment_method="cod", coupon_code="SAVE50").order
        original_increment = store.increment

        def coupons_unavailable(collection, key, field, delta, minimum=None, maximum=None):
            if collection == "coupons":
                raise StoreError("coupon write timed out")
            return original_increment(collection, key, field, delta, minimum=minimum, maximum=maximum)

        monkeypatch.setattr(store, "increment", coupons_unavailable)
        with pytest.raises(StoreError):
            services.cancellation.cancel(str(order.id), customer)

        monkeypatch.undo()
        first = services.orders.get(str(order.id))
        assert first.stock_released is True
        assert first.coupon_released is False
        assert services.coupons.get("SAVE50").used_count == 1

        second = services.cancellation.cancel(str(order.id), customer)

        assert second.coupon_released is True
        assert second.compensation_pending is False
        assert services.coupons.get("SAVE50").used_count == 0
        assert services.coupon_usages.usage_count("SAVE50", customer.user_id) == 0


class TestCancelGuards:
    def test_other_customer_is_forbidden(self, services, add_product, place_order):
        add_product("P1", stock=5)
        order = place_order().order

        with pytest.raises(Forbidden):
            services.cancellation.cancel(str(order.id), Actor(user_id="user-999"))

        assert services.orders.get(str(order.id)).status == OrderStatus.PENDING.value
        assert _stock(services) == 3

    def test_staff_may_cancel_any_order(self, services, add_product, place_order, staff):
        add_product("P1")
        order = place_order().order
        assert services.cancellation.cancel(str(order.id), staff).status == OrderStatus.CANCELLED.value

    @pytest.mark.parametrize("path", [["confirmed", "processing", "shipped"], ["confirmed", "processing", "shipped", "delivered"]])
    def test_shipped_and_delivered_cannot_be_cancelled(self, services, add_product, place_order, staff, path):
        add_product("P1", stock=5)
        order = place_order(payment_method="cod").order
        for status in path:
            services.status.update_status(str(order.id), staff, status)

        with pytest.raises(OrderNotCancellable):
            services.cancellation.cancel(str(order.id), staff)
        assert _stock(services) == 3

    def test_unknown_order(self, services, customer):
        with pytest.raises(OrderNotFound):
            services.cancellation.cancel("missing", customer)


class TestCancelOrderCommand:
    def test_command_cancels(self, services, add_product, place_order):
        add_product("P1", stock=5)
        order = place_order().order

        order_id = current_domain.process(
            CancelOrder(order_id=str(order.id), actor_id="user-001", actor_role="customer"),
            asynchronous=False,
        )

        assert order_id == str(order.id)
        assert services.orders.get(order_id).status == OrderStatus.CANCELLED.value
