"""Integration tests for the Ordering API endpoints via TestClient."""

import inspect
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from ordering.api import admin_router, coupon_router, order_router, payment_router, register_exception_handlers

CUSTOMER = {"X-User-Id": "user-001", "X-User-Role": "customer"}
OTHER_CUSTOMER = {"X-User-Id": "user-999", "X-User-Role": "customer"}
STAFF = {"X-User-Id": "staff-001", "X-User-Role": "staff"}
SIGNED = {"X-Gateway-Signature": "test-signature"}


@pytest.fixture()
def client(services):
    app = FastAPI()
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(coupon_router)
    app.include_router(admin_router)
    register_exception_handlers(app)
    return TestClient(app)


@pytest.fixture()
def catalogue(add_product, add_coupon):
    add_product("P1", price=2999, stock=5, name="Kettle")
    add_coupon("SAVE50", discount_value=50, min_order_value=300)
    add_coupon("EXPIRED1", expiry_date=datetime.now(UTC) - timedelta(days=1))


def _place(client, address, payment_method="card", quantity=2, coupon_code=None, headers=CUSTOMER):
    body = {
        "items": [{"product_id": "P1", "quantity": quantity}],
        "shipping_address": address,
        "payment_method": payment_method,
    }
    if coupon_code:
        body["coupon_code"] = coupon_code
    return client.post("/orders", json=body, headers=headers)


def _error(response):
    return response.json()["error"]


class TestPlaceOrder:
    def test_place_order_with_coupon(self, client, catalogue, address, services):
        response = _place(client, address, coupon_code="SAVE50")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["payment_status"] == "awaiting_payment"
        assert body["order_number"].startswith("ORD-")
        assert body["transaction_id"]
        assert body["client_secret"]
        order = services.orders.get(body["order_id"])
        assert body["total"] == order.pricing.total
        assert order.pricing.discount == 50

    def test_cod_order_has_no_payment_intent(self, client, catalogue, address):
        response = _place(client, address, payment_method="cod")

        assert response.status_code == 201
        assert response.json()["payment_status"] == "pending_cod"
        assert response.json()["transaction_id"] is None

    def test_out_of_stock_is_conflict(self, client, catalogue, address):
        response = _place(client, address, quantity=6)

        assert response.status_code == 409
        error = _error(response)
        assert error["code"] == "OUT_OF_STOCK"
        assert error["kind"] == "conflict"
        assert error["details"] == {"product_id": "P1", "available": 5, "requested": 6}

    def test_expired_coupon_is_validation_error(self, client, catalogue, address):
        response = _place(client, address, coupon_code="EXPIRED1")

        assert response.status_code == 400
        assert _error(response)["code"] == "COUPON_EXPIRED"

    def test_unknown_coupon(self, client, catalogue, address):
        response = _place(client, address, coupon_code="NOPE")
        assert response.status_code == 404
        assert _error(response)["code"] == "COUPON_NOT_FOUND"

    def test_malformed_body(self, client, catalogue, address):
        response = client.post(
            "/orders",
            json={"items": [], "shipping_address": address, "payment_method": "cheque"},
            headers=CUSTOMER,
        )

        assert response.status_code == 400
        assert _error(response)["code"] == "VALIDATION_ERROR"

    def test_missing_identity(self, client, catalogue, address):
        assert _place(client, address, headers={}).status_code == 401

    def test_unknown_role_forbidden(self, client, catalogue, address):
        response = _place(client, address, headers={"X-User-Id": "user-001", "X-User-Role": "system"})
        assert response.status_code == 403


class TestReadOrders:
    def test_get_order(self, client, catalogue, address):
        order_id = _place(client, address).json()["order_id"]

        response = client.get(f"/orders/{order_id}", headers=CUSTOMER)

        assert response.status_code == 200
        body = response.json()
        assert body["items"] == [
            {"product_id": "P1", "name": "Kettle", "unit_price": 2999, "quantity": 2, "line_total": 5998}
        ]
        assert body["pricing"]["subtotal"] == 5998
        assert body["shipping_address"]["city"] == "Bengaluru"
        assert body["status_history"][0]["status"] == "pending"

    def test_other_customer_cannot_read(self, client, catalogue, address):
        order_id = _place(client, address).json()["order_id"]
        response = client.get(f"/orders/{order_id}", headers=OTHER_CUSTOMER)
        assert response.status_code == 403
        assert _error(response)["code"] == "FORBIDDEN"

    def test_staff_can_read_any_order(self, client, catalogue, address):
        order_id = _place(client, address).json()["order_id"]
        assert client.get(f"/orders/{order_id}", headers=STAFF).status_code == 200

    def test_unknown_order(self, client, services):
        response = client.get("/orders/missing", headers=CUSTOMER)
        assert response.status_code == 404
        assert _error(response)["code"] == "ORDER_NOT_FOUND"

    def test_list_own_orders(self, client, catalogue, address):
        _place(client, address, quantity=1)
        _place(client, address, quantity=1, payment_method="cod")

        response = client.get("/orders", params={"limit": 1}, headers=CUSTOMER)

        body = response.json()
        assert body["total"] == 2
        assert body["pages"] == 2
        assert len(body["orders"]) == 1
        assert client.get("/orders", headers=OTHER_CUSTOMER).json()["total"] == 0

    def test_list_filters_by_status(self, client, catalogue, address):
        order_id = _place(client, address, quantity=1).json()["order_id"]
        _place(client, address, quantity=1)
        client.post(f"/orders/{order_id}/cancel", headers=CUSTOMER)

        body = client.get("/orders", params={"status": "cancelled"}, headers=CUSTOMER).json()

        assert [o["order_id"] for o in body["orders"]] == [order_id]

    def test_tracking(self, client, catalogue, address):
        order_id = _place(client, address, payment_method="cod").json()["order_id"]
        for status in ("confirmed", "processing"):
            client.put(f"/orders/{order_id}/status", json={"status": status}, headers=STAFF)
        client.put(
            f"/orders/{order_id}/status",
            json={"status": "shipped", "tracking_number": "TRK123"},
            headers=STAFF,
        )

        body = client.get(f"/orders/{order_id}/tracking", headers=CUSTOMER).json()

        assert body["status"] == "shipped"
        assert body["tracking_number"] == "TRK123"
        assert [h["status"] for h in body["status_history"]] == ["pending", "confirmed", "processing", "shipped"]
        assert body["estimated_delivery"] is not None


class TestCancelAndStatus:
    def test_cancel_order(self, client, catalogue, address, services):
        order_id = _place(client, address, coupon_code="SAVE50").json()["order_id"]

        response = client.post(f"/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=CUSTOMER)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancellation_reason"] == "Changed my mind"
        assert services.products.get("P1").stock == 5
        assert services.coupons.get("SAVE50").used_count == 0

    def test_cancel_twice_is_ok(self, client, catalogue, address):
        order_id = _place(client, address).json()["order_id"]
        client.post(f"/orders/{order_id}/cancel", headers=CUSTOMER)
        assert client.post(f"/orders/{order_id}/cancel", headers=CUSTOMER).status_code == 200

    def test_shipped_order_not_cancellable(self, client, catalogue, address):
        order_id = _place(client, address, payment_method="cod").json()["order_id"]
        for status in ("confirmed", "processing", "shipped"):
            client.put(f"/orders/{order_id}/status", json={"status": status}, headers=STAFF)

        response = client.post(f"/orders/{order_id}/cancel", headers=CUSTOMER)

        assert response.status_code == 409
        assert _error(response)["code"] == "ORDER_NOT_CANCELLABLE"

    def test_status_update_requires_staff(self, client, catalogue, address):
        order_id = _place(client, address, payment_method="cod").json()["order_id"]
        response = client.put(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=CUSTOMER)
        assert response.status_code == 403

    def test_invalid_transition(self, client, catalogue, address):
        order_id = _place(client, address, payment_method="cod").json()["order_id"]

        response = client.put(f"/orders/{order_id}/status", json={"status": "delivered"}, headers=STAFF)

        assert response.status_code == 409
        error = _error(response)
        assert error["code"] == "INVALID_TRANSITION"
        assert error["details"]["current"] == "pending"
        assert error["details"]["target"] == "delivered"


class TestPayments:
    def test_webhook_confirms_order(self, client, catalogue, address):
        placed = _place(client, address).json()

        response = client.post(
            "/payments/webhook",
            json={"transaction_id": placed["transaction_id"], "outcome": "success"},
            headers=SIGNED,
        )

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "order_id": placed["order_id"], "reason": None}
        order = client.get(f"/orders/{placed['order_id']}", headers=CUSTOMER).json()
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "paid"

    def test_webhook_rejects_bad_signature(self, client, catalogue, address):
        placed = _place(client, address).json()

        response = client.post(
            "/payments/webhook",
            json={"transaction_id": placed["transaction_id"], "outcome": "success"},
            headers={"X-Gateway-Signature": "forged"},
        )

        assert response.status_code == 401
        assert client.get(f"/orders/{placed['order_id']}", headers=CUSTOMER).json()["status"] == "pending"

    def test_webhook_for_unknown_order_is_acknowledged(self, client, services):
        response = client.post(
            "/payments/webhook",
            json={"transaction_id": "txn_unknown", "outcome": "failure"},
            headers=SIGNED,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_retry_payment(self, client, catalogue, address):
        placed = _place(client, address).json()
        client.post(
            "/payments/webhook",
            json={"transaction_id": placed["transaction_id"], "outcome": "failure", "failure_reason": "Declined"},
            headers=SIGNED,
        )

        response = client.post(f"/orders/{placed['order_id']}/payment/retry", headers=CUSTOMER)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["payment_status"] == "awaiting_payment"
        assert body["transaction_id"] not in (None, placed["transaction_id"])

    def test_payment_status_by_transaction(self, client, catalogue, address):
        placed = _place(client, address).json()

        response = client.get(f"/payments/status/{placed['transaction_id']}", headers=CUSTOMER)

        assert response.status_code == 200
        body = response.json()
        assert body["order_id"] == placed["order_id"]
        assert body["order_number"] == placed["order_number"]
        assert body["amount"] == placed["total"]
        assert body["currency"] == "INR"
        assert body["payment_status"] == "awaiting_payment"
        assert body["order_status"] == "pending"
        assert body["payment_attempts"] == 1

    def test_payment_status_follows_callbacks(self, client, catalogue, address):
        placed = _place(client, address).json()
        client.post(
            "/payments/webhook",
            json={"transaction_id": placed["transaction_id"], "outcome": "success"},
            headers=SIGNED,
        )

        body = client.get(f"/payments/status/{placed['transaction_id']}", headers=STAFF).json()

        assert body["payment_status"] == "paid"
        assert body["order_status"] == "confirmed"

    def test_payment_status_hidden_from_other_customers(self, client, catalogue, address):
        placed = _place(client, address).json()

        response = client.get(f"/payments/status/{placed['transaction_id']}", headers=OTHER_CUSTOMER)

        assert response.status_code == 403

    def test_unknown_transaction(self, client, services):
        response = client.get("/payments/status/txn_missing", headers=CUSTOMER)

        assert response.status_code == 404
        assert _error(response)["details"] == {"transaction_id": "txn_missing"}


class TestCoupons:
    def test_validate_coupon(self, client, catalogue):
        response = client.post("/coupons/validate", json={"code": "save50", "order_total": 5998}, headers=CUSTOMER)

        assert response.status_code == 200
        assert response.json() == {
            "code": "SAVE50",
            "coupon_type": "fixed",
            "discount": 50,
            "final_amount": 5948,
            "description": None,
        }

    def test_validate_below_minimum(self, client, catalogue):
        response = client.post("/coupons/validate", json={"code": "SAVE50", "order_total": 100}, headers=CUSTOMER)
        assert response.status_code == 400
        assert _error(response)["code"] == "COUPON_MINIMUM_NOT_MET"

    def test_validate_does_not_consume(self, client, catalogue, services):
        client.post("/coupons/validate", json={"code": "SAVE50", "order_total": 5998}, headers=CUSTOMER)
        assert services.coupons.get("SAVE50").used_count == 0

    def test_stats_for_staff(self, client, catalogue, address):
        _place(client, address, coupon_code="SAVE50")

        response = client.get("/coupons/SAVE50/stats", headers=STAFF)

        assert response.status_code == 200
        body = response.json()
        assert body["used_count"] == 1
        assert body["unique_users"] == 1
        assert body["total_discount"] == 50

    def test_stats_forbidden_for_customers(self, client, catalogue):
        assert client.get("/coupons/SAVE50/stats", headers=CUSTOMER).status_code == 403


class TestAdminOrders:
    def test_staff_see_every_customer(self, client, catalogue, address):
        _place(client, address, quantity=1)
        _place(client, address, quantity=1, headers=OTHER_CUSTOMER)

        response = client.get("/admin/orders", headers=STAFF)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {order["user_id"] for order in body["orders"]} == {"user-001", "user-999"}

    def test_filter_by_status_and_customer(self, client, catalogue, address):
        first = _place(client, address, quantity=1).json()
        _place(client, address, quantity=1)
        _place(client, address, quantity=1, headers=OTHER_CUSTOMER)
        client.post(f"/orders/{first['order_id']}/cancel", headers=CUSTOMER)

        cancelled = client.get("/admin/orders", params={"status": "cancelled"}, headers=STAFF).json()
        mine = client.get("/admin/orders", params={"user_id": "user-001"}, headers=STAFF).json()

        assert [order["order_id"] for order in cancelled["orders"]] == [first["order_id"]]
        assert mine["total"] == 2

    def test_pagination(self, client, catalogue, address):
        for _ in range(3):
            _place(client, address, quantity=1)

        body = client.get("/admin/orders", params={"page": 2, "limit": 2}, headers=STAFF).json()

        assert body["total"] == 3
        assert body["pages"] == 2
        assert len(body["orders"]) == 1

    def test_customers_are_forbidden(self, client, catalogue, address):
        assert client.get("/admin/orders", headers=CUSTOMER).status_code == 403

    def test_unknown_status_filter(self, client, services):
        response = client.get("/admin/orders", params={"status": "lost"}, headers=STAFF)

        assert response.status_code == 400
        assert _error(response)["code"] == "VALIDATION_ERROR"


class TestRouteExecution:
    def test_engine_routes_run_in_the_threadpool(self):
        routers = (order_router, payment_router, coupon_router, admin_router)
        async_routes = {
            route.path for router in routers for route in router.routes if inspect.iscoroutinefunction(route.endpoint)
        }
        # The webhook only awaits the raw body, then hands the command to the threadpool
        assert async_routes == {"/payments/webhook"}
