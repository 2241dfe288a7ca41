"""Tests for checkout pricing, order placement and the order lifecycle."""

from datetime import timedelta

import pytest

from storefront.accounts.models import UserRole, PermissionModule, PermissionAction
from storefront.coupons.service import CouponError
from storefront.inventory.service import InsufficientStockError
from storefront.shared.utils import utcnow
from tests.conftest import run


def order_body(store, quantity=1, **extra):
    return {
        "items": [{"product_id": store["product"]["id"], "quantity": quantity}],
        "shipping_address_id": store["address"]["id"],
        **extra,
    }


def order_admin(seed):
    return seed.user(
        role=UserRole.ADMIN,
        permissions={PermissionModule.ORDERS: [PermissionAction.READ, PermissionAction.UPDATE]},
    )


class TestPreview:
    def test_paid_shipping_and_gst(self, client, seed, store):
        response = client.post("/api/orders/preview", json=order_body(store), headers=seed.headers(store["shopper"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["subtotal"] == 500.0
        # Cheapest courier wins
        assert data["shipping_cost"] == 60.0
        assert data["courier"]["courier_name"] == "Delhivery"
        # 18% GST on 500 + 60
        assert data["tax_amount"] == 100.8
        assert data["total"] == 660.8
        assert data["is_free_shipping"] is False
        assert data["cod_available"] is True

    def test_free_shipping_over_threshold(self, client, seed, store):
        response = client.post(
            "/api/orders/preview", json=order_body(store, quantity=2), headers=seed.headers(store["shopper"])
        )

        data = response.json()["data"]
        assert data["subtotal"] == 1000.0
        assert data["shipping_cost"] == 0.0
        assert data["is_free_shipping"] is True
        assert data["total"] == 1180.0

    def test_coupon_applied_before_tax(self, client, seed, store):
        seed.coupon(code="SAVE10", max_usage=2, per_user_limit=1)

        response = client.post(
            "/api/orders/preview",
            json=order_body(store, quantity=2, coupon_code="save10"),
            headers=seed.headers(store["shopper"]),
        )

        data = response.json()["data"]
        assert data["discount"] == 100.0
        assert data["coupon_code"] == "SAVE10"
        assert data["tax_amount"] == 162.0
        assert data["total"] == 1062.0

    def test_invalid_coupon_reported_not_raised(self, client, seed, store):
        seed.coupon(code="SAVE10", min_order="5000")

        response = client.post(
            "/api/orders/preview",
            json=order_body(store, coupon_code="SAVE10"),
            headers=seed.headers(store["shopper"]),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["discount"] == 0.0
        assert data["coupon_error"] == "Minimum order value not met"

    def test_fastest_courier_preference(self, client, seed, store):
        response = client.post(
            "/api/orders/preview",
            json=order_body(store, courier_preference="fastest"),
            headers=seed.headers(store["shopper"]),
        )

        data = response.json()["data"]
        assert data["courier"]["courier_name"] == "BlueDart"
        assert data["shipping_cost"] == 90.0

    def test_flat_fee_when_courier_api_is_down(self, client, seed, store, carrier):
        carrier.serviceability_down = True

        response = client.post("/api/orders/preview", json=order_body(store), headers=seed.headers(store["shopper"]))

        data = response.json()["data"]
        assert data["serviceable"] is True
        assert data["shipping_cost"] == 50.0
        assert data["courier"] is None


class TestPlaceOrder:
    def test_online_order_reserves_stock_and_opens_session(self, client, seed, store, gateway):
        response = client.post("/api/orders", json=order_body(store, quantity=2), headers=seed.headers(store["shopper"]))

        assert response.status_code == 201
        data = response.json()["data"]
        order = data["order"]
        assert order["status"] == "pending"
        assert order["order_number"].startswith("ORD-")
        assert order["total"] == 1180.0
        assert data["payment"]["status"] == "pending"
        assert data["checkout"]["receipt"] == order["order_number"]
        assert data["checkout"]["amount"] == 118000
        assert gateway.orders[0]["amount"] == 118000
        assert seed.stock_level(store["product"], store["warehouse"]) == 8

    def test_insufficient_stock_creates_nothing(self, client, seed, store, gateway):
        product = seed.product(price="300")
        seed.stock(product, store["warehouse"], 3)
        body = {
            "items": [{"product_id": product["id"], "quantity": 5}],
            "shipping_address_id": store["address"]["id"],
        }

        response = client.post("/api/orders", json=body, headers=seed.headers(store["shopper"]))

        assert response.status_code == 400
        assert "Insufficient stock" in response.json()["message"]
        assert run(seed.db.orders.count_documents({})) == 0
        assert run(seed.db.payments.count_documents({})) == 0
        assert gateway.orders == []
        assert seed.stock_level(product, store["warehouse"]) == 3

    def test_cod_over_limit_rejected(self, client, seed, store):
        product = seed.product(price="2500")
        seed.stock(product, store["warehouse"], 5)
        body = {
            "items": [{"product_id": product["id"], "quantity": 1}],
            "shipping_address_id": store["address"]["id"],
            "payment_method": "cod",
        }

        response = client.post("/api/orders", json=body, headers=seed.headers(store["shopper"]))

        assert response.status_code == 400
        assert "Cash on delivery" in response.json()["message"]
        assert seed.stock_level(product, store["warehouse"]) == 5

    def test_cod_order_is_confirmed_immediately(self, client, seed, store, gateway, mailer):
        response = client.post(
            "/api/orders", json=order_body(store, payment_method="cod"), headers=seed.headers(store["shopper"])
        )

        data = response.json()["data"]
        assert data["order"]["status"] == "processing"
        assert data["payment"]["method"] == "cod"
        assert data["checkout"] is None
        assert gateway.orders == []
        assert any(s.startswith("Order Confirmed") for s in mailer.subjects(store["shopper"]["email"]))

    def test_checkout_from_cart_clears_it(self, client, seed, store):
        headers = seed.headers(store["shopper"])
        client.post("/api/cart/items", json={"product_id": store["product"]["id"], "quantity": 3}, headers=headers)

        response = client.post("/api/orders", json={"shipping_address_id": store["address"]["id"]}, headers=headers)

        assert response.status_code == 201
        assert response.json()["data"]["order"]["items"][0]["quantity"] == 3
        cart = client.get("/api/cart", headers=headers).json()["data"]
        assert cart["items"] == []

    def test_empty_cart_rejected(self, client, seed, store):
        response = client.post(
            "/api/orders",
            json={"shipping_address_id": store["address"]["id"]},
            headers=seed.headers(store["shopper"]),
        )
        assert response.status_code == 400

    def test_coupon_consumed_by_order(self, seed, store):
        coupon = seed.coupon(code="SAVE10", max_usage=2, per_user_limit=1)

        result = seed.order(store, quantity=2, coupon_code="SAVE10")

        assert result["order"]["discount"] == 10000
        assert run(seed.state.coupons.get(coupon["id"]))["usage_count"] == 1

    def test_unserviceable_pincode(self, client, seed, store, carrier):
        carrier.unserviceable.add("400001")

        response = client.post("/api/orders", json=order_body(store), headers=seed.headers(store["shopper"]))

        assert response.status_code == 400
        assert "not available" in response.json()["message"]

    def test_someone_elses_address(self, client, seed, store):
        other = seed.user()

        response = client.post("/api/orders", json=order_body(store), headers=seed.headers(other))

        assert response.status_code == 404

    def test_stock_checked_before_any_hold(self, seed, store):
        run(seed.db.stock.update_one({"product_id": store["product"]["id"]}, {"$set": {"quantity": 1}}))

        with pytest.raises(InsufficientStockError):
            seed.order(store, quantity=2)
        assert seed.stock_level(store["product"], store["warehouse"]) == 1


class FakeSession:
    """Stands in for a Mongo client session; the test database has no transactions."""

    def __init__(self):
        self.transactions = 0
        self.aborted = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def with_transaction(self, callback):
        self.transactions += 1
        try:
            return await callback(None)
        except Exception:
            self.aborted += 1
            raise


@pytest.fixture
def tx_session(seed, monkeypatch):
    session = FakeSession()

    async def start_session():
        return session

    monkeypatch.setattr(seed.state.orders, "transactions", True)
    monkeypatch.setattr(seed.state.orders, "_start_session", start_session)
    return session


class TestCheckoutTransaction:
    def test_order_written_in_one_transaction(self, client, seed, store, tx_session):
        response = client.post("/api/orders", json=order_body(store, quantity=2), headers=seed.headers(store["shopper"]))

        assert response.status_code == 201
        assert tx_session.transactions == 1
        assert tx_session.aborted == 0
        assert tx_session.closed
        order_id = response.json()["data"]["order"]["id"]
        assert seed.get_payment(order_id)["status"] == "pending"
        assert seed.stock_level(store["product"], store["warehouse"]) == 8

    def test_failure_inside_aborts_transaction(self, client, seed, store, tx_session, monkeypatch):
        seed.coupon(code="RACE")

        async def coupon_taken(coupon, user_id, session=None):
            raise CouponError("Coupon usage limit reached")

        monkeypatch.setattr(seed.state.coupons, "redeem", coupon_taken)

        response = client.post(
            "/api/orders", json=order_body(store, coupon_code="RACE"), headers=seed.headers(store["shopper"])
        )

        assert response.status_code == 400
        assert tx_session.transactions == 1
        assert tx_session.aborted == 1
        assert run(seed.db.orders.count_documents({})) == 0
        assert run(seed.db.payments.count_documents({})) == 0


class TestReads:
    def test_only_owner_can_view(self, client, seed, store):
        order_id = seed.order(store)["order"]["id"]
        other = seed.user()

        assert client.get(f"/api/orders/{order_id}", headers=seed.headers(store["shopper"])).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=seed.headers(other)).status_code == 403

    def test_list_my_orders(self, client, seed, store):
        seed.order(store)
        seed.order(store, payment_method="cod")

        response = client.get("/api/orders", headers=seed.headers(store["shopper"]))

        assert len(response.json()["data"]) == 2

    def test_tracking_falls_back_when_carrier_is_down(self, client, seed, store, carrier):
        order_id = seed.order(store, payment_method="cod")["order"]["id"]
        seed.set_order(order_id, status="shipped", tracking_number="AWB-1")
        headers = seed.headers(store["shopper"])

        live = client.get(f"/api/orders/{order_id}/tracking", headers=headers).json()["data"]
        carrier.tracking_down = True
        fallback = client.get(f"/api/orders/{order_id}/tracking", headers=headers).json()["data"]

        assert live["tracking"]["current_status"] == "IN TRANSIT"
        assert fallback["tracking"] is None
        assert fallback["tracking_number"] == "AWB-1"


class TestCancel:
    def test_cancel_pending_order_releases_holds(self, client, seed, store, mailer):
        coupon = seed.coupon(code="SAVE10", max_usage=2, per_user_limit=1)
        order_id = seed.order(store, quantity=2, coupon_code="SAVE10")["order"]["id"]

        response = client.post(
            f"/api/orders/{order_id}/cancel",
            json={"reason": "Changed my mind"},
            headers=seed.headers(store["shopper"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"
        assert seed.stock_level(store["product"], store["warehouse"]) == 10
        assert run(seed.state.coupons.get(coupon["id"]))["usage_count"] == 0
        assert any(s.startswith("Order Cancelled") for s in mailer.subjects())

    def test_cancel_twice_rejected(self, client, seed, store):
        order_id = seed.order(store)["order"]["id"]
        headers = seed.headers(store["shopper"])
        client.post(f"/api/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=headers)

        response = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "Again please"}, headers=headers)

        assert response.status_code == 400
        assert seed.stock_level(store["product"], store["warehouse"]) == 10

    def test_paid_order_is_refunded(self, seed, store, gateway):
        shopper = store["shopper"]
        checkout = seed.order(store)
        seed.pay(shopper, checkout)
        order_id = checkout["order"]["id"]

        cancelled = run(seed.state.orders.cancel(shopper, order_id, "Ordered by mistake"))

        assert cancelled["status"] == "cancelled"
        assert gateway.refunds[0]["amount"] == checkout["order"]["total"]
        payment = seed.get_payment(order_id)
        assert payment["status"] == "refunded"
        assert payment["refund_amount"] == checkout["order"]["total"]

    def test_refund_failure_is_flagged(self, seed, store, gateway):
        shopper = store["shopper"]
        checkout = seed.order(store)
        seed.pay(shopper, checkout)
        gateway.fail_refunds = True
        order_id = checkout["order"]["id"]

        cancelled = run(seed.state.orders.cancel(shopper, order_id, "Ordered by mistake"))

        assert cancelled["status"] == "cancelled"
        assert seed.get_order(order_id)["refund_failed"] is True
        payment = seed.get_payment(order_id)
        assert payment["status"] == "success"
        assert payment["refund_amount"] == 0

    def test_shipped_order_cannot_be_cancelled(self, client, seed, store):
        order_id = seed.order(store, payment_method="cod")["order"]["id"]
        seed.set_order(order_id, status="shipped", tracking_number="AWB-1")

        check = client.get(f"/api/orders/{order_id}/can-cancel", headers=seed.headers(store["shopper"]))

        assert check.json()["data"] == {"can_cancel": False, "reason": "Order has already been shipped"}

    def test_cancellation_window(self, client, seed, store):
        order_id = seed.order(store, payment_method="cod")["order"]["id"]
        seed.set_order(order_id, created_at=utcnow() - timedelta(hours=25))
        admin = order_admin(seed)

        response = client.post(
            f"/api/orders/{order_id}/cancel",
            json={"reason": "Too slow"},
            headers=seed.headers(store["shopper"]),
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Cancellation window has passed"

        response = client.put(
            f"/api/admin/orders/{order_id}/status",
            json={"status": "cancelled", "reason": "Customer called support"},
            headers=seed.headers(admin),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

    def test_cancel_stops_carrier_order(self, seed, store, carrier):
        checkout = seed.order(store, payment_method="cod")
        order_id = checkout["order"]["id"]
        run(seed.db.shipments.insert_one({"order_id": order_id, "carrier_order_id": "SR9", "awb_code": None}))

        run(seed.state.orders.cancel(store["shopper"], order_id, "Changed my mind"))

        assert carrier.cancelled == ["SR9"]
        assert seed.get_payment(order_id)["status"] == "failed"

    def test_courier_cancel_failure_does_not_block(self, seed, store, carrier):
        carrier.fail_cancels = True
        checkout = seed.order(store, payment_method="cod")
        order_id = checkout["order"]["id"]
        run(seed.db.shipments.insert_one({"order_id": order_id, "carrier_order_id": "SR9", "awb_code": None}))

        run(seed.state.orders.cancel(store["shopper"], order_id, "Changed my mind"))

        assert seed.get_order(order_id)["status"] == "cancelled"
        assert run(seed.db.shipments.find_one({"order_id": order_id}))["carrier_cancel_failed"] is True
        assert seed.stock_level(store["product"], store["warehouse"]) == 10


class TestAdminStatus:
    def test_shipping_requires_tracking_number(self, client, seed, store):
        order_id = seed.order(store, payment_method="cod")["order"]["id"]
        headers = seed.headers(order_admin(seed))

        response = client.put(f"/api/admin/orders/{order_id}/status", json={"status": "shipped"}, headers=headers)

        assert response.status_code == 400

    def test_delivery_collects_cod_payment(self, client, seed, store):
        order_id = seed.order(store, payment_method="cod")["order"]["id"]
        headers = seed.headers(order_admin(seed))
        url = f"/api/admin/orders/{order_id}/status"

        shipped = client.put(url, json={"status": "shipped", "tracking_number": "AWB-7", "courier_name": "Delhivery"}, headers=headers)
        delivered = client.put(url, json={"status": "delivered"}, headers=headers)

        assert shipped.json()["data"]["tracking_number"] == "AWB-7"
        assert delivered.json()["data"]["status"] == "delivered"
        assert delivered.json()["data"]["delivered_at"] is not None
        assert seed.get_payment(order_id)["status"] == "success"

    def test_illegal_transition(self, client, seed, store):
        order_id = seed.order(store)["order"]["id"]
        headers = seed.headers(order_admin(seed))

        response = client.put(f"/api/admin/orders/{order_id}/status", json={"status": "delivered"}, headers=headers)

        assert response.status_code == 400
        assert "Cannot change order status" in response.json()["message"]

    def test_permissions(self, client, seed, store):
        shopper_headers = seed.headers(store["shopper"])
        bare_admin = seed.user(role=UserRole.ADMIN)
        reader = seed.user(role=UserRole.ADMIN, permissions={PermissionModule.ORDERS: [PermissionAction.READ]})
        super_admin = seed.user(role=UserRole.SUPER_ADMIN)

        assert client.get("/api/admin/orders", headers=shopper_headers).status_code == 403
        assert client.get("/api/admin/orders", headers=seed.headers(bare_admin)).status_code == 403
        assert client.get("/api/admin/orders", headers=seed.headers(reader)).status_code == 200
        assert client.get("/api/admin/orders", headers=seed.headers(super_admin)).status_code == 200
        assert client.get("/api/admin/orders").status_code == 401
