"""Tests for the shipment scheduler and shipping endpoints."""

from datetime import timedelta

import pytest

from storefront.accounts.models import UserRole, PermissionModule, PermissionAction
from storefront.shared.utils import utcnow
from storefront.shipping.calculator import build_package, ShippingCalculator
from storefront.shipping.carrier import CourierOption
from tests.conftest import run


@pytest.fixture
def two_orders(seed, store):
    first = seed.order(store, payment_method="cod")["order"]
    second = seed.order(store, payment_method="cod")["order"]
    return first, second


class TestRunOnce:
    def test_one_failure_does_not_stop_the_batch(self, seed, store, carrier, mailer, two_orders):
        failing, passing = two_orders
        carrier.fail_orders.add(failing["order_number"])

        summary = run(seed.state.scheduler.run_once())

        assert summary == {"processed": 2, "shipped": 1, "skipped": 0, "failed": 1}

        shipped = seed.get_order(passing["id"])
        assert shipped["status"] == "shipped"
        assert shipped["tracking_number"] == "AWB-SH1"
        assert shipped["courier_name"] == "Delhivery"

        stuck = seed.get_order(failing["id"])
        assert stuck["status"] == "processing"
        assert stuck.get("tracking_number") is None
        shipment = run(seed.db.shipments.find_one({"order_id": failing["id"]}))
        assert shipment["attempts"] == 1
        assert failing["order_number"] in shipment["last_error"]

        assert f"Order Shipped - {passing['order_number']}" in mailer.subjects(store["shopper"]["email"])

    def test_failed_order_retried_next_tick(self, seed, carrier, two_orders):
        failing, _ = two_orders
        carrier.fail_orders.add(failing["order_number"])
        run(seed.state.scheduler.run_once())
        carrier.fail_orders.clear()

        summary = run(seed.state.scheduler.run_once())

        assert summary == {"processed": 1, "shipped": 1, "skipped": 0, "failed": 0}
        assert seed.get_order(failing["id"])["status"] == "shipped"

    def test_pending_orders_are_not_shipped(self, seed, store):
        seed.order(store)

        summary = run(seed.state.scheduler.run_once())

        assert summary["processed"] == 0

    def test_books_pickup(self, seed, carrier, two_orders):
        run(seed.state.scheduler.run_once())

        assert sorted(carrier.pickups) == ["SH1", "SH2"]
        shipment = run(seed.db.shipments.find_one({"order_id": two_orders[0]["id"]}))
        assert shipment["pickup_token"] == f"PT-{shipment['carrier_shipment_id']}"
        assert shipment["awb_code"] == f"AWB-{shipment['carrier_shipment_id']}"

    def test_carrier_payload(self, seed, carrier, store, two_orders):
        run(seed.state.scheduler.run_once())

        payload = next(p for p in carrier.created if p["order_id"] == two_orders[0]["order_number"])
        assert payload["payment_method"] == "COD"
        assert payload["billing_pincode"] == "400001"
        assert payload["billing_email"] == store["shopper"]["email"]
        assert payload["order_items"][0]["selling_price"] == 500.0

    def test_gives_up_after_max_attempts(self, seed, carrier, two_orders):
        failing, _ = two_orders
        carrier.fail_orders.add(failing["order_number"])
        scheduler = seed.state.scheduler
        scheduler.max_attempts = 2

        run(scheduler.run_once())
        run(scheduler.run_once())
        summary = run(scheduler.run_once())

        assert seed.get_order(failing["id"])["shipment_failed"] is True
        assert summary["processed"] == 0


class TestShipmentEndpoints:
    def admin_headers(self, seed):
        admin = seed.user(role=UserRole.ADMIN, permissions={PermissionModule.ORDERS: [PermissionAction.UPDATE]})
        return seed.headers(admin)

    def test_manual_pickup_requeues_dead_letter(self, client, seed, carrier, two_orders):
        failing, _ = two_orders
        seed.set_order(failing["id"], shipment_failed=True)

        response = client.post(f"/api/admin/shipments/{failing['id']}/pickup", headers=self.admin_headers(seed))

        assert response.status_code == 200
        assert response.json()["data"]["awb_code"] == "AWB-SH1"
        order = seed.get_order(failing["id"])
        assert order["status"] == "shipped"
        assert "shipment_failed" not in order

    def test_manual_pickup_rejects_shipped_order(self, client, seed, two_orders):
        seed.set_order(two_orders[0]["id"], status="shipped", tracking_number="AWB-1")

        response = client.post(f"/api/admin/shipments/{two_orders[0]['id']}/pickup", headers=self.admin_headers(seed))

        assert response.status_code == 400

    def test_run_endpoint(self, client, seed, two_orders):
        response = client.post("/api/admin/shipments/run", headers=self.admin_headers(seed))

        assert response.json()["data"] == {"processed": 2, "shipped": 2, "skipped": 0, "failed": 0}

    def test_serviceability(self, client, seed, store, carrier):
        carrier.unserviceable.add("799001")
        headers = seed.headers(store["shopper"])

        ok = client.get("/api/shipping/serviceability", params={"pincode": "400001"}, headers=headers).json()["data"]
        remote = client.get("/api/shipping/serviceability", params={"pincode": "799001"}, headers=headers).json()["data"]

        assert ok["serviceable"] is True
        assert len(ok["couriers"]) == 2
        assert remote == {"pincode": "799001", "serviceable": False, "couriers": []}


class TestClaims:
    def test_cancelled_order_never_reaches_courier(self, seed, store, carrier, two_orders):
        order_id = two_orders[0]["id"]
        snapshot = seed.get_order(order_id)
        run(seed.state.orders.cancel(store["shopper"], order_id, "Ordered by mistake"))

        result = run(seed.state.scheduler.process_order(snapshot))

        assert result is None
        assert carrier.created == []
        assert carrier.pickups == []
        assert seed.get_order(order_id)["status"] == "cancelled"

    def test_claimed_order_left_out_of_batch(self, seed, carrier, two_orders):
        seed.set_order(two_orders[0]["id"], shipping_claim="other-run", shipping_claimed_at=utcnow())

        summary = run(seed.state.scheduler.run_once())

        assert summary == {"processed": 1, "shipped": 1, "skipped": 0, "failed": 0}
        assert [p["order_id"] for p in carrier.created] == [two_orders[1]["order_number"]]

    def test_lapsed_claim_is_taken_over(self, seed, two_orders):
        seed.set_order(two_orders[0]["id"], shipping_claim="crashed-run", shipping_claimed_at=utcnow() - timedelta(hours=1))

        run(seed.state.scheduler.run_once())

        order = seed.get_order(two_orders[0]["id"])
        assert order["status"] == "shipped"
        assert "shipping_claim" not in order

    def test_cancel_waits_for_claim(self, client, seed, store, two_orders):
        order_id = two_orders[0]["id"]
        seed.set_order(order_id, shipping_claim="tick", shipping_claimed_at=utcnow())

        response = client.post(
            f"/api/orders/{order_id}/cancel", json={"reason": "Too slow"}, headers=seed.headers(store["shopper"]),
        )

        assert response.status_code == 409
        assert seed.get_order(order_id)["status"] == "processing"

    def test_cancelled_mid_run_withdraws_courier_order(self, seed, carrier, two_orders):
        create_order = carrier.create_order

        async def create_then_cancel(payload):
            created = await create_order(payload)
            await seed.db.orders.update_one({"order_number": payload["order_id"]}, {"$set": {"status": "cancelled"}})
            return created

        carrier.create_order = create_then_cancel

        summary = run(seed.state.scheduler.run_once())

        assert summary == {"processed": 2, "shipped": 0, "skipped": 2, "failed": 0}
        assert sorted(carrier.cancelled) == ["SR1", "SR2"]
        assert carrier.pickups == []

    def test_manual_pickup_conflicts_with_running_tick(self, client, seed, carrier, two_orders):
        order_id = two_orders[0]["id"]
        seed.set_order(order_id, shipping_claim="tick", shipping_claimed_at=utcnow())
        admin = seed.user(role=UserRole.ADMIN, permissions={PermissionModule.ORDERS: [PermissionAction.UPDATE]})

        response = client.post(f"/api/admin/shipments/{order_id}/pickup", headers=seed.headers(admin))

        assert response.status_code == 409
        assert carrier.created == []


class TestCalculator:
    def test_package_uses_volumetric_weight(self):
        lines = [
            {"weight": 0.5, "length": 35.0, "breadth": 25.0, "height": 5.0, "quantity": 2},
            {"weight": 1.0, "length": 20.0, "breadth": 30.0, "height": 10.0, "quantity": 1},
        ]

        package = build_package(lines)

        assert package["weight"] == 2.0
        assert package["length"] == 35.0
        assert package["breadth"] == 30.0
        assert package["height"] == 20.0
        assert package["volumetric_weight"] == 4.2
        assert package["chargeable_weight"] == 4.2

    def test_explicit_courier_choice(self):
        options = [
            CourierOption(courier_company_id=1, courier_name="Delhivery", freight_charge=6000, estimated_delivery_days=5),
            CourierOption(courier_company_id=2, courier_name="BlueDart", freight_charge=9000, estimated_delivery_days=2),
        ]

        assert ShippingCalculator.select(options, courier_id=2).courier_name == "BlueDart"
        assert ShippingCalculator.select(options, courier_id=99).courier_name == "Delhivery"
