"""Tests for courier status updates pushed to the webhook."""

import pytest

from storefront.shipping.tracking import normalize_status
from tests.conftest import run

TOKEN = {"x-api-key": "sr_hook_token"}


def push(client, payload, headers=TOKEN):
    return client.post("/api/webhooks/shiprocket", json=payload, headers=headers)


@pytest.fixture
def shipped_cod(seed, store):
    order = seed.order(store, payment_method="cod")["order"]
    run(seed.state.scheduler.run_once())
    return seed.get_order(order["id"])


def test_normalize_status():
    assert normalize_status("Out For Delivery") == "OUT_FOR_DELIVERY"
    assert normalize_status(" rto-initiated ") == "RTO_INITIATED"
    assert normalize_status(None) == ""


class TestAuth:
    def test_bad_token_rejected(self, client, seed, shipped_cod):
        payload = {"awb": shipped_cod["tracking_number"], "current_status": "DELIVERED"}

        assert push(client, payload, headers={"x-api-key": "guess"}).status_code == 401
        assert push(client, payload, headers={}).status_code == 401
        assert seed.get_order(str(shipped_cod["_id"]))["status"] == "shipped"

    def test_unknown_shipment_acknowledged(self, client):
        response = push(client, {"awb": "AWB-NOPE", "current_status": "DELIVERED"})

        assert response.status_code == 200
        assert response.json()["data"]["handled"] is False


class TestStatusSync:
    def test_delivery_collects_cod(self, client, seed, store, mailer, shipped_cod):
        order_id = str(shipped_cod["_id"])

        response = push(client, {"awb": shipped_cod["tracking_number"], "current_status": "DELIVERED"})
        again = push(client, {"awb": shipped_cod["tracking_number"], "current_status": "DELIVERED"})

        assert response.json()["data"]["handled"] is True
        assert again.json()["data"]["handled"] is False
        order = seed.get_order(order_id)
        assert order["status"] == "delivered"
        assert order["delivered_at"] is not None
        assert seed.get_payment(order_id)["status"] == "success"
        subjects = mailer.subjects(store["shopper"]["email"])
        assert subjects.count(f"Order Delivered - {shipped_cod['order_number']}") == 1

    def test_updates_never_go_backwards(self, client, seed, shipped_cod):
        awb = shipped_cod["tracking_number"]
        push(client, {"awb": awb, "current_status": "Delivered"})

        response = push(client, {"awb": awb, "current_status": "In Transit"})

        assert response.json()["data"]["handled"] is False
        assert seed.get_order(str(shipped_cod["_id"]))["status"] == "delivered"
        shipment = run(seed.db.shipments.find_one({"awb_code": awb}))
        assert shipment["carrier_status"] == "In Transit"

    def test_pickup_ships_processing_order(self, client, seed, store, mailer):
        order = seed.order(store, payment_method="cod")["order"]
        run(seed.db.shipments.insert_one({
            "order_id": order["id"], "order_number": order["order_number"],
            "awb_code": "AWB-77", "courier_name": "BlueDart",
        }))

        push(client, {"awb": "AWB-77", "current_status": "PICKED UP"})

        shipped = seed.get_order(order["id"])
        assert shipped["status"] == "shipped"
        assert shipped["tracking_number"] == "AWB-77"
        assert f"Order Shipped - {order['order_number']}" in mailer.subjects(store["shopper"]["email"])

    def test_rto_cancels_and_refunds_without_restocking(self, client, seed, store, gateway):
        checkout = seed.order(store)
        seed.pay(store["shopper"], checkout)
        run(seed.state.scheduler.run_once())
        order = seed.get_order(checkout["order"]["id"])

        push(client, {"awb": order["tracking_number"], "current_status": "RTO Initiated"})

        cancelled = seed.get_order(checkout["order"]["id"])
        assert cancelled["status"] == "cancelled"
        assert cancelled["cancellation_reason"] == "Shipment rto initiated by courier"
        assert seed.get_payment(checkout["order"]["id"])["refund_amount"] == order["total"]
        assert [r["amount"] for r in gateway.refunds] == [order["total"]]
        assert seed.stock_level(store["product"], store["warehouse"]) == 9

    def test_courier_cancel_before_pickup_releases_stock(self, client, seed, store):
        order = seed.order(store, payment_method="cod")["order"]
        run(seed.db.shipments.insert_one({"order_id": order["id"], "order_number": order["order_number"]}))

        response = push(client, {"order_id": order["order_number"], "current_status": "CANCELLED"})

        assert response.json()["data"]["handled"] is True
        assert seed.get_order(order["id"])["status"] == "cancelled"
        assert seed.stock_level(store["product"], store["warehouse"]) == 10
        assert seed.get_payment(order["id"])["status"] == "failed"

    def test_delivered_order_can_be_returned(self, client, seed, store, shipped_cod):
        push(client, {"awb": shipped_cod["tracking_number"], "current_status": "DELIVERED"})

        response = client.get(
            f"/api/returns/eligibility/{shipped_cod['_id']}", headers=seed.headers(store["shopper"]),
        )

        assert response.json()["data"]["eligible"] is True
