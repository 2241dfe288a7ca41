"""Tests for return eligibility, refunds and the admin return workflow."""

from datetime import timedelta

import pytest

from storefront.accounts.models import UserRole, PermissionModule, PermissionAction
from storefront.returns.service import compute_refund
from storefront.shared.utils import utcnow
from tests.conftest import run


BANK = {"account_holder_name": "Asha Rao", "account_number": "123456789012", "ifsc_code": "hdfc0001234"}


@pytest.fixture
def delivered(seed, store):
    """A paid order for two units, delivered just now."""
    checkout = seed.order(store, quantity=2)
    seed.pay(store["shopper"], checkout)
    order_id = checkout["order"]["id"]
    seed.set_order(order_id, status="delivered", delivered_at=utcnow())
    return {"order_id": order_id, "item_id": checkout["order"]["items"][0]["item_id"]}


@pytest.fixture
def admin_headers(seed):
    admin = seed.user(
        role=UserRole.ADMIN,
        permissions={PermissionModule.RETURNS: [PermissionAction.READ, PermissionAction.UPDATE]},
    )
    return seed.headers(admin)


def request_return(client, seed, store, delivered, quantity=1, **extra):
    body = {
        "order_id": delivered["order_id"],
        "items": [{"item_id": delivered["item_id"], "quantity": quantity}],
        "reason": "defective",
        **extra,
    }
    return client.post("/api/returns", json=body, headers=seed.headers(store["shopper"]))


def move(client, headers, return_id, status, **extra):
    return client.put(f"/api/admin/returns/{return_id}/status", json={"status": status, **extra}, headers=headers)


class TestComputeRefund:
    order = {
        "items": [{"item_id": "a", "quantity": 2, "unit_price": 50000}],
        "shipping_cost": 6000,
    }

    def test_free_reason_refunds_shipping_share(self):
        refund = compute_refund(self.order, [{"quantity": 1, "unit_price": 50000}], "defective", 5000)
        assert refund == {
            "items_refund": 50000,
            "shipping_refund": 3000,
            "return_shipping_fee": 0,
            "refund_amount": 53000,
        }

    def test_other_reason_pays_return_fee(self):
        refund = compute_refund(self.order, [{"quantity": 1, "unit_price": 50000}], "other", 5000)
        assert refund["return_shipping_fee"] == 5000
        assert refund["refund_amount"] == 48000

    def test_never_negative(self):
        cheap = {"items": [{"item_id": "a", "quantity": 1, "unit_price": 1000}], "shipping_cost": 0}
        refund = compute_refund(cheap, [{"quantity": 1, "unit_price": 1000}], "other", 5000)
        assert refund["refund_amount"] == 0


class TestEligibility:
    def test_undelivered_order(self, client, seed, store):
        order_id = seed.order(store)["order"]["id"]

        data = client.get(f"/api/returns/eligibility/{order_id}", headers=seed.headers(store["shopper"])).json()["data"]

        assert data["eligible"] is False
        assert data["reason"] == "Order must be delivered before initiating a return"

    def test_within_window(self, client, seed, store, delivered):
        data = client.get(
            f"/api/returns/eligibility/{delivered['order_id']}", headers=seed.headers(store["shopper"])
        ).json()["data"]

        assert data["eligible"] is True
        assert data["items"][0]["returnable_quantity"] == 2
        assert 0 < data["hours_remaining"] <= 24

    def test_window_expired(self, client, seed, store, delivered):
        seed.set_order(delivered["order_id"], delivered_at=utcnow() - timedelta(hours=25))

        data = client.get(
            f"/api/returns/eligibility/{delivered['order_id']}", headers=seed.headers(store["shopper"])
        ).json()["data"]

        assert data["eligible"] is False
        assert data["hours_remaining"] == 0
        assert "expired" in data["reason"]

    def test_other_users_order(self, client, seed, delivered):
        other = seed.user()
        response = client.get(f"/api/returns/eligibility/{delivered['order_id']}", headers=seed.headers(other))
        assert response.status_code == 403


class TestCreateReturn:
    def test_partial_return(self, client, seed, store, delivered):
        response = request_return(client, seed, store, delivered, quantity=1)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["return_number"].startswith("RET-")
        assert data["status"] == "pending"
        assert data["refund_amount"] == 500.0
        assert data["return_shipping_fee"] == 0.0

        eligibility = client.get(
            f"/api/returns/eligibility/{delivered['order_id']}", headers=seed.headers(store["shopper"])
        ).json()["data"]
        assert eligibility["items"][0]["returnable_quantity"] == 1

    def test_cannot_return_more_than_remaining(self, client, seed, store, delivered):
        request_return(client, seed, store, delivered, quantity=1)

        response = request_return(client, seed, store, delivered, quantity=2)

        assert response.status_code == 400
        assert response.json()["message"].startswith("Only 1 of")

    def test_fully_returned_order_not_eligible(self, client, seed, store, delivered):
        request_return(client, seed, store, delivered, quantity=2)

        response = request_return(client, seed, store, delivered, quantity=1)

        assert response.status_code == 400
        assert "already in progress" in response.json()["message"]

    def test_bank_transfer_requires_details(self, client, seed, store, delivered):
        response = request_return(client, seed, store, delivered, refund_method="bank_transfer")
        assert response.status_code == 400

    def test_bank_account_is_masked(self, client, seed, store, delivered):
        response = request_return(client, seed, store, delivered, refund_method="bank_transfer", bank_details=BANK)

        assert response.status_code == 201
        assert response.json()["data"]["bank_account"] == "XXXX9012"

    def test_other_reason_needs_details(self, client, seed, store, delivered):
        assert request_return(client, seed, store, delivered, reason="other").status_code == 400
        response = request_return(client, seed, store, delivered, reason="other", reason_details="Did not fit")
        assert response.json()["data"]["refund_amount"] == 450.0

    def test_cod_order_needs_bank_transfer(self, client, seed, store):
        checkout = seed.order(store, payment_method="cod")
        order_id = checkout["order"]["id"]
        seed.set_order(order_id, status="delivered", delivered_at=utcnow())
        body = {
            "order_id": order_id,
            "items": [{"item_id": checkout["order"]["items"][0]["item_id"], "quantity": 1}],
            "reason": "wrong_item",
        }

        response = client.post("/api/returns", json=body, headers=seed.headers(store["shopper"]))

        assert response.status_code == 400
        assert "bank transfer" in response.json()["message"]


class TestReturnWorkflow:
    def test_full_lifecycle(self, client, seed, store, delivered, admin_headers, carrier, gateway, mailer):
        return_id = request_return(client, seed, store, delivered).json()["data"]["id"]

        assert move(client, admin_headers, return_id, "approved").status_code == 200
        assert carrier.returns[0]["pickup_pincode"] == "400001"
        assert carrier.returns[0]["shipping_pincode"] == "110001"
        assert run(seed.db.returns.find_one({}))["return_shipment"]["carrier_order_id"] == "RSR1"

        assert move(client, admin_headers, return_id, "picked_up").status_code == 200
        assert move(client, admin_headers, return_id, "received").status_code == 200
        assert seed.stock_level(store["product"], store["warehouse"]) == 9

        refunded = move(client, admin_headers, return_id, "refund_initiated")
        assert refunded.status_code == 200
        assert gateway.refunds[-1]["amount"] == 50000
        assert seed.get_payment(delivered["order_id"])["refund_amount"] == 50000

        assert move(client, admin_headers, return_id, "refund_completed").status_code == 200
        closed = move(client, admin_headers, return_id, "closed")
        assert closed.json()["data"]["status"] == "closed"
        assert len([s for s in mailer.subjects(store["shopper"]["email"]) if s.startswith("Return")]) == 6

    def test_courier_failure_flags_manual_handling(self, client, seed, store, delivered, admin_headers, carrier):
        carrier.fail_returns = True
        return_id = request_return(client, seed, store, delivered).json()["data"]["id"]

        response = move(client, admin_headers, return_id, "approved")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "approved"
        assert "Courier return order failed" in response.json()["data"]["admin_notes"]

    def test_refund_failure_keeps_return_received(self, client, seed, store, delivered, admin_headers, gateway):
        return_id = request_return(client, seed, store, delivered).json()["data"]["id"]
        for status in ("approved", "picked_up", "received"):
            move(client, admin_headers, return_id, status)
        gateway.fail_refunds = True

        response = move(client, admin_headers, return_id, "refund_initiated")

        assert response.status_code == 503
        assert run(seed.db.returns.find_one({}))["status"] == "received"
        assert seed.get_payment(delivered["order_id"])["refund_amount"] == 0

    def test_rejection_frees_the_items(self, client, seed, store, delivered, admin_headers):
        return_id = request_return(client, seed, store, delivered, quantity=2).json()["data"]["id"]

        assert move(client, admin_headers, return_id, "rejected").status_code == 400
        rejected = move(client, admin_headers, return_id, "rejected", rejection_reason="Item was used")
        assert rejected.json()["data"]["rejection_reason"] == "Item was used"

        eligibility = client.get(
            f"/api/returns/eligibility/{delivered['order_id']}", headers=seed.headers(store["shopper"])
        ).json()["data"]
        assert eligibility["items"][0]["returnable_quantity"] == 2

    def test_illegal_transition(self, client, seed, store, delivered, admin_headers):
        return_id = request_return(client, seed, store, delivered).json()["data"]["id"]

        response = move(client, admin_headers, return_id, "received")

        assert response.status_code == 400

    def test_shopper_cannot_use_admin_routes(self, client, seed, store, delivered):
        assert client.get("/api/admin/returns", headers=seed.headers(store["shopper"])).status_code == 403
