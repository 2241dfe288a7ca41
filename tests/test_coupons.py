"""Tests for coupon validation and redemption."""

import asyncio
from datetime import timedelta

import pytest

from storefront.coupons.service import CouponError, compute_discount
from storefront.shared.utils import utcnow
from tests.conftest import run


class TestComputeDiscount:
    def test_percentage(self):
        coupon = {"discount_type": "percentage", "discount_value": 1000}
        assert compute_discount(coupon, 100000) == 10000

    def test_percentage_capped(self):
        coupon = {"discount_type": "percentage", "discount_value": 5000, "max_discount_amount": 20000}
        assert compute_discount(coupon, 100000) == 20000

    def test_fixed_never_exceeds_subtotal(self):
        coupon = {"discount_type": "fixed", "discount_value": 50000}
        assert compute_discount(coupon, 30000) == 30000


class TestValidate:
    def test_ten_percent_off(self, seed):
        seed.coupon(code="SAVE10", percent="10", min_order="500", max_usage=2, per_user_limit=1)
        user = seed.user()

        coupon, discount = run(seed.state.coupons.validate("save10", 100000, user["id"]))

        assert coupon["code"] == "SAVE10"
        assert discount == 10000

    def test_below_minimum_order_value(self, seed):
        seed.coupon(code="SAVE10", min_order="500")
        user = seed.user()

        with pytest.raises(CouponError, match="Minimum order value not met"):
            run(seed.state.coupons.validate("SAVE10", 40000, user["id"]))

    def test_unknown_code(self, seed):
        user = seed.user()
        with pytest.raises(CouponError, match="not found"):
            run(seed.state.coupons.validate("NOPE", 100000, user["id"]))

    def test_expired(self, seed):
        seed.coupon(code="OLD10")
        run(seed.db.coupons.update_one({"code": "OLD10"}, {"$set": {"valid_until": utcnow() - timedelta(hours=1)}}))
        user = seed.user()

        with pytest.raises(CouponError, match="expired"):
            run(seed.state.coupons.validate("OLD10", 100000, user["id"]))

    def test_usage_limit_reached(self, seed):
        coupon = seed.coupon(code="ONCE", max_usage=1)
        first, second = seed.user(), seed.user()
        run(seed.state.coupons.redeem(coupon, first["id"]))

        with pytest.raises(CouponError, match="usage limit"):
            run(seed.state.coupons.validate("ONCE", 100000, second["id"]))


class TestRedeem:
    def test_per_user_limit(self, seed):
        coupon = seed.coupon(code="SAVE10", max_usage=2, per_user_limit=1)
        user = seed.user()
        coupons = seed.state.coupons
        run(coupons.redeem(coupon, user["id"]))

        with pytest.raises(CouponError, match="Per-user limit reached"):
            run(coupons.validate("SAVE10", 100000, user["id"]))
        with pytest.raises(CouponError, match="Per-user limit reached"):
            run(coupons.redeem(coupon, user["id"]))

        assert run(coupons.get(coupon["id"]))["usage_count"] == 1
        assert run(coupons.user_redemptions(coupon["id"], user["id"])) == 1

    def test_concurrent_redemptions_never_exceed_max_usage(self, seed):
        coupon = seed.coupon(code="FLASH", max_usage=2)
        users = [seed.user() for _ in range(5)]
        coupons = seed.state.coupons

        async def attempt(user_id):
            try:
                await coupons.redeem(coupon, user_id)
                return True
            except CouponError:
                return False

        async def redeem_all():
            return await asyncio.gather(*(attempt(u["id"]) for u in users))

        results = run(redeem_all())

        assert results.count(True) == 2
        assert run(coupons.get(coupon["id"]))["usage_count"] == 2

    def test_release_gives_back_one_use(self, seed):
        coupon = seed.coupon(code="SAVE10", max_usage=2, per_user_limit=1)
        user = seed.user()
        coupons = seed.state.coupons
        run(coupons.redeem(coupon, user["id"]))

        run(coupons.release(coupon["id"], user["id"]))

        assert run(coupons.get(coupon["id"]))["usage_count"] == 0
        assert run(coupons.user_redemptions(coupon["id"], user["id"])) == 0
        _, discount = run(coupons.validate("SAVE10", 100000, user["id"]))
        assert discount == 10000

    def test_user_slot_inside_transaction_counts_up_to_limit(self, seed):
        coupon = seed.coupon(code="TWICE", per_user_limit=2)
        user = seed.user()
        coupons = seed.state.coupons

        run(coupons._claim_user_slot_in(None, coupon["id"], user["id"], 2))
        run(coupons._claim_user_slot_in(None, coupon["id"], user["id"], 2))
        with pytest.raises(CouponError, match="Per-user limit reached"):
            run(coupons._claim_user_slot_in(None, coupon["id"], user["id"], 2))

        assert run(coupons.user_redemptions(coupon["id"], user["id"])) == 2


class TestCouponApi:
    def test_validate_endpoint_returns_rupees(self, client, seed):
        seed.coupon(code="SAVE10", max_usage=2, per_user_limit=1)
        user = seed.user()

        response = client.post(
            "/api/coupons/validate",
            json={"code": "save10", "subtotal": "1000"},
            headers=seed.headers(user),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["discount"] == 100.0
        assert data["final_amount"] == 900.0

    def test_validate_endpoint_rejects_small_cart(self, client, seed):
        seed.coupon(code="SAVE10", min_order="500")
        user = seed.user()

        response = client.post(
            "/api/coupons/validate",
            json={"code": "SAVE10", "subtotal": "499"},
            headers=seed.headers(user),
        )

        assert response.status_code == 400
        assert response.json()["success"] is False
