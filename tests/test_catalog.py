"""Tests for categories, products and banners."""

from datetime import datetime, timedelta, timezone

import pytest

from storefront.accounts.models import UserRole, PermissionModule, PermissionAction
from storefront.catalog.service import slugify
from storefront.shared.utils import AppException
from tests.conftest import run

VARIANTS = [
    {"sku": "KRT-S", "name": "Small", "attributes": {"size": "S"}, "price": "450"},
    {"sku": "KRT-L", "name": "Large", "attributes": {"size": "L"}, "price": "550", "weight": 0.8},
]


@pytest.fixture
def admin_headers(seed):
    admin = seed.user(
        role=UserRole.ADMIN,
        permissions={
            PermissionModule.PRODUCTS: list(PermissionAction),
            PermissionModule.CATEGORIES: list(PermissionAction),
        },
    )
    return seed.headers(admin)


def test_slugify():
    assert slugify("Cotton Kurta (Blue)") == "cotton-kurta-blue"
    assert slugify("***") == "item"


class TestProducts:
    def test_create_stores_paise(self, client, seed, admin_headers):
        response = client.post(
            "/api/products",
            json={"name": "Silk Saree", "sku": "SAR-1", "price": "2499.50", "mrp": "2999"},
            headers=admin_headers,
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["price"] == 2499.5
        assert data["slug"] == "silk-saree"
        assert run(seed.db.products.find_one({"sku": "SAR-1"}))["price"] == 249950

    def test_mrp_below_price(self, client, admin_headers):
        response = client.post(
            "/api/products", json={"name": "Shawl", "sku": "SH-1", "price": "900", "mrp": "800"}, headers=admin_headers
        )
        assert response.status_code == 400

    def test_duplicate_sku(self, client, seed, admin_headers):
        seed.product(name="Kurta A")
        product = seed.product(name="Kurta B")
        response = client.post(
            "/api/products", json={"name": "Kurta C", "sku": product["sku"], "price": "100"}, headers=admin_headers
        )
        assert response.status_code == 409

    def test_list_filters(self, client, seed):
        seed.product(price="300", name="Cotton Dupatta")
        seed.product(price="1500", name="Silk Dupatta")
        seed.product(price="800", name="Inactive Dupatta", is_active=False)

        cheap = client.get("/api/products", params={"max_price": "1000"}).json()["data"]
        searched = client.get("/api/products", params={"search": "silk"}).json()["data"]

        assert [p["name"] for p in cheap["products"]] == ["Cotton Dupatta"]
        assert searched["total"] == 1
        assert searched["products"][0]["price"] == 1500.0

    def test_public_read_admin_write(self, client, seed, store):
        product_id = store["product"]["id"]
        assert client.get(f"/api/products/{product_id}").status_code == 200
        response = client.put(f"/api/products/{product_id}", json={"price": "10"}, headers=seed.headers(store["shopper"]))
        assert response.status_code == 403

    def test_variant_ids_survive_update(self, client, seed, admin_headers):
        product = seed.product(variants=VARIANTS)
        ids = {v["sku"]: v["id"] for v in product["variants"]}

        response = client.put(
            f"/api/products/{product['id']}",
            json={"variants": [{**VARIANTS[1], "price": "600"}]},
            headers=admin_headers,
        )

        variants = response.json()["data"]["variants"]
        assert [(v["id"], v["price"]) for v in variants] == [(ids["KRT-L"], 600.0)]

    def test_delete_clears_carts(self, client, seed, store, admin_headers):
        shopper_headers = seed.headers(store["shopper"])
        client.post("/api/cart/items", json={"product_id": store["product"]["id"]}, headers=shopper_headers)

        client.delete(f"/api/products/{store['product']['id']}", headers=admin_headers)

        assert client.get("/api/cart", headers=shopper_headers).json()["data"]["items"] == []


class TestResolveItem:
    def test_variant_overrides_product(self, seed):
        product = seed.product(variants=VARIANTS)
        large = next(v for v in product["variants"] if v["sku"] == "KRT-L")

        line = run(seed.state.products.resolve_item(product["id"], large["id"]))

        assert line["unit_price"] == 55000
        assert line["sku"] == "KRT-L"
        assert line["weight"] == 0.8
        assert line["name"].endswith("- Large")

    def test_variant_required(self, seed):
        product = seed.product(variants=VARIANTS)
        with pytest.raises(AppException, match="Select a variant"):
            run(seed.state.products.resolve_item(product["id"]))

    def test_inactive_product(self, seed):
        product = seed.product(is_active=False)
        with pytest.raises(AppException, match="no longer available"):
            run(seed.state.products.resolve_item(product["id"]))


class TestCategories:
    def test_category_with_products_cannot_be_deleted(self, client, seed, admin_headers):
        category = client.post("/api/categories", json={"name": "Ethnic Wear"}, headers=admin_headers).json()["data"]
        seed.product(category_id=category["id"])

        response = client.delete(f"/api/categories/{category['id']}", headers=admin_headers)

        assert response.status_code == 409

    def test_unknown_category_on_product(self, seed):
        with pytest.raises(AppException, match="Category not found"):
            seed.product(category_id="0" * 24)


class TestBanners:
    @pytest.fixture
    def banner_headers(self, seed):
        return seed.headers(seed.user(role=UserRole.SUPER_ADMIN))

    def create(self, client, headers, **fields):
        body = {"title": "Festive Sale", "image_url": "https://cdn.example.com/festive.jpg", **fields}
        return client.post("/api/banners", json=body, headers=headers)

    def test_active_respects_window_and_position(self, client, banner_headers):
        now = datetime.now(timezone.utc)
        self.create(client, banner_headers, title="Second", position=2)
        self.create(client, banner_headers, title="First", position=1)
        self.create(client, banner_headers, title="Later", starts_at=(now + timedelta(days=2)).isoformat())
        self.create(client, banner_headers, title="Over", ends_at=(now - timedelta(days=1)).isoformat())
        self.create(client, banner_headers, title="Hidden", is_active=False)

        active = client.get("/api/banners/active").json()["data"]

        assert [b["title"] for b in active] == ["First", "Second"]

    def test_window_must_be_ordered(self, client, banner_headers):
        now = datetime.now(timezone.utc)
        response = self.create(
            client, banner_headers,
            starts_at=now.isoformat(), ends_at=(now - timedelta(hours=1)).isoformat(),
        )
        assert response.status_code == 400

    def test_admin_listing_requires_permission(self, client, seed):
        shopper = seed.headers(seed.user())
        assert client.get("/api/banners", headers=shopper).status_code == 403
        assert self.create(client, shopper).status_code == 403
