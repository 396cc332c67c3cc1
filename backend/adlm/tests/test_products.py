"""
Tests for the product catalogue and its admin routes.
"""

from decimal import Decimal

import pytest

from adlm.models.catalog import Product
from adlm.services.catalog_service import install_fee, unit_price


@pytest.fixture
def admin_headers(admin, auth_headers):
    return auth_headers(admin)


class TestPricing:

    def test_usd_falls_back_to_fx(self):
        product = Product(key="rategen", name="RateGen", price_monthly_ngn=Decimal("15000"))
        assert unit_price(product, "monthly", "NGN", 1500) == Decimal("15000")
        assert unit_price(product, "monthly", "USD", 1500) == Decimal("10.00")

    def test_usd_override_wins(self):
        product = Product(
            key="revit",
            name="Revit",
            price_yearly_ngn=Decimal("120000"),
            price_yearly_usd=Decimal("75.00"),
            install_fee_ngn=Decimal("3000"),
        )
        assert unit_price(product, "yearly", "USD", 1500) == Decimal("75.00")
        assert install_fee(product, "USD", 1500) == Decimal("2.00")


class TestCatalogRoutes:

    def test_create_and_list(self, client, admin_headers):
        response = client.post(
            "/admin/products",
            json={"key": " RateGen ", "name": "RateGen", "price_monthly_ngn": 15000},
            headers=admin_headers,
        )
        assert response.status_code == 201
        product = response.json()["product"]
        assert product["key"] == "rategen"
        assert product["price"]["monthly_usd"] == 10.0

        listed = client.get("/products").json()["products"]
        assert [p["key"] for p in listed] == ["rategen"]

    def test_unpublished_products_are_hidden(self, client, admin_headers):
        client.post("/admin/products", json={"key": "planswift", "name": "PlanSwift"}, headers=admin_headers)
        response = client.patch(
            "/admin/products/planswift", json={"is_published": False}, headers=admin_headers,
        )
        assert response.json()["product"]["is_published"] is False
        assert client.get("/products").json()["products"] == []

    def test_duplicate_key(self, client, admin_headers):
        payload = {"key": "revit", "name": "Revit"}
        assert client.post("/admin/products", json=payload, headers=admin_headers).status_code == 201
        assert client.post("/admin/products", json=payload, headers=admin_headers).status_code == 409

    def test_bad_billing_interval(self, client, admin_headers):
        response = client.post(
            "/admin/products",
            json={"key": "revit", "name": "Revit", "billing_interval": "weekly"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_update_unknown_product(self, client, admin_headers):
        response = client.patch("/admin/products/nope", json={"name": "Nope"}, headers=admin_headers)
        assert response.status_code == 404

    def test_admin_only(self, client, user, auth_headers):
        response = client.post("/admin/products", json={"key": "x", "name": "X"}, headers=auth_headers(user))
        assert response.status_code == 403
