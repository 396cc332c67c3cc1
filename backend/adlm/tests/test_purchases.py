"""
Tests for checkout, Paystack verification and the Paystack webhook.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from adlm.api.dependencies.services import get_paystack_client
from adlm.config.settings import Settings
from adlm.models.purchase import Purchase, PurchaseStatus
from adlm.platform.errors import PaymentGatewayError
from adlm.services.paystack_client import to_kobo, verify_signature

from conftest import make_product

PAYSTACK_SECRET = "sk_test_secret"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret-key-for-tokens",
        database_url="sqlite://",
        paystack_secret_key=PAYSTACK_SECRET,
    )


@pytest.fixture
def paystack(app):
    mock = MagicMock()
    mock.initialize_transaction.return_value = {
        "authorization_url": "https://checkout.paystack.com/abc",
        "reference": "ignored",
    }
    app.dependency_overrides[get_paystack_client] = lambda: mock
    yield mock
    app.dependency_overrides.clear()


@pytest.fixture
def products(db_session):
    make_product(db_session, "rategen", price_monthly_ngn=10000, install_fee_ngn=5000)
    make_product(db_session, "revit", billing_interval="yearly", price_yearly_ngn=120000, price_yearly_usd=Decimal("75.00"))
    make_product(db_session, "hidden", is_published=False)


def _sign(body: bytes) -> str:
    return hmac.new(PAYSTACK_SECRET.encode("utf-8"), body, hashlib.sha512).hexdigest()


def _reload(db_session, user):
    db_session.expire_all()
    return user


# =============================================================================
# Checkout
# =============================================================================

class TestCartCheckout:

    def test_ngn_cart_goes_through_paystack(self, client, user, auth_headers, products, paystack):
        response = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen", "qty": 2, "periods": 3, "first_time": True}]},
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["payment_mode"] == "paystack"
        assert body["authorization_url"] == "https://checkout.paystack.com/abc"
        assert body["subtotal"] == 65000.0
        assert body["total"] == 65000.0
        assert body["reference"].startswith("adlm_")

        kwargs = paystack.initialize_transaction.call_args.kwargs
        assert kwargs["amount_kobo"] == 6500000
        assert kwargs["reference"] == body["reference"]
        assert kwargs["email"] == user.email

    def test_usd_cart_is_manual_and_uses_fx(self, client, user, auth_headers, products, paystack):
        response = client.post(
            "/purchase/cart",
            json={
                "currency": "usd",
                "items": [
                    {"product_key": "rategen", "qty": 2, "periods": 3, "first_time": True},
                    {"product_key": "revit"},
                ],
            },
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["payment_mode"] == "manual"
        assert body["authorization_url"] is None
        assert [line["subtotal"] for line in body["lines"]] == [43.35, 75.0]
        assert body["total"] == 118.35
        paystack.initialize_transaction.assert_not_called()

    def test_creates_pending_purchase(self, client, db_session, user, auth_headers, products, paystack):
        body = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen"}]},
            headers=auth_headers(user),
        ).json()

        purchase = db_session.get(Purchase, body["purchase_id"])
        assert purchase.status == PurchaseStatus.PENDING
        assert purchase.paid is False
        assert [line.product_key for line in purchase.lines] == ["rategen"]
        assert dict(user.entitlements) == {}

    @pytest.mark.parametrize("product_key", ["unknown", "hidden"])
    def test_rejects_unknown_or_unpublished_products(self, client, user, auth_headers, products, paystack, product_key):
        response = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": product_key}]},
            headers=auth_headers(user),
        )
        assert response.status_code == 400

    def test_empty_cart(self, client, user, auth_headers, paystack):
        response = client.post("/purchase/cart", json={"items": []}, headers=auth_headers(user))
        assert response.status_code == 422

    def test_gateway_failure_surfaces_as_502(self, client, user, auth_headers, products, paystack):
        paystack.initialize_transaction.side_effect = PaymentGatewayError("Paystack initialize failed")
        response = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen"}]},
            headers=auth_headers(user),
        )
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "PAYMENT_GATEWAY_ERROR"

    @pytest.mark.parametrize("item", [{"periods": 10000}, {"qty": 100000}])
    def test_out_of_range_periods_or_qty(self, client, user, auth_headers, products, paystack, item):
        response = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen", **item}]},
            headers=auth_headers(user),
        )
        assert response.status_code == 422
        paystack.initialize_transaction.assert_not_called()

    def test_yearly_line_longer_than_a_century(self, client, db_session, user, auth_headers, products, paystack):
        """200 yearly periods is 2400 months."""
        response = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "revit", "periods": 200, "billing_interval": "yearly"}]},
            headers=auth_headers(user),
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"]["months"] == 2400
        assert db_session.execute(select(Purchase)).scalars().all() == []


class TestLegacyPurchase:

    def test_creates_pending_single_product_purchase(self, client, user, auth_headers, products):
        response = client.post("/purchase", json={"product_key": "RateGen", "months": 3}, headers=auth_headers(user))
        assert response.status_code == 200
        purchase = response.json()["purchase"]
        assert purchase["status"] == "pending"
        assert purchase["product_key"] == "rategen"
        assert purchase["requested_months"] == 3
        assert purchase["total_amount"] == 30000.0

    def test_months_are_capped(self, client, user, auth_headers, products):
        response = client.post("/purchase", json={"product_key": "rategen", "months": 120000}, headers=auth_headers(user))
        assert response.status_code == 422

    def test_my_purchases(self, client, user, auth_headers, products):
        client.post("/purchase", json={"product_key": "rategen", "months": 1}, headers=auth_headers(user))
        response = client.get("/me/purchases", headers=auth_headers(user))
        assert [p["product_key"] for p in response.json()["purchases"]] == ["rategen"]


# =============================================================================
# Payment confirmation
# =============================================================================

class TestVerify:

    def _checkout(self, client, user, auth_headers, qty=1, periods=1) -> dict:
        return client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen", "qty": qty, "periods": periods}]},
            headers=auth_headers(user),
        ).json()

    def test_paid_transaction_approves_once(self, client, db_session, user, auth_headers, products, paystack):
        checkout = self._checkout(client, user, auth_headers, qty=2, periods=3)
        paystack.verify_transaction.return_value = {"status": "success", "amount": to_kobo(Decimal("60000"))}

        first = client.get("/purchase/verify", params={"reference": checkout["reference"]})
        assert first.status_code == 200
        assert first.json()["ok"] is True

        _reload(db_session, user)
        ent = user.entitlements["rategen"]
        expires_at = ent.expires_at
        assert ent.seats == 2

        second = client.get("/purchase/verify", params={"reference": checkout["reference"]})
        assert second.json()["ok"] is True

        _reload(db_session, user)
        assert user.entitlements["rategen"].expires_at == expires_at

        purchase = db_session.get(Purchase, checkout["purchase_id"])
        assert purchase.status == PurchaseStatus.APPROVED
        assert purchase.paid is True
        assert purchase.decided_by == "paystack"

    def test_unpaid_transaction_grants_nothing(self, client, db_session, user, auth_headers, products, paystack):
        checkout = self._checkout(client, user, auth_headers)
        paystack.verify_transaction.return_value = {"status": "abandoned"}

        response = client.get("/purchase/verify", params={"reference": checkout["reference"]})
        assert response.json() == {"ok": False, "status": "abandoned"}
        _reload(db_session, user)
        assert dict(user.entitlements) == {}

    def test_short_payment_is_not_approved(self, client, db_session, user, auth_headers, products, paystack):
        checkout = self._checkout(client, user, auth_headers)
        paystack.verify_transaction.return_value = {"status": "success", "amount": 100}

        response = client.get("/purchase/verify", params={"reference": checkout["reference"]})
        assert response.json()["status"] == "amount_mismatch"
        assert db_session.get(Purchase, checkout["purchase_id"]).status == PurchaseStatus.PENDING

    def test_unknown_reference(self, client, paystack):
        paystack.verify_transaction.return_value = {"status": "success", "amount": 100}
        response = client.get("/purchase/verify", params={"reference": "adlm_missing"})
        assert response.json()["ok"] is False


class TestWebhook:

    def _event(self, reference: str, amount: int, event: str = "charge.success") -> bytes:
        return json.dumps({"event": event, "data": {"reference": reference, "amount": amount}}).encode("utf-8")

    def test_valid_signature_approves(self, client, db_session, user, auth_headers, products, paystack):
        checkout = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen"}]},
            headers=auth_headers(user),
        ).json()
        body = self._event(checkout["reference"], 1000000)

        for _ in range(2):
            response = client.post(
                "/webhooks/paystack",
                content=body,
                headers={"X-Paystack-Signature": _sign(body), "Content-Type": "application/json"},
            )
            assert response.status_code == 200
            assert response.json()["ok"] is True

        _reload(db_session, user)
        assert user.entitlements["rategen"].version == 1

    def test_invalid_signature_is_rejected(self, client, db_session, user, auth_headers, products, paystack):
        checkout = client.post(
            "/purchase/cart",
            json={"items": [{"product_key": "rategen"}]},
            headers=auth_headers(user),
        ).json()
        body = self._event(checkout["reference"], 1000000)

        response = client.post("/webhooks/paystack", content=body, headers={"X-Paystack-Signature": "0" * 128})
        assert response.status_code == 401
        assert db_session.get(Purchase, checkout["purchase_id"]).status == PurchaseStatus.PENDING

    def test_missing_signature_is_rejected(self, client):
        assert client.post("/webhooks/paystack", content=b"{}").status_code == 401

    def test_other_events_are_ignored(self, client):
        body = self._event("adlm_x", 100, event="transfer.success")
        response = client.post("/webhooks/paystack", content=body, headers={"X-Paystack-Signature": _sign(body)})
        assert response.json() == {"ok": True, "ignored": True}

    def test_signed_garbage_is_a_bad_request(self, client):
        body = b"not json"
        response = client.post("/webhooks/paystack", content=body, headers={"X-Paystack-Signature": _sign(body)})
        assert response.status_code == 400


class TestSignatureHelper:

    def test_verify_signature(self):
        body = b'{"event":"charge.success"}'
        assert verify_signature(PAYSTACK_SECRET, body, _sign(body)) is True
        assert verify_signature(PAYSTACK_SECRET, body + b" ", _sign(body)) is False
        assert verify_signature("", body, _sign(body)) is False

    def test_to_kobo(self):
        assert to_kobo(Decimal("1234.56")) == 123456
