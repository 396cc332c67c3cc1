"""
Tests for coupon quoting, redemption and the coupon routes.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from adlm.models.base import utcnow
from adlm.models.catalog import Coupon
from adlm.services.coupon_service import CouponInvalidError, CouponService, compute_discount, round_money


def _coupon(**fields) -> Coupon:
    defaults = dict(code="SAVE10", type="percent", value=Decimal("10"), active=True, redeemed_count=0)
    defaults.update(fields)
    return Coupon(**defaults)


# =============================================================================
# Discount rules
# =============================================================================

class TestComputeDiscount:

    def test_percent(self):
        assert compute_discount(_coupon(), "NGN", Decimal("25000")) == Decimal("2500")

    def test_percent_is_clamped(self):
        assert compute_discount(_coupon(value=Decimal("150")), "NGN", Decimal("1000")) == Decimal("1000")

    def test_fixed_never_exceeds_subtotal(self):
        coupon = _coupon(type="fixed", value=Decimal("5000"), currency="NGN")
        assert compute_discount(coupon, "NGN", Decimal("3000")) == Decimal("3000")

    def test_fixed_currency_must_match(self):
        coupon = _coupon(type="fixed", value=Decimal("5"), currency="USD")
        with pytest.raises(CouponInvalidError) as exc_info:
            compute_discount(coupon, "NGN", Decimal("3000"))
        assert exc_info.value.reason == "currency_mismatch"

    def test_usd_rounds_to_cents(self):
        coupon = _coupon(value=Decimal("33.333"))
        assert compute_discount(coupon, "USD", Decimal("10.00")) == Decimal("3.33")

    def test_include_mode_discounts_matching_lines_only(self):
        coupon = _coupon(applies_to_mode="include", applies_to_product_keys=["revit"])
        discount = compute_discount(
            coupon, "NGN", Decimal("30000"), {"revit": Decimal("20000"), "rategen": Decimal("10000")},
        )
        assert discount == Decimal("2000")

    def test_include_mode_without_match(self):
        coupon = _coupon(applies_to_mode="include", applies_to_product_keys=["revit"])
        with pytest.raises(CouponInvalidError) as exc_info:
            compute_discount(coupon, "NGN", Decimal("10000"), {"rategen": Decimal("10000")})
        assert exc_info.value.reason == "not_applicable"

    @pytest.mark.parametrize("fields,reason", [
        ({"active": False}, "disabled"),
        ({"starts_at": utcnow() + timedelta(days=1)}, "not_started"),
        ({"ends_at": utcnow() - timedelta(days=1)}, "expired"),
        ({"max_redemptions": 2, "redeemed_count": 2}, "exhausted"),
        ({"min_subtotal": Decimal("50000")}, "below_minimum"),
    ])
    def test_rejections(self, fields, reason):
        with pytest.raises(CouponInvalidError) as exc_info:
            compute_discount(_coupon(**fields), "NGN", Decimal("10000"))
        assert exc_info.value.reason == reason
        assert exc_info.value.status_code == 400


class TestRoundMoney:

    def test_ngn_whole_naira(self):
        assert round_money(Decimal("1234.5"), "NGN") == Decimal("1235")

    def test_usd_cents(self):
        assert round_money(Decimal("1.005"), "USD") == Decimal("1.01")


class TestRedeem:

    def test_respects_max_redemptions(self, db_session):
        coupon = _coupon(max_redemptions=1)
        db_session.add(coupon)
        db_session.commit()

        service = CouponService(db_session)
        assert service.redeem(coupon.id) is True
        assert service.redeem(coupon.id) is False
        db_session.commit()

        db_session.expire_all()
        assert db_session.get(Coupon, coupon.id).redeemed_count == 1


# =============================================================================
# Routes
# =============================================================================

class TestCouponRoutes:

    def test_admin_creates_and_public_validates(self, client, admin, auth_headers):
        created = client.post(
            "/admin/coupons",
            json={"code": " launch20 ", "type": "percent", "value": 20},
            headers=auth_headers(admin),
        )
        assert created.status_code == 201
        assert created.json()["coupon"]["code"] == "LAUNCH20"

        response = client.post(
            "/coupons/validate",
            json={"code": "Launch20", "currency": "NGN", "subtotal": 50000, "product_keys": ["rategen"]},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["discount"] == 10000.0
        assert body["total"] == 40000.0

    def test_include_mode_does_not_overcount_eligible_amount(self, client, admin, auth_headers):
        client.post(
            "/admin/coupons",
            json={
                "code": "REVIT",
                "type": "fixed",
                "value": 100000,
                "currency": "NGN",
                "applies_to_mode": "include",
                "applies_to_product_keys": ["revit", "rategen"],
            },
            headers=auth_headers(admin),
        )
        response = client.post(
            "/coupons/validate",
            json={"code": "REVIT", "subtotal": 30000, "product_keys": ["revit", "rategen"]},
        )
        assert response.json()["discount"] == 30000.0
        assert response.json()["total"] == 0.0

    def test_unknown_code(self, client):
        response = client.post("/coupons/validate", json={"code": "NOPE", "subtotal": 1000})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "COUPON_INVALID"

    def test_duplicate_code(self, client, admin, auth_headers):
        payload = {"code": "DUP", "value": 5}
        assert client.post("/admin/coupons", json=payload, headers=auth_headers(admin)).status_code == 201
        assert client.post("/admin/coupons", json=payload, headers=auth_headers(admin)).status_code == 409

    def test_update_deactivates(self, client, admin, auth_headers):
        coupon_id = client.post(
            "/admin/coupons", json={"code": "OFF", "value": 5}, headers=auth_headers(admin),
        ).json()["coupon"]["id"]

        updated = client.patch(f"/admin/coupons/{coupon_id}", json={"active": False}, headers=auth_headers(admin))
        assert updated.json()["coupon"]["active"] is False
        response = client.post("/coupons/validate", json={"code": "OFF", "subtotal": 1000})
        assert response.json()["error"]["details"]["reason"] == "disabled"

    def test_admin_only(self, client, user, auth_headers):
        assert client.get("/admin/coupons", headers=auth_headers(user)).status_code == 403
