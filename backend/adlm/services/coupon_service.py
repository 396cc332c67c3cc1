"""
Coupon validation and redemption.

Rules:
- codes are compared stripped and upper-cased
- a coupon must be active, inside [starts_at, ends_at], under
  max_redemptions, and the subtotal must reach min_subtotal
- "include" coupons only discount lines for the listed products
- percent values are clamped to 0..100
- fixed coupons only apply when their currency matches the checkout currency
- the discount never exceeds the eligible subtotal and is rounded to 2dp
  for USD and to whole naira for NGN

redeemed_count only moves when a purchase using the coupon is approved, via
a conditional UPDATE that respects max_redemptions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from fastapi import status
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from adlm.models.base import as_utc, utcnow
from adlm.models.catalog import Coupon, CouponType
from adlm.models.user import normalize_product_key
from adlm.platform.errors import AppError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("NGN", "USD")


class CouponInvalidError(AppError):
    """Coupon cannot be applied to this checkout (400)."""

    def __init__(self, reason: str, message: str):
        super().__init__(
            code="COUPON_INVALID",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"reason": reason},
        )
        self.reason = reason


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def round_money(amount: Decimal, currency: str) -> Decimal:
    quantum = Decimal("0.01") if currency == "USD" else Decimal("1")
    return Decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)


@dataclass
class CouponQuote:
    """Result of applying a coupon to a cart."""
    coupon: Optional[Coupon]
    discount: Decimal
    subtotal: Decimal
    currency: str

    @property
    def total(self) -> Decimal:
        return max(self.subtotal - self.discount, Decimal("0"))


def coupon_to_dict(coupon: Coupon) -> dict[str, Any]:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "type": coupon.type,
        "value": float(coupon.value or 0),
        "currency": coupon.currency,
        "active": coupon.active,
        "starts_at": coupon.starts_at.isoformat() if coupon.starts_at else None,
        "ends_at": coupon.ends_at.isoformat() if coupon.ends_at else None,
        "max_redemptions": coupon.max_redemptions,
        "redeemed_count": coupon.redeemed_count,
        "min_subtotal": float(coupon.min_subtotal) if coupon.min_subtotal is not None else None,
        "applies_to": {
            "mode": coupon.applies_to_mode or "all",
            "product_keys": list(coupon.applies_to_product_keys or []),
        },
    }


def compute_discount(
    coupon: Coupon,
    currency: str,
    subtotal: Decimal,
    line_subtotals: Optional[dict[str, Decimal]] = None,
    now: Optional[datetime] = None,
) -> Decimal:
    """
    Discount a coupon gives on a cart.

    Args:
        coupon: Coupon row
        currency: Checkout currency
        subtotal: Cart subtotal
        line_subtotals: product_key -> subtotal; required for "include" coupons
        now: Clock override

    Raises:
        CouponInvalidError: coupon cannot be applied
    """
    now = now or utcnow()
    subtotal = Decimal(subtotal)

    if not coupon.active:
        raise CouponInvalidError("disabled", "Coupon is disabled.")
    if coupon.starts_at and now < as_utc(coupon.starts_at):
        raise CouponInvalidError("not_started", "Coupon not active yet.")
    if coupon.ends_at and now > as_utc(coupon.ends_at):
        raise CouponInvalidError("expired", "Coupon has expired.")
    if coupon.max_redemptions is not None and (coupon.redeemed_count or 0) >= coupon.max_redemptions:
        raise CouponInvalidError("exhausted", "Coupon usage limit reached.")
    min_subtotal = Decimal(coupon.min_subtotal or 0)
    if subtotal < min_subtotal:
        raise CouponInvalidError(
            "below_minimum",
            f"Minimum subtotal is {currency} {min_subtotal:,.2f}.",
        )

    eligible = subtotal
    if (coupon.applies_to_mode or "all") == "include":
        keys = {normalize_product_key(k) for k in (coupon.applies_to_product_keys or [])}
        matched = {k: v for k, v in (line_subtotals or {}).items() if normalize_product_key(k) in keys}
        if not matched:
            raise CouponInvalidError("not_applicable", "Coupon does not apply to these products.")
        eligible = min(sum((Decimal(v) for v in matched.values()), Decimal("0")), subtotal)

    if coupon.type == CouponType.PERCENT.value:
        pct = min(max(Decimal(coupon.value or 0), Decimal("0")), Decimal("100"))
        discount = eligible * pct / Decimal("100")
    else:
        coupon_currency = (coupon.currency or "NGN").upper()
        if coupon_currency != currency:
            raise CouponInvalidError("currency_mismatch", f"Coupon is only valid for {coupon_currency}.")
        discount = Decimal(coupon.value or 0)

    discount = min(max(discount, Decimal("0")), eligible)
    return round_money(discount, currency)


class CouponService:
    """Coupon lookup, quoting, redemption and admin management."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, code: str) -> Optional[Coupon]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return self.db.execute(select(Coupon).where(Coupon.code == normalized)).scalar_one_or_none()

    def quote(
        self,
        code: Optional[str],
        currency: str,
        subtotal: Decimal,
        line_subtotals: Optional[dict[str, Decimal]] = None,
        now: Optional[datetime] = None,
    ) -> CouponQuote:
        """Price a cart with an optional coupon code. An empty code means no coupon."""
        currency = (currency or "NGN").upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError("currency must be NGN or USD", {"field": "currency"})
        subtotal = Decimal(subtotal)

        if not normalize_code(code):
            return CouponQuote(coupon=None, discount=Decimal("0"), subtotal=subtotal, currency=currency)

        coupon = self.get_by_code(code)
        if coupon is None:
            raise CouponInvalidError("unknown", "Invalid coupon code.")
        discount = compute_discount(coupon, currency, subtotal, line_subtotals, now)
        return CouponQuote(coupon=coupon, discount=discount, subtotal=subtotal, currency=currency)

    def redeem(self, coupon_id: str) -> bool:
        """
        Count one redemption. Part of the caller's transaction.

        Returns False when the coupon reached max_redemptions in the meantime;
        the approved purchase keeps its quoted discount either way.
        """
        result = self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .where(or_(
                Coupon.max_redemptions.is_(None),
                Coupon.redeemed_count < Coupon.max_redemptions,
            ))
            .values(redeemed_count=Coupon.redeemed_count + 1)
            .execution_options(synchronize_session=False)
        )
        redeemed = result.rowcount == 1
        if not redeemed:
            logger.warning("Coupon redemption limit reached at approval", extra={"coupon_id": coupon_id})
        return redeemed

    # ----- Admin -----

    def list_coupons(self) -> list[Coupon]:
        return list(self.db.execute(select(Coupon).order_by(Coupon.created_at.desc())).scalars())

    def create(self, **fields) -> Coupon:
        code = normalize_code(fields.pop("code", None))
        if not code:
            raise ValidationError("code is required", {"field": "code"})
        if self.get_by_code(code) is not None:
            raise ConflictError("Coupon code already exists", {"code": code})
        coupon = Coupon(code=code)
        self._apply_fields(coupon, fields)
        self.db.add(coupon)
        self.db.commit()
        logger.info("Coupon created", extra={"coupon_id": coupon.id, "code": code})
        return coupon

    def update(self, coupon_id: str, **fields) -> Coupon:
        coupon = self.db.get(Coupon, coupon_id)
        if coupon is None:
            raise NotFoundError("Coupon", coupon_id)
        if "code" in fields:
            code = normalize_code(fields.pop("code"))
            if code and code != coupon.code:
                if self.get_by_code(code) is not None:
                    raise ConflictError("Coupon code already exists", {"code": code})
                coupon.code = code
        self._apply_fields(coupon, fields)
        self.db.commit()
        logger.info("Coupon updated", extra={"coupon_id": coupon.id, "fields": sorted(fields)})
        return coupon

    @staticmethod
    def _apply_fields(coupon: Coupon, fields: dict[str, Any]) -> None:
        if "type" in fields and fields["type"] is not None:
            if fields["type"] not in (CouponType.PERCENT.value, CouponType.FIXED.value):
                raise ValidationError("type must be percent or fixed", {"field": "type"})
        if "currency" in fields and fields["currency"]:
            fields["currency"] = fields["currency"].upper()
            if fields["currency"] not in SUPPORTED_CURRENCIES:
                raise ValidationError("currency must be NGN or USD", {"field": "currency"})
        if "applies_to_product_keys" in fields and fields["applies_to_product_keys"] is not None:
            fields["applies_to_product_keys"] = sorted(
                {normalize_product_key(k) for k in fields["applies_to_product_keys"] if k}
            )
        for name, value in fields.items():
            if value is not None or name in ("starts_at", "ends_at", "max_redemptions", "min_subtotal"):
                setattr(coupon, name, value)
        if coupon.type == CouponType.FIXED.value and not coupon.currency:
            coupon.currency = "NGN"


def line_subtotals_of(items: Iterable[tuple[str, Decimal]]) -> dict[str, Decimal]:
    """Sum line subtotals per product key."""
    totals: dict[str, Decimal] = {}
    for product_key, amount in items:
        key = normalize_product_key(product_key)
        totals[key] = totals.get(key, Decimal("0")) + Decimal(amount)
    return totals
