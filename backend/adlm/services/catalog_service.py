"""
Product catalogue: listing, admin edits and pricing.

NGN prices are authoritative. A USD price is the product's USD override
when set, otherwise the NGN price divided by the configured FX rate,
rounded to 2dp.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from adlm.models.catalog import Product
from adlm.models.purchase import BillingInterval
from adlm.models.user import normalize_product_key
from adlm.platform.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

BILLING_INTERVALS = (BillingInterval.MONTHLY.value, BillingInterval.YEARLY.value)


def _to_usd(ngn: Decimal, fx_ngn_per_usd: float) -> Decimal:
    usd = Decimal(ngn or 0) / Decimal(str(fx_ngn_per_usd))
    return usd.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def unit_price(product: Product, interval: str, currency: str, fx_ngn_per_usd: float) -> Decimal:
    """Price of one seat for one billing period."""
    yearly = interval == BillingInterval.YEARLY.value
    ngn = Decimal((product.price_yearly_ngn if yearly else product.price_monthly_ngn) or 0)
    if currency != "USD":
        return ngn
    override = product.price_yearly_usd if yearly else product.price_monthly_usd
    if override is not None:
        return Decimal(override)
    return _to_usd(ngn, fx_ngn_per_usd)


def install_fee(product: Product, currency: str, fx_ngn_per_usd: float) -> Decimal:
    ngn = Decimal(product.install_fee_ngn or 0)
    if currency != "USD":
        return ngn
    if product.install_fee_usd is not None:
        return Decimal(product.install_fee_usd)
    return _to_usd(ngn, fx_ngn_per_usd)


def product_to_dict(product: Product, fx_ngn_per_usd: float) -> dict[str, Any]:
    return {
        "key": product.key,
        "name": product.name,
        "billing_interval": product.billing_interval,
        "is_course": product.is_course,
        "requires_installation": product.requires_installation,
        "is_published": product.is_published,
        "price": {
            "monthly_ngn": float(product.price_monthly_ngn or 0),
            "yearly_ngn": float(product.price_yearly_ngn or 0),
            "install_ngn": float(product.install_fee_ngn or 0),
            "monthly_usd": float(unit_price(product, "monthly", "USD", fx_ngn_per_usd)),
            "yearly_usd": float(unit_price(product, "yearly", "USD", fx_ngn_per_usd)),
            "install_usd": float(install_fee(product, "USD", fx_ngn_per_usd)),
        },
    }


class CatalogService:
    """Product reads and admin writes bound to one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str) -> Optional[Product]:
        key = normalize_product_key(key)
        if not key:
            return None
        return self.db.execute(select(Product).where(Product.key == key)).scalar_one_or_none()

    def get_published(self, keys) -> dict[str, Product]:
        normalized = {normalize_product_key(k) for k in keys if k}
        if not normalized:
            return {}
        rows = self.db.execute(
            select(Product).where(Product.key.in_(normalized), Product.is_published.is_(True))
        ).scalars()
        return {p.key: p for p in rows}

    def requiring_installation(self, keys) -> set[str]:
        normalized = {normalize_product_key(k) for k in keys if k}
        if not normalized:
            return set()
        rows = self.db.execute(
            select(Product.key).where(
                Product.key.in_(normalized),
                Product.requires_installation.is_(True),
            )
        ).scalars()
        return set(rows)

    def list_products(self, include_unpublished: bool = False) -> list[Product]:
        query = select(Product).order_by(Product.name)
        if not include_unpublished:
            query = query.where(Product.is_published.is_(True))
        return list(self.db.execute(query).scalars())

    def create(self, **fields) -> Product:
        key = normalize_product_key(fields.pop("key", None))
        if not key:
            raise ValidationError("key is required", {"field": "key"})
        if not fields.get("name"):
            raise ValidationError("name is required", {"field": "name"})
        if self.get(key) is not None:
            raise ConflictError("Product key already exists", {"key": key})
        product = Product(key=key)
        self._apply_fields(product, fields)
        self.db.add(product)
        self.db.commit()
        logger.info("Product created", extra={"product_key": key})
        return product

    def update(self, key: str, **fields) -> Product:
        product = self.get(key)
        if product is None:
            raise NotFoundError("Product", key)
        fields.pop("key", None)
        self._apply_fields(product, fields)
        self.db.commit()
        logger.info("Product updated", extra={"product_key": product.key, "fields": sorted(fields)})
        return product

    @staticmethod
    def _apply_fields(product: Product, fields: dict[str, Any]) -> None:
        interval = fields.get("billing_interval")
        if interval is not None and interval not in BILLING_INTERVALS:
            raise ValidationError("billing_interval must be monthly or yearly", {"field": "billing_interval"})
        for name, value in fields.items():
            if value is not None or name.endswith("_usd"):
                setattr(product, name, value)
