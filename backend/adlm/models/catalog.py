"""
Product catalogue and coupon models.

Products carry NGN prices with optional USD overrides; USD prices without an
override are converted with the configured FX rate at checkout.

Coupons are validated by adlm.services.coupon_service. redeemed_count is
only incremented when a purchase using the coupon is approved.
"""

import enum

from sqlalchemy import Boolean, Column, Integer, JSON, Numeric, String

from adlm.db_base import Base
from adlm.models.base import TimestampMixin, UTCDateTime, generate_uuid


class Product(Base, TimestampMixin):
    """Sellable product or course."""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    key = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Lowercased product key used by entitlements"
    )

    name = Column(String(255), nullable=False)

    billing_interval = Column(String(10), nullable=False, default="monthly")

    price_monthly_ngn = Column(Numeric(14, 2), nullable=False, default=0)
    price_yearly_ngn = Column(Numeric(14, 2), nullable=False, default=0)
    install_fee_ngn = Column(Numeric(14, 2), nullable=False, default=0)

    price_monthly_usd = Column(Numeric(14, 2), nullable=True)
    price_yearly_usd = Column(Numeric(14, 2), nullable=True)
    install_fee_usd = Column(Numeric(14, 2), nullable=True)

    is_course = Column(Boolean, nullable=False, default=False)

    requires_installation = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Stage grants until an admin confirms installation"
    )

    is_published = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Product(key={self.key}, name={self.name})>"


class CouponType(str, enum.Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class Coupon(Base, TimestampMixin):
    """Discount code."""

    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    code = Column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        comment="Upper-cased, stripped code"
    )

    type = Column(String(10), nullable=False, default=CouponType.PERCENT.value)

    value = Column(Numeric(14, 2), nullable=False, default=0)

    currency = Column(
        String(3),
        nullable=True,
        comment="Required for fixed coupons; must match checkout currency"
    )

    active = Column(Boolean, nullable=False, default=True)

    starts_at = Column(UTCDateTime(), nullable=True)
    ends_at = Column(UTCDateTime(), nullable=True)

    max_redemptions = Column(Integer, nullable=True)
    redeemed_count = Column(Integer, nullable=False, default=0)

    min_subtotal = Column(Numeric(14, 2), nullable=True)

    applies_to_mode = Column(String(10), nullable=False, default="all", comment="all | include")
    applies_to_product_keys = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Coupon(code={self.code}, type={self.type}, value={self.value})>"
