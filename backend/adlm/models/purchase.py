"""
Purchase and PurchaseLine models.

A Purchase is created pending by checkout and consumed once by approval:

    pending -> approved | rejected

The transition is one-way. Approval is performed with a conditional UPDATE
(see PurchaseService.approve) so the entitlement grants attached to it are
applied exactly once even under concurrent approvals or payment callbacks.

Cart purchases carry one or more lines. Legacy single-product purchases have
no lines and carry product_key + requested_months instead.
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from adlm.db_base import Base
from adlm.models.base import TimestampMixin, UTCDateTime, generate_uuid


class PurchaseStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InstallationStatus(str, enum.Enum):
    NONE = "none"            # Nothing to install, grants applied at approval
    PENDING = "pending"      # Grants staged until installation is confirmed
    COMPLETE = "complete"


class BillingInterval(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Purchase(Base, TimestampMixin):
    """Checkout order awaiting payment confirmation or admin approval."""

    __tablename__ = "purchases"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    email = Column(String(255), nullable=False)

    currency = Column(String(3), nullable=False, default="NGN")

    subtotal = Column(Numeric(14, 2), nullable=False, default=0)
    discount = Column(Numeric(14, 2), nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)

    coupon_code = Column(String(64), nullable=True)
    coupon_id = Column(String(36), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)

    # Legacy single-product shape
    product_key = Column(String(100), nullable=True)
    requested_months = Column(Integer, nullable=True)
    approved_months = Column(
        Integer,
        nullable=True,
        comment="Admin override of requested_months for legacy purchases"
    )

    payment_reference = Column(String(100), nullable=True, unique=True)
    paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(UTCDateTime(), nullable=True)

    status = Column(
        SAEnum(PurchaseStatus, name="purchase_status", create_constraint=True),
        nullable=False,
        default=PurchaseStatus.PENDING,
        index=True,
    )

    decided_at = Column(UTCDateTime(), nullable=True)
    decided_by = Column(String(36), nullable=True, comment="Admin user id, or 'paystack'")
    decision_note = Column(Text, nullable=True)

    installation_status = Column(
        SAEnum(InstallationStatus, name="installation_status", create_constraint=True),
        nullable=False,
        default=InstallationStatus.NONE,
    )

    staged_grants = Column(
        JSON,
        nullable=True,
        comment="Grants held back until installation completes"
    )

    entitlements_applied = Column(Boolean, nullable=False, default=False)
    installation_completed_at = Column(UTCDateTime(), nullable=True)

    lines = relationship(
        "PurchaseLine",
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="PurchaseLine.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_purchases_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Purchase(id={self.id}, email={self.email}, status={self.status.value})>"

    @property
    def is_pending(self) -> bool:
        return self.status == PurchaseStatus.PENDING


class PurchaseLine(Base):
    """One product line of a cart purchase."""

    __tablename__ = "purchase_lines"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    purchase_id = Column(
        String(36),
        ForeignKey("purchases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    position = Column(Integer, nullable=False, default=0)

    product_key = Column(String(100), nullable=False)
    product_name = Column(String(255), nullable=True)

    billing_interval = Column(
        String(10),
        nullable=False,
        default=BillingInterval.MONTHLY.value,
    )

    qty = Column(Integer, nullable=False, default=1, comment="Seats")
    periods = Column(Integer, nullable=False, default=1)

    license_type = Column(String(20), nullable=False, default="personal")

    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    install_fee = Column(Numeric(14, 2), nullable=False, default=0)
    subtotal = Column(Numeric(14, 2), nullable=False, default=0)

    purchase = relationship("Purchase", back_populates="lines")
