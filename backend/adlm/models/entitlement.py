"""
Entitlement and DeviceBinding models.

An Entitlement is a user's right to one product: status, expiry, seat count
and the devices bound to those seats. It is owned by exactly one User and is
never deleted, only status-flipped.

Concurrency:
- `version` is the mapper's version_id_col. Every UPDATE of an entitlement
  row is issued as `... WHERE id = :id AND version = :old` and raises
  StaleDataError when another transaction got there first.
- The version is assigned by `touch()` (version_id_generator=False). Device
  changes do not update the parent row on their own, so every mutation path
  calls `touch()` to force the versioned UPDATE.

Legacy rows may carry a flat legacy_device_fingerprint/legacy_device_bound_at
pair instead of device rows; see adlm.entitlements.legacy.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from adlm.db_base import Base
from adlm.models.base import TimestampMixin, UTCDateTime, generate_uuid, utcnow


class EntitlementStatus(str, enum.Enum):
    """Entitlement status."""
    ACTIVE = "active"        # Granted, subject to expires_at
    INACTIVE = "inactive"    # Never granted or turned off without a ban
    DISABLED = "disabled"    # Administrative override, always denies


class LicenseType(str, enum.Enum):
    PERSONAL = "personal"
    ORGANIZATION = "organization"


class Entitlement(Base, TimestampMixin):
    """Per-user, per-product license state."""

    __tablename__ = "entitlements"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_key = Column(
        String(100),
        nullable=False,
        comment="Lowercased product key, e.g. rategen, revit, bimcourse"
    )

    status = Column(
        SAEnum(EntitlementStatus, name="entitlement_status", create_constraint=True),
        nullable=False,
        default=EntitlementStatus.INACTIVE,
    )

    expires_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Null means perpetual once active"
    )

    seats = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Maximum concurrently bound devices"
    )

    license_type = Column(
        String(20),
        nullable=False,
        default=LicenseType.PERSONAL.value,
    )

    organization_name = Column(String(255), nullable=True)

    legacy_device_fingerprint = Column(
        String(255),
        nullable=True,
        comment="Single-device binding from before multi-seat support"
    )

    legacy_device_bound_at = Column(UTCDateTime(), nullable=True)

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency token"
    )

    user = relationship("User", back_populates="entitlements")

    devices = relationship(
        "DeviceBinding",
        back_populates="entitlement",
        cascade="all, delete-orphan",
        order_by="DeviceBinding.bound_at",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "product_key", name="uq_entitlements_user_product"),
    )

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    def __repr__(self) -> str:
        status = self.status.value if self.status else None
        return (
            f"<Entitlement(user_id={self.user_id}, product_key={self.product_key}, "
            f"status={status}, expires_at={self.expires_at}, seats={self.seats})>"
        )

    @property
    def active_devices(self) -> list["DeviceBinding"]:
        """Bindings that currently occupy a seat."""
        return [d for d in self.devices if d.revoked_at is None]

    @property
    def seats_used(self) -> int:
        return len(self.active_devices)

    @property
    def effective_seats(self) -> int:
        return max(self.seats or 1, 1)

    def find_active_device(self, fingerprint: str) -> Optional["DeviceBinding"]:
        for device in self.devices:
            if device.revoked_at is None and device.fingerprint == fingerprint:
                return device
        return None

    def touch(self, now: Optional[datetime] = None) -> None:
        """Bump the version so the flush carries a version check."""
        self.version = (self.version or 0) + 1
        self.updated_at = now or utcnow()


class DeviceBinding(Base):
    """A device fingerprint occupying (or having occupied) a seat."""

    __tablename__ = "device_bindings"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    entitlement_id = Column(
        String(36),
        ForeignKey("entitlements.id", ondelete="CASCADE"),
        nullable=False,
    )

    fingerprint = Column(
        String(255),
        nullable=False,
        comment="Opaque client-supplied device identifier"
    )

    name = Column(String(255), nullable=True)

    bound_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    last_seen_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    revoked_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Set when the seat is freed; row kept for history"
    )

    entitlement = relationship("Entitlement", back_populates="devices")

    __table_args__ = (
        Index("ix_device_bindings_entitlement_fingerprint", "entitlement_id", "fingerprint"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeviceBinding(fingerprint={self.fingerprint}, bound_at={self.bound_at}, "
            f"revoked_at={self.revoked_at})>"
        )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
