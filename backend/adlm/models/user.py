"""
User model.

A User owns its entitlement set exclusively. Entitlements are exposed as a
mapping keyed by product_key; the (user_id, product_key) unique constraint on
the entitlements table makes "one entitlement per product" structural.

refresh_version is bumped to invalidate every outstanding refresh token
(device reset, password change, account disable, training grants).
"""

import enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Column, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.orm.collections import attribute_keyed_dict

from adlm.db_base import Base
from adlm.models.base import TimestampMixin, generate_uuid

if TYPE_CHECKING:
    from adlm.models.entitlement import Entitlement


class UserRole(str, enum.Enum):
    """Platform roles."""
    USER = "user"
    ADMIN = "admin"
    MINI_ADMIN = "mini_admin"


STAFF_ROLES = frozenset({UserRole.ADMIN.value, UserRole.MINI_ADMIN.value})


class User(Base, TimestampMixin):
    """Platform account."""

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    email = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Lowercased login email"
    )

    username = Column(
        String(64),
        nullable=True,
        unique=True,
        comment="Optional login alias"
    )

    password_hash = Column(
        String(255),
        nullable=False,
        comment="bcrypt hash"
    )

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    whatsapp = Column(String(40), nullable=True)

    role = Column(
        String(20),
        nullable=False,
        default=UserRole.USER.value,
        comment="user | admin | mini_admin"
    )

    disabled = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Administrative lockout; blocks login and refresh"
    )

    refresh_version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Bumped to invalidate all refresh tokens"
    )

    entitlements = relationship(
        "Entitlement",
        collection_class=attribute_keyed_dict("product_key"),
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.email

    def get_entitlement(self, product_key: str) -> "Entitlement | None":
        """Look up the entitlement for a product key (case-insensitive)."""
        return self.entitlements.get(normalize_product_key(product_key))

    def bump_refresh_version(self) -> None:
        """Invalidate every refresh token issued so far."""
        self.refresh_version = (self.refresh_version or 1) + 1


def normalize_product_key(product_key: str) -> str:
    """Product keys are stored stripped and lowercased."""
    return (product_key or "").strip().lower()
