"""
Database models.

Importing this package registers every table on adlm.db_base.Base.metadata.
"""

from adlm.models.base import TimestampMixin, UTCDateTime, generate_uuid, utcnow
from adlm.models.user import User, UserRole, STAFF_ROLES, normalize_product_key
from adlm.models.entitlement import (
    DeviceBinding,
    Entitlement,
    EntitlementStatus,
    LicenseType,
)
from adlm.models.catalog import Coupon, CouponType, Product
from adlm.models.purchase import (
    BillingInterval,
    InstallationStatus,
    Purchase,
    PurchaseLine,
    PurchaseStatus,
)
from adlm.models.training import (
    DEFAULT_TRAINING_CAPACITY,
    EnrollmentStatus,
    TrainingEnrollment,
    TrainingEvent,
    TrainingGrant,
)

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "generate_uuid",
    "utcnow",
    "User",
    "UserRole",
    "STAFF_ROLES",
    "normalize_product_key",
    "DeviceBinding",
    "Entitlement",
    "EntitlementStatus",
    "LicenseType",
    "Coupon",
    "CouponType",
    "Product",
    "BillingInterval",
    "InstallationStatus",
    "Purchase",
    "PurchaseLine",
    "PurchaseStatus",
    "DEFAULT_TRAINING_CAPACITY",
    "EnrollmentStatus",
    "TrainingEnrollment",
    "TrainingEvent",
    "TrainingGrant",
]
