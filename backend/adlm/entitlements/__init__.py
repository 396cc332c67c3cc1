"""
Entitlement lifecycle and enforcement.

This package provides:
- expiry: extend() calendar-month arithmetic and the has_access() rule
- grants: Grant, purchase/training grant builders (max-merge per product)
- applier: apply_grant() create-or-extend
- seats: DeviceSeatEnforcer activate/deactivate/admin reset
- legacy: lazy migration of single-device records
- service: entitlement listings and admin overrides
- errors: the entitlement error taxonomy

The request-time access guard lives in
adlm.api.dependencies.require_entitlement.
"""

from adlm.entitlements.applier import apply_grant, apply_grants
from adlm.entitlements.errors import (
    DeviceNotActiveError,
    EntitlementError,
    EntitlementExpiredError,
    EntitlementInactiveError,
    EntitlementNotFoundError,
    ExpiryOutOfRangeError,
    NoSubscriptionError,
    SeatLimitReachedError,
    SubscriptionExpiredError,
    VersionConflictError,
)
from adlm.entitlements.expiry import MAX_GRANT_MONTHS, AccessState, access_state, extend, has_access
from adlm.entitlements.grants import (
    CartOrder,
    Grant,
    LegacyOrder,
    grants_from_purchase,
    grants_from_training,
    merge_grants,
    normalize_purchase,
)
from adlm.entitlements.seats import ActivationResult, DeviceSeatEnforcer, SeatUsage
from adlm.entitlements.service import EntitlementService, entitlement_to_dict

__all__ = [
    # Applier
    "apply_grant",
    "apply_grants",
    # Errors
    "DeviceNotActiveError",
    "EntitlementError",
    "EntitlementExpiredError",
    "EntitlementInactiveError",
    "EntitlementNotFoundError",
    "ExpiryOutOfRangeError",
    "NoSubscriptionError",
    "SeatLimitReachedError",
    "SubscriptionExpiredError",
    "VersionConflictError",
    # Expiry
    "MAX_GRANT_MONTHS",
    "AccessState",
    "access_state",
    "extend",
    "has_access",
    # Grants
    "CartOrder",
    "Grant",
    "LegacyOrder",
    "grants_from_purchase",
    "grants_from_training",
    "merge_grants",
    "normalize_purchase",
    # Seats
    "ActivationResult",
    "DeviceSeatEnforcer",
    "SeatUsage",
    # Service
    "EntitlementService",
    "entitlement_to_dict",
]
