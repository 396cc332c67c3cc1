"""
Entitlement applier.

apply_grant() creates or extends one entitlement in place; the caller
commits. It does not check payment state: orchestrators call it only after
winning the one-way pending -> approved transition.

Rules:
- missing entitlement: created active, expiry = extend(None, months),
  seats = max(requested, 1), no devices
- existing entitlement: legacy binding migrated, status set active, expiry
  extended from max(now, current expiry), seats = max(current, requested)
- devices are never touched
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from adlm.entitlements.expiry import extend
from adlm.entitlements.grants import Grant
from adlm.entitlements.legacy import migrate_legacy_binding
from adlm.models.base import utcnow
from adlm.models.entitlement import Entitlement, EntitlementStatus, LicenseType
from adlm.models.user import User, normalize_product_key

logger = logging.getLogger(__name__)


def apply_grant(
    user: User,
    grant: Grant,
    now: Optional[datetime] = None,
    reactivate_disabled: bool = True,
) -> Entitlement:
    """
    Apply one grant to a user's entitlement set.

    Args:
        user: Owner of the entitlement (mutated in place)
        grant: Product, months (> 0) and requested seats
        now: Clock override
        reactivate_disabled: When False a disabled entitlement keeps its
            status; expiry and seats still move

    Returns:
        The created or updated entitlement
    """
    now = now or utcnow()
    product_key = normalize_product_key(grant.product_key)
    if not product_key:
        raise ValueError("Grant product_key is required")
    requested_seats = max(int(grant.seats or 1), 1)

    entitlement = user.entitlements.get(product_key)
    created = entitlement is None

    if created:
        entitlement = Entitlement(
            product_key=product_key,
            status=EntitlementStatus.ACTIVE,
            expires_at=extend(None, grant.months, now),
            seats=requested_seats,
            license_type=grant.license_type or LicenseType.PERSONAL.value,
            organization_name=grant.organization_name,
        )
        user.entitlements[product_key] = entitlement
    else:
        migrate_legacy_binding(entitlement, now)
        previous_status = entitlement.status
        if previous_status != EntitlementStatus.DISABLED or reactivate_disabled:
            entitlement.status = EntitlementStatus.ACTIVE
        entitlement.expires_at = extend(entitlement.expires_at, grant.months, now)
        entitlement.seats = max(entitlement.seats or 1, requested_seats)
        if grant.license_type:
            entitlement.license_type = grant.license_type
        if grant.organization_name:
            entitlement.organization_name = grant.organization_name

    entitlement.touch(now)

    logger.info(
        "Entitlement granted",
        extra={
            "user_id": user.id,
            "product_key": product_key,
            "months": grant.months,
            "seats": entitlement.seats,
            "created": created,
            "status": entitlement.status.value,
            "expires_at": entitlement.expires_at.isoformat(),
        }
    )
    return entitlement


def apply_grants(
    user: User,
    grants: Iterable[Grant],
    now: Optional[datetime] = None,
    reactivate_disabled: bool = True,
) -> list[Entitlement]:
    """Apply several grants with the same clock reading."""
    now = now or utcnow()
    return [
        apply_grant(user, grant, now=now, reactivate_disabled=reactivate_disabled)
        for grant in grants
    ]
