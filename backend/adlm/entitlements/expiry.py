"""
Expiry arithmetic and the effective-access rule.

Pure functions, no I/O. "now" is always taken at call time unless passed in.

Month arithmetic uses dateutil's relativedelta: adding one month to Jan 31
lands on the last day of February.
"""

import enum
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from adlm.entitlements.errors import ExpiryOutOfRangeError
from adlm.models.base import as_utc, utcnow
from adlm.models.entitlement import Entitlement, EntitlementStatus

# Longest single extension a grant may carry (100 years)
MAX_GRANT_MONTHS = 1200


class AccessState(str, enum.Enum):
    """Why an entitlement does or does not grant access."""
    GRANTED = "granted"
    MISSING = "missing"
    INACTIVE = "inactive"
    EXPIRED = "expired"


def extend(
    current_expires_at: Optional[datetime],
    months_to_add: int,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Extend an expiry by calendar months.

    The base is the current expiry when it is still in the future, otherwise
    now. Time already paid for is never lost and lapsed time is never
    back-filled.

    Raises:
        ValueError: If months_to_add is not a positive integer
        ExpiryOutOfRangeError: If months_to_add exceeds MAX_GRANT_MONTHS or the
            result falls past the last representable date
    """
    if isinstance(months_to_add, bool) or not isinstance(months_to_add, int) or months_to_add < 1:
        raise ValueError(f"months_to_add must be a positive integer, got {months_to_add!r}")

    now = as_utc(now) or utcnow()
    current = as_utc(current_expires_at)
    base = current if current is not None and current > now else now
    if months_to_add > MAX_GRANT_MONTHS:
        raise ExpiryOutOfRangeError(months_to_add, MAX_GRANT_MONTHS)
    try:
        return base + relativedelta(months=months_to_add)
    except (ValueError, OverflowError):
        raise ExpiryOutOfRangeError(months_to_add, MAX_GRANT_MONTHS)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return False
    now = as_utc(now) or utcnow()
    return as_utc(expires_at) <= now


def access_state(entitlement: Optional[Entitlement], now: Optional[datetime] = None) -> AccessState:
    if entitlement is None:
        return AccessState.MISSING
    if entitlement.status != EntitlementStatus.ACTIVE:
        return AccessState.INACTIVE
    if is_expired(entitlement.expires_at, now):
        return AccessState.EXPIRED
    return AccessState.GRANTED


def has_access(entitlement: Optional[Entitlement], now: Optional[datetime] = None) -> bool:
    """status == active and (no expiry or expiry in the future)."""
    return access_state(entitlement, now) is AccessState.GRANTED
