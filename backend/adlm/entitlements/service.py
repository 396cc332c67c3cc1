"""
Entitlement service: reads and admin overrides of a user's entitlement set.

Reads lazily migrate legacy device bindings and persist the migration.
Admin overrides are the one path allowed to shrink seats or set an
arbitrary status.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from adlm.entitlements.errors import VersionConflictError
from adlm.entitlements.expiry import access_state, extend
from adlm.entitlements.legacy import migrate_legacy_binding
from adlm.entitlements.seats import SeatUsage
from adlm.entitlements.store import commit_entitlement_changes
from adlm.models.base import utcnow
from adlm.models.entitlement import Entitlement, EntitlementStatus
from adlm.models.user import User, normalize_product_key
from adlm.platform.errors import ValidationError

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def entitlement_to_dict(entitlement: Entitlement) -> dict[str, Any]:
    """Raw entitlement shape, including revoked device history."""
    return {
        "product_key": entitlement.product_key,
        "status": entitlement.status.value,
        "expires_at": _iso(entitlement.expires_at),
        "seats": entitlement.effective_seats,
        "license_type": entitlement.license_type,
        "organization_name": entitlement.organization_name,
        "version": entitlement.version,
        "devices": [
            {
                "fingerprint": d.fingerprint,
                "name": d.name,
                "bound_at": _iso(d.bound_at),
                "last_seen_at": _iso(d.last_seen_at),
                "revoked_at": _iso(d.revoked_at),
            }
            for d in entitlement.devices
        ],
    }


def parse_status(value: str) -> EntitlementStatus:
    try:
        return EntitlementStatus((value or "").strip().lower())
    except ValueError:
        raise ValidationError(
            "status must be one of active, inactive, disabled",
            {"field": "status", "value": value},
        )


class EntitlementService:
    """Entitlement reads and admin overrides bound to one session."""

    def __init__(self, db: Session):
        self.db = db

    def _migrate_all(self, user: User, now: datetime) -> None:
        changed = False
        for entitlement in user.entitlements.values():
            changed = migrate_legacy_binding(entitlement, now) or changed
        if changed:
            commit_entitlement_changes(self.db)

    def list_raw(self, user: User, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        now = now or utcnow()
        self._migrate_all(user, now)
        return [entitlement_to_dict(e) for e in self._ordered(user)]

    def list_summaries(self, user: User, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Entitlements with computed seat usage and access state."""
        now = now or utcnow()
        self._migrate_all(user, now)
        summaries = []
        for entitlement in self._ordered(user):
            usage = SeatUsage.of(entitlement)
            summaries.append({
                "product_key": entitlement.product_key,
                "status": entitlement.status.value,
                "expires_at": _iso(entitlement.expires_at),
                "access": access_state(entitlement, now).value,
                "license_type": entitlement.license_type,
                "organization_name": entitlement.organization_name,
                "seats": usage.seats,
                "seats_used": usage.seats_used,
                "devices": usage.devices,
                "version": entitlement.version,
            })
        return summaries

    @staticmethod
    def _ordered(user: User) -> list[Entitlement]:
        return sorted(user.entitlements.values(), key=lambda e: e.product_key)

    def admin_set(
        self,
        user: User,
        product_key: str,
        months: int = 0,
        status: Optional[str] = None,
        seats: Optional[int] = None,
        base_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """
        Manual grant or override.

        Missing entitlement: created with `status` (default active), expiry
        now + months (one month when months is 0) and `seats` (default 1).
        Existing entitlement: status replaced when given, expiry extended
        when months > 0, seats replaced when given. The caller commits.
        """
        now = now or utcnow()
        product_key = normalize_product_key(product_key)
        if not product_key:
            raise ValidationError("product_key is required", {"field": "product_key"})
        if months is None or months < 0:
            raise ValidationError("months must be zero or positive", {"field": "months"})
        if seats is not None and seats < 1:
            raise ValidationError("seats must be at least 1", {"field": "seats"})
        new_status = parse_status(status) if status else None

        entitlement = user.entitlements.get(product_key)
        if entitlement is None:
            if base_version is not None:
                raise VersionConflictError(product_key, base_version, None)
            entitlement = Entitlement(
                product_key=product_key,
                status=new_status or EntitlementStatus.ACTIVE,
                expires_at=extend(None, months or 1, now),
                seats=seats or 1,
            )
            user.entitlements[product_key] = entitlement
        else:
            if base_version is not None and base_version != entitlement.version:
                raise VersionConflictError(product_key, base_version, entitlement.version)
            migrate_legacy_binding(entitlement, now)
            if new_status is not None:
                entitlement.status = new_status
            if months > 0:
                entitlement.expires_at = extend(entitlement.expires_at, months, now)
            if seats is not None:
                entitlement.seats = seats

        entitlement.touch(now)
        logger.info(
            "Entitlement set by admin",
            extra={
                "user_id": user.id,
                "product_key": product_key,
                "status": entitlement.status.value,
                "months": months,
                "seats": entitlement.seats,
            }
        )
        return entitlement

    def commit(self, product_key: Optional[str] = None) -> None:
        commit_entitlement_changes(self.db, product_key)
