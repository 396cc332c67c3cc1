"""
Device seat enforcement.

State machine over one entitlement's device bindings. The seat invariant

    count(unrevoked bindings) <= seats

holds after every activation. Each operation ends in one commit that
carries the entitlement's version check, so two devices racing for the last
seat cannot both win: the loser gets VersionConflictError and may retry.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from adlm.entitlements.errors import (
    DeviceNotActiveError,
    EntitlementExpiredError,
    EntitlementInactiveError,
    EntitlementNotFoundError,
    SeatLimitReachedError,
    VersionConflictError,
)
from adlm.entitlements.expiry import AccessState, access_state
from adlm.entitlements.legacy import migrate_legacy_binding
from adlm.entitlements.store import commit_entitlement_changes
from adlm.models.base import utcnow
from adlm.models.entitlement import DeviceBinding, Entitlement
from adlm.models.user import User, normalize_product_key
from adlm.platform.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def device_summary(device: DeviceBinding) -> dict[str, Any]:
    return {
        "fingerprint": device.fingerprint,
        "name": device.name,
        "bound_at": device.bound_at.isoformat() if device.bound_at else None,
        "last_seen_at": device.last_seen_at.isoformat() if device.last_seen_at else None,
    }


@dataclass
class SeatUsage:
    """Seat occupancy of one entitlement."""
    product_key: str
    seats: int
    seats_used: int
    devices: list[dict[str, Any]] = field(default_factory=list)
    version: Optional[int] = None

    @classmethod
    def of(cls, entitlement: Entitlement) -> "SeatUsage":
        active = entitlement.active_devices
        return cls(
            product_key=entitlement.product_key,
            seats=entitlement.effective_seats,
            seats_used=len(active),
            devices=[device_summary(d) for d in active],
            version=entitlement.version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_key": self.product_key,
            "seats": self.seats,
            "seats_used": self.seats_used,
            "devices": self.devices,
            "version": self.version,
        }


@dataclass
class ActivationResult:
    """Outcome of a successful activation."""
    fingerprint: str
    already_active: bool
    usage: SeatUsage

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "fingerprint": self.fingerprint,
            "already_active": self.already_active,
            **self.usage.to_dict(),
        }


def _require_fingerprint(fingerprint: Optional[str]) -> str:
    fingerprint = (fingerprint or "").strip()
    if not fingerprint:
        raise ValidationError("device_fingerprint is required", {"field": "device_fingerprint"})
    return fingerprint


class DeviceSeatEnforcer:
    """Activate, deactivate and reset device bindings for a user's entitlements."""

    def __init__(self, db: Session):
        self.db = db

    def _load(self, user: User, product_key: str, now: datetime) -> Entitlement:
        entitlement = user.entitlements.get(product_key)
        if entitlement is None:
            raise NotFoundError("Entitlement")
        migrate_legacy_binding(entitlement, now)
        return entitlement

    def activate(
        self,
        user: User,
        product_key: str,
        fingerprint: str,
        name: Optional[str] = None,
        base_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ActivationResult:
        """
        Bind a device to a seat, or refresh an existing binding.

        Raises:
            EntitlementNotFoundError: no entitlement for the product
            EntitlementInactiveError: status is inactive or disabled
            EntitlementExpiredError: active but past expiry
            SeatLimitReachedError: every seat is bound to another device
            VersionConflictError: base_version is stale or a concurrent write won
        """
        now = now or utcnow()
        product_key = normalize_product_key(product_key)
        fingerprint = _require_fingerprint(fingerprint)
        name = (name or "").strip() or None

        entitlement = user.entitlements.get(product_key)
        if entitlement is None:
            raise EntitlementNotFoundError(product_key)
        if base_version is not None and base_version != entitlement.version:
            raise VersionConflictError(product_key, base_version, entitlement.version)

        state = access_state(entitlement, now)
        if state is AccessState.INACTIVE:
            raise EntitlementInactiveError(product_key, entitlement.status.value)
        if state is AccessState.EXPIRED:
            raise EntitlementExpiredError(product_key, entitlement.expires_at.isoformat())

        migrate_legacy_binding(entitlement, now)

        existing = entitlement.find_active_device(fingerprint)
        if existing is not None:
            existing.last_seen_at = now
            if name:
                existing.name = name
            already_active = True
        else:
            seats = entitlement.effective_seats
            active = entitlement.active_devices
            if len(active) >= seats:
                logger.warning(
                    "Seat limit reached",
                    extra={
                        "user_id": user.id,
                        "product_key": product_key,
                        "seats": seats,
                        "seats_used": len(active),
                    }
                )
                raise SeatLimitReachedError(
                    product_key=product_key,
                    seats=seats,
                    seats_used=len(active),
                    devices=[device_summary(d) for d in active],
                )
            entitlement.devices.append(
                DeviceBinding(
                    fingerprint=fingerprint,
                    name=name,
                    bound_at=now,
                    last_seen_at=now,
                )
            )
            already_active = False

        entitlement.touch(now)
        commit_entitlement_changes(self.db, product_key)

        logger.info(
            "Device activated",
            extra={
                "user_id": user.id,
                "product_key": product_key,
                "already_active": already_active,
                "seats_used": entitlement.seats_used,
                "seats": entitlement.effective_seats,
            }
        )
        return ActivationResult(
            fingerprint=fingerprint,
            already_active=already_active,
            usage=SeatUsage.of(entitlement),
        )

    def deactivate(
        self,
        user: User,
        product_key: str,
        fingerprint: str,
        now: Optional[datetime] = None,
    ) -> SeatUsage:
        """
        Free the seat held by a device. Seats are not decremented.

        Raises:
            NotFoundError: no entitlement for the product
            DeviceNotActiveError: no unrevoked binding matches
        """
        now = now or utcnow()
        product_key = normalize_product_key(product_key)
        fingerprint = _require_fingerprint(fingerprint)

        entitlement = self._load(user, product_key, now)
        device = entitlement.find_active_device(fingerprint)
        if device is None:
            raise DeviceNotActiveError(product_key, fingerprint)

        device.revoked_at = now
        entitlement.touch(now)
        commit_entitlement_changes(self.db, product_key)

        logger.info(
            "Device deactivated",
            extra={"user_id": user.id, "product_key": product_key},
        )
        return SeatUsage.of(entitlement)

    def admin_reset_device(
        self,
        user: User,
        product_key: str,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """
        Clear every binding of an entitlement and force re-authentication.

        The legacy flat binding is cleared, every active binding is revoked
        (rows kept for history) and the user's refresh_version is bumped.
        Seats and status are unchanged. The caller commits.

        Raises:
            NotFoundError: no entitlement for the product
        """
        now = now or utcnow()
        product_key = normalize_product_key(product_key)

        entitlement = user.entitlements.get(product_key)
        if entitlement is None:
            raise NotFoundError("Entitlement")

        entitlement.legacy_device_fingerprint = None
        entitlement.legacy_device_bound_at = None
        revoked = 0
        for device in entitlement.active_devices:
            device.revoked_at = now
            revoked += 1
        entitlement.touch(now)
        user.bump_refresh_version()

        logger.info(
            "Device binding reset",
            extra={
                "user_id": user.id,
                "product_key": product_key,
                "revoked_devices": revoked,
                "refresh_version": user.refresh_version,
            }
        )
        return entitlement
