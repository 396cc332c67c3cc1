"""
Legacy entitlement shape migration.

Before multi-seat support an entitlement carried a single flat
device fingerprint/bound-at pair. The first time such a record is read or
mutated the pair becomes a one-element device collection and the flat
columns are cleared, so running the migration again changes nothing.
"""

import logging
from datetime import datetime
from typing import Optional

from adlm.models.base import utcnow
from adlm.models.entitlement import DeviceBinding, Entitlement

logger = logging.getLogger(__name__)


def needs_migration(entitlement: Entitlement) -> bool:
    return bool(entitlement.legacy_device_fingerprint)


def migrate_legacy_binding(entitlement: Entitlement, now: Optional[datetime] = None) -> bool:
    """
    Move the flat legacy binding into the devices collection.

    A legacy fingerprint is only carried over when the entitlement has no
    device rows yet; existing rows are already the canonical shape. Seats
    are normalised to at least one.

    Returns:
        True when the entitlement was changed
    """
    changed = False
    if not entitlement.seats or entitlement.seats < 1:
        entitlement.seats = 1
        changed = True

    if needs_migration(entitlement):
        bound_at = entitlement.legacy_device_bound_at or now or utcnow()
        if not entitlement.devices:
            entitlement.devices.append(
                DeviceBinding(
                    fingerprint=entitlement.legacy_device_fingerprint,
                    bound_at=bound_at,
                    last_seen_at=bound_at,
                )
            )
        entitlement.legacy_device_fingerprint = None
        entitlement.legacy_device_bound_at = None
        changed = True

        logger.info(
            "Migrated legacy device binding",
            extra={
                "user_id": entitlement.user_id,
                "product_key": entitlement.product_key,
            }
        )

    if changed:
        entitlement.touch(now)
    return changed
