"""
Persistence helpers for entitlement mutations.

Every entitlement write goes through commit_entitlement_changes() so that a
lost optimistic-concurrency race always surfaces as VersionConflictError
instead of a raw SQLAlchemy exception.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from adlm.entitlements.errors import VersionConflictError
from adlm.models.user import User

logger = logging.getLogger(__name__)


def commit_entitlement_changes(db: Session, product_key: Optional[str] = None) -> None:
    """
    Commit the session, mapping concurrency failures to VersionConflictError.

    StaleDataError: a versioned UPDATE matched no row because another
    transaction bumped the version first.
    IntegrityError: two transactions created the same (user, product)
    entitlement; the unique constraint rejected the second.
    """
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.info(
            "Entitlement version conflict",
            extra={"product_key": product_key, "reason": "stale_version"},
        )
        raise VersionConflictError(product_key=product_key)
    except IntegrityError as exc:
        db.rollback()
        if "entitlements" not in str(exc.orig).lower():
            raise
        logger.info(
            "Entitlement version conflict",
            extra={"product_key": product_key, "reason": "duplicate_entitlement"},
        )
        raise VersionConflictError(product_key=product_key)


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    return db.execute(select(User).where(User.email == normalized)).scalar_one_or_none()
