"""
Admin routes for users and their entitlements.

- GET  /admin/users?q=                 search (admin or mini_admin)
- POST /admin/users/entitlement        manual grant or override (admin)
- POST /admin/users/reset-device       revoke every device binding (admin)
- POST /admin/users/{user_id}/disable  lock the account, logs it out (admin)
- POST /admin/users/{user_id}/enable   unlock the account (admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import require_admin, require_staff
from adlm.database.session import get_db_session
from adlm.entitlements.expiry import MAX_GRANT_MONTHS
from adlm.entitlements.grants import MAX_SEATS
from adlm.entitlements.seats import DeviceSeatEnforcer
from adlm.entitlements.service import EntitlementService, entitlement_to_dict
from adlm.entitlements.store import commit_entitlement_changes, get_user_by_email
from adlm.models.user import User
from adlm.platform.audit import AuditAction, record_audit_event
from adlm.platform.errors import NotFoundError
from adlm.services.user_service import UserService, user_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/users", tags=["admin", "users"])


class EntitlementBody(BaseModel):
    email: EmailStr = Field(..., description="Target user")
    product_key: str = Field(..., min_length=1)
    months: int = Field(0, ge=0, le=MAX_GRANT_MONTHS, description="Months to add; 0 keeps expiry (1 month for new)")
    status: Optional[str] = Field(None, description="active | inactive | disabled")
    seats: Optional[int] = Field(None, ge=1, le=MAX_SEATS, description="Replaces the seat count when given")
    base_version: Optional[int] = Field(None, description="Entitlement version the admin last saw")


class ResetDeviceBody(BaseModel):
    email: EmailStr
    product_key: str = Field(..., min_length=1)


def _target(db: Session, email: str) -> User:
    user = get_user_by_email(db, email)
    if user is None:
        raise NotFoundError("User", email)
    return user


@router.get("")
def search_users(
    q: Optional[str] = Query(None, description="Email, username or name fragment"),
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db_session),
) -> dict:
    return {"users": [user_to_dict(u) for u in UserService(db).search(q)]}


@router.post("/entitlement")
def set_entitlement(
    request: Request,
    body: EntitlementBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> dict:
    user = _target(db, body.email)
    entitlement = EntitlementService(db).admin_set(
        user,
        body.product_key,
        months=body.months,
        status=body.status,
        seats=body.seats,
        base_version=body.base_version,
    )
    record_audit_event(
        db,
        request,
        AuditAction.ENTITLEMENT_ADMIN_SET,
        actor_id=admin.id,
        resource_type="entitlement",
        resource_id=f"{user.id}:{entitlement.product_key}",
        metadata={
            "email": user.email,
            "months": body.months,
            "status": body.status,
            "seats": body.seats,
        },
    )
    commit_entitlement_changes(db, entitlement.product_key)
    return {"ok": True, "user_id": user.id, "entitlement": entitlement_to_dict(entitlement)}


@router.post("/reset-device")
def reset_device(
    request: Request,
    body: ResetDeviceBody,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> dict:
    user = _target(db, body.email)
    entitlement = DeviceSeatEnforcer(db).admin_reset_device(user, body.product_key)
    record_audit_event(
        db,
        request,
        AuditAction.ENTITLEMENT_DEVICE_RESET,
        actor_id=admin.id,
        resource_type="entitlement",
        resource_id=f"{user.id}:{entitlement.product_key}",
        metadata={"email": user.email},
    )
    commit_entitlement_changes(db, entitlement.product_key)
    return {"ok": True, "user_id": user.id, "entitlement": entitlement_to_dict(entitlement)}


def _set_disabled(request: Request, db: Session, admin: User, user_id: str, disabled: bool) -> dict:
    user = UserService(db).set_disabled(user_id, disabled)
    record_audit_event(
        db,
        request,
        AuditAction.USER_DISABLED if disabled else AuditAction.USER_ENABLED,
        actor_id=admin.id,
        resource_type="user",
        resource_id=user.id,
    )
    db.commit()
    return {"ok": True, "user": user_to_dict(user)}


@router.post("/{user_id}/disable")
def disable_user(
    user_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> dict:
    return _set_disabled(request, db, admin, user_id, True)


@router.post("/{user_id}/enable")
def enable_user(
    user_id: str,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db_session),
) -> dict:
    return _set_disabled(request, db, admin, user_id, False)
