"""
Entitlement routes for the signed-in user.

- GET  /entitlements:            entitlements with seat usage and version
- POST /entitlements/activate:   bind the calling device to a seat
- POST /entitlements/deactivate: free the seat held by a device

Activation failures surface as 4xx with machine-checkable codes
(ENTITLEMENT_NOT_FOUND, ENTITLEMENT_INACTIVE, ENTITLEMENT_EXPIRED,
SEAT_LIMIT_REACHED, VERSION_CONFLICT).
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from adlm.api.dependencies.auth import get_current_user
from adlm.database.session import get_db_session
from adlm.entitlements.seats import DeviceSeatEnforcer
from adlm.entitlements.service import EntitlementService
from adlm.middleware.rate_limit import rate_limit_dependency
from adlm.models.user import User

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class ActivateBody(BaseModel):
    product_key: str = Field(..., min_length=1, description="Product to activate")
    device_fingerprint: str = Field(..., min_length=1, description="Stable device identifier")
    device_name: Optional[str] = Field(None, max_length=255)
    base_version: Optional[int] = Field(None, description="Entitlement version the client last saw")


class DeactivateBody(BaseModel):
    product_key: str = Field(..., min_length=1)
    device_fingerprint: str = Field(..., min_length=1)


@router.get("")
def list_entitlements(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> dict:
    return {"entitlements": EntitlementService(db).list_summaries(user)}


@router.post("/activate", dependencies=[Depends(rate_limit_dependency("entitlement_activate"))])
def activate(
    body: ActivateBody,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> dict:
    result = DeviceSeatEnforcer(db).activate(
        user,
        body.product_key,
        body.device_fingerprint,
        name=body.device_name,
        base_version=body.base_version,
    )
    return result.to_dict()


@router.post("/deactivate")
def deactivate(
    body: DeactivateBody,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> dict:
    usage = DeviceSeatEnforcer(db).deactivate(user, body.product_key, body.device_fingerprint)
    return {"ok": True, **usage.to_dict()}
